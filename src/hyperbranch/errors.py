from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    PRECONDITION = "precondition"
    UNSAFE_STATE = "unsafe_state"
    COMMAND_FAILED = "command_failed"
    TIMEOUT = "timeout"


class HyperbranchError(RuntimeError):
    """Base class for every error surfaced to callers."""

    kind: ErrorKind = ErrorKind.PRECONDITION


class NotFoundError(HyperbranchError):
    """Raised when a task or run resource is absent."""

    kind = ErrorKind.NOT_FOUND


class PreconditionError(HyperbranchError):
    """Raised when an operation is invoked in a state it cannot start from."""

    kind = ErrorKind.PRECONDITION


class CycleError(PreconditionError):
    """Raised when a proposed dependency or parent edge would close a cycle."""


class UnsafeStateError(HyperbranchError):
    """Raised when a non-forced destructive operation finds unsafe resources.

    Carries every violation found, not only the first one.
    """

    kind = ErrorKind.UNSAFE_STATE

    def __init__(self, message: str, violations: list[str]) -> None:
        details = "\n".join(f"  - {item}" for item in violations)
        super().__init__(f"{message}\n{details}" if violations else message)
        self.violations = list(violations)
