from hyperbranch.runtime.context import (
    NameKind,
    RunContext,
    RunRef,
    RunState,
    Workspace,
    parse_run_ref,
)

__all__ = [
    "NameKind",
    "RunContext",
    "RunRef",
    "RunState",
    "Workspace",
    "parse_run_ref",
]
