from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from hyperbranch.errors import ErrorKind, HyperbranchError

UNKNOWN_STATUS = "unknown"


class CommandFailure(str, Enum):
    GENERIC = "generic"
    BRANCH_EXISTS = "branch_exists"
    NOT_A_WORKTREE = "not_a_worktree"
    MISSING_BINARY = "missing_binary"


class CommandError(HyperbranchError):
    """Raised when git or docker exits non-zero."""

    kind = ErrorKind.COMMAND_FAILED

    def __init__(
        self,
        message: str,
        *,
        tool: str,
        argv: Sequence[str] = (),
        exit_code: int | None = None,
        stderr: str = "",
        reason: CommandFailure = CommandFailure.GENERIC,
    ) -> None:
        super().__init__(message)
        self.tool = tool
        self.argv = list(argv)
        self.exit_code = exit_code
        self.stderr = stderr
        self.reason = reason

    @classmethod
    def from_process(
        cls,
        tool: str,
        argv: Sequence[str],
        exit_code: int,
        stderr: str,
        stdout: str = "",
        *,
        reason: CommandFailure = CommandFailure.GENERIC,
    ) -> CommandError:
        output = stderr.strip() or stdout.strip()
        message = f"{tool} command failed: {' '.join(argv)}"
        if output:
            message += f"\n{output}"
        return cls(
            message,
            tool=tool,
            argv=argv,
            exit_code=exit_code,
            stderr=output,
            reason=reason,
        )

    def with_reason(self, reason: CommandFailure) -> CommandError:
        return type(self)(
            str(self),
            tool=self.tool,
            argv=self.argv,
            exit_code=self.exit_code,
            stderr=self.stderr,
            reason=reason,
        )


class LaunchTimeoutError(CommandError):
    """Raised when a launched container never reports its id in time."""

    kind = ErrorKind.TIMEOUT


@dataclass(slots=True)
class ContainerStatus:
    status: str = UNKNOWN_STATUS
    started_at: str = ""
    exit_code: int | None = None

    @property
    def running(self) -> bool:
        return self.status == "running"


@dataclass(slots=True)
class ContainerSpec:
    image: str
    name: str
    command: list[str]
    workdir: str
    host_workdir: Path
    env_file: Path | None = None
    user: str | None = None
    mounts: list[str] = field(default_factory=list)
    ports: list[int] = field(default_factory=list)
    extra_args: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class ComposeProject:
    name: str
    compose_file: Path
    workdir: Path


class VcsAdapter(ABC):
    @abstractmethod
    def current_branch(self) -> str | None:
        """Return the checked-out branch, or None on a detached HEAD."""

    @abstractmethod
    def branch_exists(self, branch: str) -> bool:
        """Return True when a local branch with this name exists."""

    @abstractmethod
    def list_branches(self, prefix: str) -> list[str]:
        """Return local branch names starting with `prefix`."""

    @abstractmethod
    def resolve_base_branch(self, preferred: str | None = None) -> str:
        """Pick the branch new work starts from. Never raises."""

    @abstractmethod
    def create_checkout(self, branch: str, base: str, path: Path) -> None:
        """Create `branch` from `base` and check it out at `path`."""

    @abstractmethod
    def is_dirty(self, path: Path) -> bool:
        """Return True when the checkout has uncommitted changes."""

    @abstractmethod
    def is_merged(self, branch: str, base: str) -> bool:
        """Return True when `branch` is fully merged into `base`."""

    @abstractmethod
    def unmerged_commits(self, branch: str, base: str) -> list[str]:
        """Return one-line summaries of commits on `branch` missing from `base`."""

    @abstractmethod
    def remove_checkout(self, path: Path, force: bool = False) -> None:
        """Remove a checkout directory and its bookkeeping."""

    @abstractmethod
    def delete_branch(self, branch: str, force: bool = False) -> None:
        """Delete a local branch."""

    @abstractmethod
    def prune_worktrees(self) -> None:
        """Drop bookkeeping for checkouts whose directories are gone."""

    @abstractmethod
    def file_exists_on_branch(self, branch: str, relative_path: str) -> bool:
        """Return True when `relative_path` is committed on `branch`."""

    @abstractmethod
    def config_get(self, key: str) -> str | None:
        """Read a VCS configuration value."""


class ContainerAdapter(ABC):
    @abstractmethod
    def build_image(
        self, dockerfile: Path, tag: str, build_args: dict[str, str] | None = None
    ) -> None:
        """Build an image from `dockerfile` and tag it."""

    @abstractmethod
    def run_detached(
        self,
        spec: ContainerSpec,
        *,
        marker_file: Path,
        stdout_path: Path,
        stderr_path: Path,
        timeout_seconds: float,
        poll_interval_seconds: float,
    ) -> str:
        """Launch a container and return its id once it has started."""

    @abstractmethod
    def inspect_status(self, container: str) -> ContainerStatus:
        """Return the runtime status; unknown containers report `unknown`."""

    @abstractmethod
    def remove(self, container: str, force: bool = False) -> None:
        """Remove a container."""

    @abstractmethod
    def stop(self, container: str) -> None:
        """Stop a container, keeping it for inspection."""

    @abstractmethod
    def host_port(self, container: str, container_port: int) -> int:
        """Return the host port bound to `container_port`."""

    @abstractmethod
    def find_by_partial_name(self, fragment: str) -> list[str]:
        """Return names of all containers whose name contains `fragment`."""

    @abstractmethod
    def find_networks_by_partial_name(self, fragment: str) -> list[str]:
        """Return names of all networks whose name contains `fragment`."""

    @abstractmethod
    def remove_network(self, name: str) -> None:
        """Remove a network."""

    @abstractmethod
    def remove_image(self, tag: str, force: bool = False) -> None:
        """Remove an image."""

    @abstractmethod
    def compose_up(self, project: ComposeProject) -> None:
        """Start every service of the project in the background."""

    @abstractmethod
    def compose_down(self, project: ComposeProject, volumes: bool = True) -> None:
        """Stop and remove the project's containers, networks and volumes."""

    @abstractmethod
    def compose_stop(self, project: ComposeProject) -> None:
        """Stop the project's containers without removing them."""

    @abstractmethod
    def compose_running(self, project: ComposeProject) -> list[str]:
        """Return ids of the project's running containers."""

    @abstractmethod
    def compose_service_container(self, project: ComposeProject, service: str) -> str | None:
        """Return the id of a service's container, running or not."""

    @abstractmethod
    def compose_port(self, project: ComposeProject, service: str, container_port: int) -> int:
        """Return the host port a service publishes for `container_port`."""

    @abstractmethod
    def compose_logs(self, project: ComposeProject, follow: bool = False) -> Iterator[str]:
        """Yield log lines of every service."""
