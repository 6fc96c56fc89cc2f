from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from hyperbranch.config import HyperbranchConfig

MARKER_FILE_NAME = "hb.cid"
COMPOSE_FILE_NAME = "docker-compose.yml"
ENV_FILE_NAME = ".env.compose"
DOCKERFILE_NAME = "Dockerfile"
ENTRYPOINT_NAME = "entrypoint.sh"
STDOUT_LOG_NAME = "stdout.log"
STDERR_LOG_NAME = "stderr.log"

_INDEX_PATTERN = r"(?P<index>[1-9][0-9]*)"


class RunState(str, Enum):
    UNKNOWN = "unknown"
    PREPARING = "preparing"
    STARTING = "starting"
    WORKING = "working"
    COMPLETED = "completed"
    FAILED = "failed"
    # Applied by callers after merge/archive, never derived from resources.
    MERGED = "merged"
    FINISHED = "finished"


class NameKind(str, Enum):
    BRANCH = "branch"
    CHECKOUT = "checkout"
    CONTAINER = "container"


@dataclass(frozen=True, slots=True)
class RunRef:
    task_id: str
    run_index: int

    def __str__(self) -> str:
        return f"{self.task_id}/{self.run_index}"


@dataclass(frozen=True, slots=True)
class RunContext:
    task_id: str
    run_index: int
    branch: str
    checkout_path: Path
    project_name: str
    run_dir: Path
    service_name: str

    @property
    def ref(self) -> RunRef:
        return RunRef(self.task_id, self.run_index)

    @property
    def dockerfile(self) -> Path:
        return self.run_dir / DOCKERFILE_NAME

    @property
    def compose_file(self) -> Path:
        return self.run_dir / COMPOSE_FILE_NAME

    @property
    def env_file(self) -> Path:
        return self.run_dir / ENV_FILE_NAME

    @property
    def entrypoint(self) -> Path:
        return self.run_dir / ENTRYPOINT_NAME

    @property
    def marker_file(self) -> Path:
        return self.run_dir / MARKER_FILE_NAME

    @property
    def stdout_log(self) -> Path:
        return self.run_dir / STDOUT_LOG_NAME

    @property
    def stderr_log(self) -> Path:
        return self.run_dir / STDERR_LOG_NAME

    @property
    def fallback_container_name(self) -> str:
        # docker compose v2 names containers <project>-<service>-<replica>.
        return f"{self.project_name}-{self.service_name}-1"


@dataclass(frozen=True, slots=True)
class Workspace:
    """Deterministic names and paths for every run in one repository."""

    root: Path
    namespace: str = "task"
    container_prefix: str = "hb"
    state_dir: str = ".hyperbranch"
    runs_dir_name: str = ".runs"
    tasks_dir_name: str = "tasks"
    run_dir_name: str = ".current-run"
    service_name: str = "task"
    image_prefix: str = "hyperbranch-run"

    @classmethod
    def from_config(cls, root: Path, config: HyperbranchConfig) -> Workspace:
        return cls(
            root=root.resolve(),
            namespace=config.workspace.namespace,
            container_prefix=config.workspace.container_prefix,
            state_dir=config.workspace.state_dir,
            runs_dir_name=config.workspace.runs_dir_name,
            tasks_dir_name=config.workspace.tasks_dir_name,
            run_dir_name=config.workspace.run_dir_name,
            service_name=config.container.service_name,
            image_prefix=config.container.image_prefix,
        )

    @property
    def runs_dir(self) -> Path:
        return self.root / self.state_dir / self.runs_dir_name

    @property
    def tasks_dir(self) -> Path:
        return self.root / self.state_dir / self.tasks_dir_name

    def task_file_relative(self, task_id: str) -> str:
        """Repository-relative, forward-slash path of a task file."""
        return f"{self.state_dir}/{self.tasks_dir_name}/task-{task_id}.md"

    def task_branch(self, task_id: str) -> str:
        return f"{self.namespace}/{task_id}"

    def run_branch_prefix(self, task_id: str) -> str:
        return f"{self.task_branch(task_id)}/"

    def run_branch(self, task_id: str, run_index: int) -> str:
        if run_index < 1:
            raise ValueError(f"Run index must be positive, got {run_index}.")
        return f"{self.run_branch_prefix(task_id)}{run_index}"

    @staticmethod
    def checkout_name(branch: str) -> str:
        return branch.replace("/", "-")

    def checkout_prefix(self) -> str:
        return self.checkout_name(f"{self.namespace}/")

    def project_name(self, task_id: str, run_index: int) -> str:
        return f"{self.container_prefix}-{task_id}-{run_index}"

    def image_tag(self, task_id: str) -> str:
        return f"{self.image_prefix}:{task_id}"

    def run_context(self, task_id: str, run_index: int) -> RunContext:
        branch = self.run_branch(task_id, run_index)
        checkout_path = self.runs_dir / self.checkout_name(branch)
        return RunContext(
            task_id=task_id,
            run_index=run_index,
            branch=branch,
            checkout_path=checkout_path,
            project_name=self.project_name(task_id, run_index),
            run_dir=checkout_path / self.state_dir / self.run_dir_name,
            service_name=self.service_name,
        )


def parse_run_ref(
    name: str,
    kind: NameKind,
    workspace: Workspace,
    task_id: str | None = None,
) -> RunRef | None:
    """Recover `(task_id, run_index)` from a branch, checkout or container name.

    Without a known task id the task part is matched greedily, so the run index
    is always the last numeric segment. Container names may carry a compose
    suffix (`-<service>-<n>`, `_<network>`) only when the task id is known,
    otherwise the suffix would be indistinguishable from the task id.
    """
    task_pattern = re.escape(task_id) if task_id is not None else r".+"
    suffix = ""
    if kind is NameKind.BRANCH:
        prefix = re.escape(f"{workspace.namespace}/")
        pattern = rf"{prefix}(?P<task>{task_pattern})/{_INDEX_PATTERN}"
    elif kind is NameKind.CHECKOUT:
        prefix = re.escape(workspace.checkout_prefix())
        pattern = rf"{prefix}(?P<task>{task_pattern})-{_INDEX_PATTERN}"
    else:
        prefix = re.escape(f"{workspace.container_prefix}-")
        pattern = rf"{prefix}(?P<task>{task_pattern})-{_INDEX_PATTERN}"
        if task_id is not None:
            suffix = r"(?:[-_].*)?"

    match = re.fullmatch(pattern + suffix, name)
    if match is None:
        return None
    parsed_task = match.group("task")
    if not parsed_task:
        return None
    return RunRef(task_id=parsed_task, run_index=int(match.group("index")))
