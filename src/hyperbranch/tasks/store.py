from __future__ import annotations

import random
import re
import string
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

import yaml
from loguru import logger

from hyperbranch.adapters.git import GitAdapter
from hyperbranch.errors import NotFoundError, PreconditionError
from hyperbranch.runtime.context import Workspace
from hyperbranch.tasks.cycles import check_dependency_cycle, check_parent_cycle

_FRONTMATTER_PATTERN = re.compile(r"^---\n(.+?)\n---\n(.*)$", re.DOTALL)
_TASK_FILE_PATTERN = re.compile(r"^task-(.+)\.md$")
_BASE36_DIGITS = string.digits + string.ascii_lowercase


class TaskStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class Task:
    id: str
    path: Path
    status: TaskStatus = TaskStatus.TODO
    parent: str | None = None
    dependencies: list[str] = field(default_factory=list)
    body: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def title(self) -> str:
        for line in self.body.splitlines():
            if line.startswith("# "):
                return line[2:].strip()
        return self.id

    def frontmatter(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "parent": self.parent,
            "dependencies": list(self.dependencies),
            **self.extra,
        }

    def to_text(self) -> str:
        rendered = yaml.safe_dump(self.frontmatter(), sort_keys=False, default_flow_style=False)
        return f"---\n{rendered}---\n{self.body}"

    @classmethod
    def from_text(cls, task_id: str, path: Path, text: str) -> Task:
        match = _FRONTMATTER_PATTERN.match(text)
        if match is None:
            raise PreconditionError(f"Task {task_id} is malformed: missing frontmatter at {path}")
        try:
            data = yaml.safe_load(match.group(1)) or {}
        except yaml.YAMLError as exc:
            raise PreconditionError(f"Error parsing YAML for task {task_id}: {exc}") from exc
        if not isinstance(data, dict):
            raise PreconditionError(f"Task {task_id} frontmatter must be a mapping")

        extra = {
            key: value
            for key, value in data.items()
            if key not in {"id", "status", "parent", "dependencies"}
        }
        try:
            status = TaskStatus(data.get("status", TaskStatus.TODO.value))
        except ValueError as exc:
            raise PreconditionError(f"Task {task_id} has invalid status: {data.get('status')}") from exc
        return cls(
            id=task_id,
            path=path,
            status=status,
            parent=data.get("parent") or None,
            dependencies=[str(item) for item in data.get("dependencies") or []],
            body=match.group(2),
            extra=extra,
        )


class TaskSource(Protocol):
    """What the run lifecycle needs from whoever owns task records."""

    def task_exists(self, task_id: str) -> bool: ...

    def resolve_task(self, task_id: str) -> Task: ...

    def task_visible_on_branch(self, branch: str, task_id: str) -> bool: ...

    def delete_task_record(self, task_id: str) -> None: ...


def _to_base36(value: int) -> str:
    digits: list[str] = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_DIGITS[remainder])
    return "".join(reversed(digits)) or "0"


def generate_task_id(now_ms: int | None = None, salt: int | None = None) -> str:
    """Time-ordered base36 id in dash-separated groups of three, e.g. `0lq-5x9-k2a`."""
    if now_ms is None:
        now_ms = time.time_ns() // 1_000_000
    if salt is None:
        salt = random.randrange(10)
    raw = _to_base36(now_ms * 10 + salt).rjust(9, "0")
    return "-".join(raw[index : index + 3] for index in range(0, len(raw), 3))


class TaskStore:
    def __init__(self, workspace: Workspace, vcs: GitAdapter) -> None:
        self.workspace = workspace
        self.vcs = vcs

    def task_path(self, task_id: str) -> Path:
        return self.workspace.root / self.workspace.task_file_relative(task_id)

    def task_exists(self, task_id: str) -> bool:
        return self.task_path(task_id).is_file()

    def get(self, task_id: str) -> Task:
        path = self.task_path(task_id)
        if not path.is_file():
            raise NotFoundError(f"Task {task_id} not found at {path}")
        return Task.from_text(task_id, path, path.read_text(encoding="utf-8"))

    resolve_task = get

    def list(self) -> list[Task]:
        tasks_dir = self.workspace.tasks_dir
        if not tasks_dir.is_dir():
            return []
        tasks: list[Task] = []
        for entry in sorted(tasks_dir.iterdir()):
            match = _TASK_FILE_PATTERN.match(entry.name)
            if not entry.is_file() or match is None:
                continue
            try:
                tasks.append(self.get(match.group(1)))
            except PreconditionError as exc:
                logger.warning("Failed to load task {}: {}", match.group(1), exc)
        return tasks

    def save(self, task: Task) -> None:
        task.path.parent.mkdir(parents=True, exist_ok=True)
        task.path.write_text(task.to_text(), encoding="utf-8")

    def create(self, title: str, parent: str | None = None, *, commit: bool = True) -> Task:
        """Write a new task file and commit it so runs can see it on the base branch."""
        if parent and not self.task_exists(parent):
            raise NotFoundError(f"Parent task {parent} does not exist.")
        task_id = generate_task_id()
        while self.task_exists(task_id):
            task_id = generate_task_id()
        task = Task(
            id=task_id,
            path=self.task_path(task_id),
            parent=parent,
            body=f"# {title}\n\n",
        )
        self.save(task)
        if commit:
            self.vcs.commit([task.path], f"chore: create task {task_id}")
        logger.debug("Created task {}", task_id)
        return task

    def update(
        self,
        task_id: str,
        *,
        status: TaskStatus | None = None,
        body: str | None = None,
    ) -> Task:
        task = self.get(task_id)
        if status is not None:
            task.status = status
        if body is not None:
            task.body = body
        self.save(task)
        return task

    def add_dependency(self, task_id: str, dep_id: str) -> bool:
        """Record `task_id -> dep_id`. Returns False when the edge already exists."""
        task = self.get(task_id)
        if not self.task_exists(dep_id):
            raise NotFoundError(f"Dependency task {dep_id} does not exist.")
        if dep_id in task.dependencies:
            return False
        check_dependency_cycle(task_id, dep_id, self.get)
        task.dependencies.append(dep_id)
        self.save(task)
        return True

    def set_parent(self, task_id: str, parent_id: str | None) -> bool:
        """Reparent a task; `None` moves it to the root. Returns False on no change."""
        task = self.get(task_id)
        if parent_id is not None and not self.task_exists(parent_id):
            raise NotFoundError(f"Parent task {parent_id} does not exist.")
        if task.parent == parent_id:
            return False
        if parent_id is not None:
            check_parent_cycle(task_id, parent_id, self.get)
        task.parent = parent_id
        self.save(task)
        return True

    def task_visible_on_branch(self, branch: str, task_id: str) -> bool:
        return self.vcs.file_exists_on_branch(branch, self.workspace.task_file_relative(task_id))

    def delete_task_record(self, task_id: str) -> None:
        self.task_path(task_id).unlink(missing_ok=True)
