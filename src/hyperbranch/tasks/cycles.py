from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

from hyperbranch.errors import CycleError, HyperbranchError

if TYPE_CHECKING:
    from hyperbranch.tasks.store import Task

LoadTask = Callable[[str], "Task"]


class _CachedLoader:
    def __init__(self, load_task: LoadTask) -> None:
        self._load_task = load_task
        self._cache: dict[str, Task | None] = {}

    def __call__(self, task_id: str) -> Task | None:
        if task_id not in self._cache:
            try:
                self._cache[task_id] = self._load_task(task_id)
            except HyperbranchError:
                self._cache[task_id] = None
        return self._cache[task_id]


def _ancestors(source_id: str, load: _CachedLoader) -> set[str]:
    ancestors: set[str] = set()
    current: str | None = source_id
    while current and current not in ancestors:
        ancestors.add(current)
        task = load(current)
        if task is None:
            break
        current = task.parent
    return ancestors


def _reaches(start_id: str, targets: set[str], load: _CachedLoader) -> bool:
    visited: set[str] = set()
    stack = [start_id]
    while stack:
        current = stack.pop()
        if current in targets:
            return True
        if current in visited:
            continue
        visited.add(current)
        task = load(current)
        if task is None:
            continue
        # Children are not walked; only explicit dependencies are.
        stack.extend(reversed(task.dependencies))
    return False


def check_dependency_cycle(task_id: str, new_dep_id: str, load_task: LoadTask) -> None:
    """Reject `task_id -> new_dep_id` if the dependency already reaches `task_id`.

    Reaching any ancestor of `task_id` counts too, since a task implicitly
    depends on its parent chain.
    """
    load = _CachedLoader(load_task)
    if _reaches(new_dep_id, _ancestors(task_id, load), load):
        raise CycleError(
            f"Circular dependency detected. Task {task_id} depends on {new_dep_id}, "
            f"but {new_dep_id} already depends on (or is an ancestor of) {task_id}."
        )


def check_parent_cycle(child_id: str, new_parent_id: str, load_task: LoadTask) -> None:
    """Reject making `new_parent_id` the parent of `child_id` if that closes a loop."""
    load = _CachedLoader(load_task)
    if _reaches(child_id, _ancestors(new_parent_id, load), load):
        raise CycleError(
            f"Circular parentage detected. Task {new_parent_id} becomes parent of "
            f"{child_id}, but {child_id} is already an ancestor (or dependency) of "
            f"{new_parent_id}."
        )
