from pathlib import Path

import pytest

from hyperbranch.errors import CycleError, NotFoundError
from hyperbranch.tasks.cycles import check_dependency_cycle, check_parent_cycle
from hyperbranch.tasks.store import Task


def _loader(graph: dict[str, tuple[str | None, list[str]]]):
    calls: list[str] = []

    def load(task_id: str) -> Task:
        calls.append(task_id)
        if task_id not in graph:
            raise NotFoundError(f"Task {task_id} not found")
        parent, deps = graph[task_id]
        return Task(id=task_id, path=Path(f"task-{task_id}.md"), parent=parent, dependencies=deps)

    load.calls = calls  # type: ignore[attr-defined]
    return load


def test_self_dependency_is_a_cycle() -> None:
    load = _loader({"a": (None, [])})

    with pytest.raises(CycleError):
        check_dependency_cycle("a", "a", load)


def test_direct_and_transitive_dependency_cycles() -> None:
    load = _loader({"a": (None, []), "b": (None, ["c"]), "c": (None, ["a"])})

    with pytest.raises(CycleError):
        check_dependency_cycle("a", "c", load)
    with pytest.raises(CycleError):
        check_dependency_cycle("a", "b", load)


def test_dependency_reaching_an_ancestor_is_a_cycle() -> None:
    # child's parent is p; x depends on p, so child -> x would loop back up.
    load = _loader({"p": (None, []), "child": ("p", []), "x": (None, ["p"])})

    with pytest.raises(CycleError) as excinfo:
        check_dependency_cycle("child", "x", load)

    assert "Circular dependency" in str(excinfo.value)


def test_diamond_is_not_a_cycle() -> None:
    load = _loader(
        {
            "a": (None, []),
            "b": (None, ["d"]),
            "c": (None, ["d"]),
            "d": (None, []),
            "top": (None, ["b", "c"]),
        }
    )

    check_dependency_cycle("a", "top", load)
    assert load.calls.count("d") == 1


def test_unloadable_tasks_end_the_walk() -> None:
    load = _loader({"a": ("ghost-parent", []), "b": (None, ["ghost-dep"])})

    check_dependency_cycle("a", "b", load)
    check_dependency_cycle("a", "never-created", load)


def test_parent_cycle_detection() -> None:
    load = _loader({"root": (None, []), "mid": ("root", []), "leaf": ("mid", [])})

    with pytest.raises(CycleError) as excinfo:
        check_parent_cycle("root", "leaf", load)
    assert "Circular parentage" in str(excinfo.value)

    with pytest.raises(CycleError):
        check_parent_cycle("mid", "mid", load)

    check_parent_cycle("leaf", "root", load)


def test_parent_cycle_through_dependencies() -> None:
    # c depends on p, so making p the parent of c would close a loop.
    load = _loader({"p": (None, []), "c": (None, ["p"])})

    with pytest.raises(CycleError):
        check_parent_cycle("c", "p", load)


def test_existing_parent_loop_terminates() -> None:
    load = _loader({"a": ("b", []), "b": ("a", []), "z": (None, [])})

    check_dependency_cycle("a", "z", load)
