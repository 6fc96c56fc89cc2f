from hyperbranch.tasks.cycles import check_dependency_cycle, check_parent_cycle
from hyperbranch.tasks.store import Task, TaskSource, TaskStatus, TaskStore, generate_task_id

__all__ = [
    "Task",
    "TaskSource",
    "TaskStatus",
    "TaskStore",
    "check_dependency_cycle",
    "check_parent_cycle",
    "generate_task_id",
]
