from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from loguru import logger

from hyperbranch.adapters.base import CommandError
from hyperbranch.errors import UnsafeStateError
from hyperbranch.runtime.context import NameKind, RunContext, RunRef, parse_run_ref
from hyperbranch.runtime.lifecycle import LifecycleEngine
from hyperbranch.tasks.store import TaskSource


class CandidateStatus(str, Enum):
    READY = "ready"
    ACTIVE = "active"
    DIRTY = "dirty"
    DANGLING = "dangling"
    NOT_MERGED = "not_merged"
    INVALID_NAME = "invalid_name"


@dataclass(slots=True)
class SweepCandidate:
    name: str
    status: CandidateStatus
    ref: RunRef | None = None


@dataclass(slots=True)
class RemovalReport:
    ref: RunRef
    not_found: bool = False
    removed: bool = False
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class TaskRemovalReport:
    task_id: str
    runs: list[RemovalReport] = field(default_factory=list)
    record_found: bool = False
    record_removed: bool = False
    image_removed: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def not_found(self) -> bool:
        return not self.runs and not self.record_found


@dataclass(slots=True)
class SweepReport:
    removed: list[RunRef] = field(default_factory=list)
    skipped: list[SweepCandidate] = field(default_factory=list)
    orphans: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def belongs_to_project(name: str, project: str) -> bool:
    """`hb-x-1` owns `hb-x-1`, `hb-x-1-task-1` and `hb-x-1_default`, never `hb-x-10`."""
    if name == project:
        return True
    return name.startswith(project) and name[len(project)] in "-_"


class Reconciler:
    """Safety-gated removal of runs and tasks, plus the sweep of finished runs."""

    def __init__(self, engine: LifecycleEngine, tasks: TaskSource) -> None:
        self.engine = engine
        self.tasks = tasks
        self.workspace = engine.workspace
        self.vcs = engine.vcs
        self.containers = engine.containers

    def _checkout_names(self) -> list[str]:
        runs_dir = self.workspace.runs_dir
        if not runs_dir.is_dir():
            return []
        return sorted(entry.name for entry in runs_dir.iterdir() if entry.is_dir())

    def list_run_indices_for_task(self, task_id: str) -> list[int]:
        """Every run index with a branch, a checkout dir or a container."""
        indices = set(self.engine.list_run_indices(task_id))
        for name in self._checkout_names():
            ref = parse_run_ref(name, NameKind.CHECKOUT, self.workspace, task_id)
            if ref is not None:
                indices.add(ref.run_index)
        fragment = f"{self.workspace.container_prefix}-{task_id}-"
        for name in self.containers.find_by_partial_name(fragment):
            ref = parse_run_ref(name, NameKind.CONTAINER, self.workspace, task_id)
            if ref is not None:
                indices.add(ref.run_index)
        return sorted(indices)

    def run_exists(self, ctx: RunContext) -> bool:
        return (
            self.vcs.branch_exists(ctx.branch)
            or ctx.checkout_path.exists()
            or self.engine.locate_container(ctx) is not None
        )

    def safety_violations(self, ctx: RunContext) -> list[str]:
        violations: list[str] = []
        container = self.engine.locate_container(ctx)
        if container is not None and self.containers.inspect_status(container).running:
            violations.append(f"Run {ctx.ref} has a running container ({container}).")

        if ctx.checkout_path.exists() and self.vcs.is_dirty(ctx.checkout_path):
            violations.append(f"Run {ctx.ref} has uncommitted changes in {ctx.checkout_path}.")

        if self.vcs.branch_exists(ctx.branch):
            base_branch = self.engine.resolve_base_branch(ctx.task_id)
            try:
                commits = self.vcs.unmerged_commits(ctx.branch, base_branch)
            except CommandError as exc:
                violations.append(
                    f"Could not compare branch {ctx.branch} with {base_branch}: {exc.stderr or exc}"
                )
            else:
                if commits:
                    violations.append(
                        f"Branch {ctx.branch} has {len(commits)} commit(s) not merged into {base_branch}."
                    )
        return violations

    def remove_run(self, task_id: str, run_index: int, force: bool = False) -> RemovalReport:
        ctx = self.engine.context(task_id, run_index)
        report = RemovalReport(ref=ctx.ref)
        if not self.run_exists(ctx):
            report.not_found = True
            return report
        if not force:
            violations = self.safety_violations(ctx)
            if violations:
                raise UnsafeStateError(f"Refusing to remove run {ctx.ref}:", violations)
        report.warnings = self.engine.destroy(ctx)
        report.removed = True
        return report

    def remove_task(self, task_id: str, force: bool = False) -> TaskRemovalReport:
        """Remove every run of a task, then its record and image.

        Unless forced, all runs are checked first and nothing is deleted if any
        of them is unsafe. Once deletion starts, failures become warnings.
        """
        report = TaskRemovalReport(task_id=task_id)
        indices = self.list_run_indices_for_task(task_id)
        record_exists = self.tasks.task_exists(task_id)
        if not indices and not record_exists:
            return report
        report.record_found = record_exists

        if not force:
            violations: list[str] = []
            for run_index in indices:
                violations.extend(self.safety_violations(self.engine.context(task_id, run_index)))
            if violations:
                raise UnsafeStateError(f"Refusing to remove task {task_id}:", violations)

        for run_index in indices:
            run_report = self.remove_run(task_id, run_index, force=True)
            report.runs.append(run_report)
            report.warnings.extend(run_report.warnings)

        if record_exists:
            try:
                self.tasks.delete_task_record(task_id)
                report.record_removed = True
            except OSError as exc:
                message = f"Task record removal failed for {task_id}: {exc}"
                logger.warning(message)
                report.warnings.append(message)

        try:
            self.containers.remove_image(self.workspace.image_tag(task_id), force=True)
            report.image_removed = True
        except CommandError as exc:
            # The image only exists if a run was ever built in direct mode.
            logger.debug("Image cleanup skipped for {}: {}", task_id, exc)
        return report

    def classify_checkout(self, name: str) -> SweepCandidate:
        ref = parse_run_ref(name, NameKind.CHECKOUT, self.workspace)
        if ref is None:
            return SweepCandidate(name=name, status=CandidateStatus.INVALID_NAME)
        ctx = self.engine.context(ref.task_id, ref.run_index)
        if ctx.checkout_path.name != name:
            return SweepCandidate(name=name, status=CandidateStatus.INVALID_NAME)

        container = self.engine.locate_container(ctx)
        if container is not None and self.containers.inspect_status(container).running:
            return SweepCandidate(name=name, status=CandidateStatus.ACTIVE, ref=ref)
        if not self.vcs.branch_exists(ctx.branch):
            return SweepCandidate(name=name, status=CandidateStatus.DANGLING, ref=ref)
        if self.vcs.is_dirty(ctx.checkout_path):
            return SweepCandidate(name=name, status=CandidateStatus.DIRTY, ref=ref)
        base_branch = self.engine.resolve_base_branch(ref.task_id)
        if not self.vcs.is_merged(ctx.branch, base_branch):
            return SweepCandidate(name=name, status=CandidateStatus.NOT_MERGED, ref=ref)
        return SweepCandidate(name=name, status=CandidateStatus.READY, ref=ref)

    def classify_all(self) -> list[SweepCandidate]:
        return [self.classify_checkout(name) for name in self._checkout_names()]

    def list_candidates(self) -> list[SweepCandidate]:
        return [item for item in self.classify_all() if item.status is CandidateStatus.READY]

    def sweep(self, force: bool = False) -> SweepReport:
        """Remove only ready runs, then reclaim orphaned docker resources.

        `force` never widens what a sweep removes.
        """
        report = SweepReport()
        if force:
            message = "--force is ignored by sweep; only merged, clean and stopped runs are removed."
            logger.warning(message)
            report.warnings.append(message)

        for candidate in self.classify_all():
            if candidate.status is not CandidateStatus.READY or candidate.ref is None:
                logger.debug("Skipping {}: {}", candidate.name, candidate.status.value)
                report.skipped.append(candidate)
                continue
            ctx = self.engine.context(candidate.ref.task_id, candidate.ref.run_index)
            report.warnings.extend(self.engine.destroy(ctx))
            report.removed.append(candidate.ref)

        report.orphans = self.reclaim_orphans()
        try:
            self.vcs.prune_worktrees()
        except (CommandError, OSError) as exc:
            message = f"Worktree prune failed: {exc}"
            logger.warning(message)
            report.warnings.append(message)
        return report

    def reclaim_orphans(self) -> list[str]:
        """Force-remove containers and networks whose run has no checkout dir."""
        projects: set[str] = set()
        for name in self._checkout_names():
            ref = parse_run_ref(name, NameKind.CHECKOUT, self.workspace)
            if ref is not None:
                projects.add(self.workspace.project_name(ref.task_id, ref.run_index))

        prefix = f"{self.workspace.container_prefix}-"
        removed: list[str] = []

        def _orphaned(names: list[str]) -> list[str]:
            return [
                name
                for name in names
                if name.startswith(prefix)
                and not any(belongs_to_project(name, project) for project in projects)
            ]

        for name in _orphaned(self.containers.find_by_partial_name(prefix)):
            try:
                self.containers.remove(name, force=True)
            except CommandError as exc:
                logger.warning("Could not remove orphaned container {}: {}", name, exc)
                continue
            removed.append(name)

        for name in _orphaned(self.containers.find_networks_by_partial_name(prefix)):
            try:
                self.containers.remove_network(name)
            except CommandError as exc:
                logger.warning("Could not remove orphaned network {}: {}", name, exc)
                continue
            removed.append(name)
        return removed
