from __future__ import annotations

import os
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from hyperbranch.adapters.base import (
    UNKNOWN_STATUS,
    CommandError,
    CommandFailure,
    ComposeProject,
    ContainerAdapter,
    ContainerSpec,
    ContainerStatus,
    VcsAdapter,
)
from hyperbranch.config import HyperbranchConfig
from hyperbranch.errors import HyperbranchError, NotFoundError, PreconditionError
from hyperbranch.runtime.assets import (
    host_user,
    render_command,
    run_mounts,
    write_env_file,
    write_run_assets,
)
from hyperbranch.runtime.context import NameKind, RunContext, RunState, Workspace, parse_run_ref
from hyperbranch.tasks.store import TaskSource


@dataclass(slots=True)
class PrepareOptions:
    prompt: str = ""
    env: dict[str, str] = field(default_factory=dict)
    dockerfile: Path | None = None
    exec_command: list[str] | None = None


@dataclass(slots=True)
class RunInspection:
    status: str
    port: int = 0

    @property
    def running(self) -> bool:
        return self.status == "running"


def classify_container(status: ContainerStatus) -> RunState:
    if status.status in {"created", "restarting"}:
        return RunState.STARTING
    if status.status == "running":
        return RunState.WORKING
    if status.status == "exited":
        return RunState.COMPLETED if status.exit_code == 0 else RunState.FAILED
    return RunState.FAILED


class LifecycleEngine:
    """Drives one run through prepare, start, inspect, stop and destroy.

    Nothing about a run is stored beyond its branch, checkout and container;
    every query re-derives state from those resources.
    """

    MAX_CREATE_ATTEMPTS = 5

    def __init__(
        self,
        workspace: Workspace,
        vcs: VcsAdapter,
        containers: ContainerAdapter,
        tasks: TaskSource,
        config: HyperbranchConfig | None = None,
    ) -> None:
        self.workspace = workspace
        self.vcs = vcs
        self.containers = containers
        self.tasks = tasks
        self.config = config or HyperbranchConfig.default()

    @property
    def compose_mode(self) -> bool:
        return self.config.container.mode == "compose"

    def context(self, task_id: str, run_index: int) -> RunContext:
        return self.workspace.run_context(task_id, run_index)

    @staticmethod
    def compose_project(ctx: RunContext) -> ComposeProject:
        return ComposeProject(name=ctx.project_name, compose_file=ctx.compose_file, workdir=ctx.run_dir)

    def resolve_base_branch(self, task_id: str) -> str:
        preferred: str | None = None
        try:
            task = self.tasks.resolve_task(task_id)
        except HyperbranchError:
            task = None
        if task is not None and task.parent:
            preferred = self.workspace.task_branch(task.parent)
        return self.vcs.resolve_base_branch(preferred)

    def list_run_indices(self, task_id: str) -> list[int]:
        indices: set[int] = set()
        for branch in self.vcs.list_branches(self.workspace.run_branch_prefix(task_id)):
            ref = parse_run_ref(branch, NameKind.BRANCH, self.workspace, task_id)
            if ref is not None:
                indices.add(ref.run_index)
        return sorted(indices)

    def latest_run_index(self, task_id: str) -> int | None:
        indices = self.list_run_indices(task_id)
        return indices[-1] if indices else None

    def next_run_index(self, task_id: str) -> int:
        """Allocation hint; `create_run` retries when the hint loses a race."""
        return (self.latest_run_index(task_id) or 0) + 1

    def create_run(self, task_id: str, options: PrepareOptions | None = None) -> RunContext:
        if not self.tasks.task_exists(task_id):
            raise NotFoundError(f"Task {task_id} not found.")
        index = self.next_run_index(task_id)
        for _ in range(self.MAX_CREATE_ATTEMPTS):
            ctx = self.context(task_id, index)
            while self.vcs.branch_exists(ctx.branch) or ctx.checkout_path.exists():
                index += 1
                ctx = self.context(task_id, index)
            try:
                self.prepare(ctx, options)
            except CommandError as exc:
                if exc.reason is not CommandFailure.BRANCH_EXISTS:
                    raise
                logger.warning("Run {} was claimed concurrently, retrying with the next index", ctx.ref)
                index += 1
                continue
            return ctx
        raise PreconditionError(
            f"Could not allocate a run for task {task_id} after {self.MAX_CREATE_ATTEMPTS} attempts."
        )

    def _run_env(self, ctx: RunContext, task_file: str, options: PrepareOptions, user: str) -> dict[str, str]:
        uid, _, gid = user.partition(":")
        git_name = self.vcs.config_get("user.name") or ""
        git_email = self.vcs.config_get("user.email") or ""
        env = {
            "HYPERBRANCH_TASK_ID": ctx.task_id,
            "HYPERBRANCH_TASK_FILE": task_file,
            "HYPERBRANCH_AGENT_MODE": self.config.run.agent_mode,
            "HYPERBRANCH_PROMPT": options.prompt,
            "HB_USER": user,
            "HB_UID": uid,
            "HB_GID": gid or uid,
            "HB_WORKDIR": self.config.container.workdir,
            "GIT_AUTHOR_NAME": git_name,
            "GIT_AUTHOR_EMAIL": git_email,
            "GIT_COMMITTER_NAME": git_name,
            "GIT_COMMITTER_EMAIL": git_email,
        }
        for name in self.config.run.env_vars:
            value = os.environ.get(name)
            if value is not None:
                env[name] = value
        env.update(options.env)
        return env

    def prepare(self, ctx: RunContext, options: PrepareOptions | None = None) -> None:
        """Create the checkout and scaffold the run dir. Does not start anything."""
        options = options or PrepareOptions()
        base_branch = self.resolve_base_branch(ctx.task_id)
        task_file = self.workspace.task_file_relative(ctx.task_id)
        if not self.tasks.task_visible_on_branch(base_branch, ctx.task_id):
            raise PreconditionError(
                f"Task file '{task_file}' not found in base branch '{base_branch}'. Cannot start run."
            )
        if ctx.checkout_path.exists():
            raise PreconditionError(f"Checkout for run already exists at '{ctx.checkout_path}'")

        # Host lookups run before anything is created so a failure leaves no checkout.
        mounts = run_mounts(self.workspace.root, self.config.container)

        logger.debug("Creating checkout {} for {} from {}", ctx.checkout_path, ctx.branch, base_branch)
        self.vcs.create_checkout(ctx.branch, base_branch, ctx.checkout_path)

        user = host_user()
        command = options.exec_command or render_command(self.config.container.command, task_file)
        write_run_assets(
            ctx,
            self.workspace,
            self.config.container,
            command=command,
            user=user,
            dockerfile=options.dockerfile,
            mounts=mounts,
        )
        write_env_file(ctx.env_file, self._run_env(ctx, task_file, options, user))

    def _load_service(self, ctx: RunContext) -> dict[str, Any]:
        descriptor = yaml.safe_load(ctx.compose_file.read_text(encoding="utf-8")) or {}
        service = descriptor.get("services", {}).get(ctx.service_name)
        if not isinstance(service, dict):
            raise PreconditionError(f"Service '{ctx.service_name}' not found in {ctx.compose_file}")
        return service

    def _direct_mounts(self, ctx: RunContext, service: dict[str, Any]) -> list[str]:
        """Compose volumes as `docker run -v` args; relative sources are relative to the run dir."""
        mounts = []
        for volume in service.get("volumes") or []:
            source, _, rest = str(volume).partition(":")
            if source.startswith("."):
                source = os.path.normpath(ctx.run_dir / source)
            mounts.append(f"{source}:{rest}")
        return mounts

    def start(self, ctx: RunContext) -> str | None:
        """Boot the run's container and return its id when it is known."""
        if not ctx.compose_file.exists():
            raise PreconditionError(
                f"Compose file not found at {ctx.compose_file}. Did you run prepare()?"
            )
        if self.compose_mode:
            project = self.compose_project(ctx)
            self.containers.compose_up(project)
            container_id = self.containers.compose_service_container(project, ctx.service_name)
            if container_id:
                ctx.marker_file.write_text(f"{container_id}\n", encoding="utf-8")
            return container_id

        service = self._load_service(ctx)
        tag = self.workspace.image_tag(ctx.task_id)
        self.containers.build_image(
            ctx.dockerfile, tag, {"BASE_IMAGE": self.config.container.base_image}
        )
        entrypoint = list(service.get("entrypoint") or [])
        spec = ContainerSpec(
            image=tag,
            name=ctx.project_name,
            command=entrypoint[1:] + list(service.get("command") or []),
            workdir=self.config.container.workdir,
            host_workdir=ctx.checkout_path,
            env_file=ctx.env_file,
            user=service.get("user"),
            mounts=self._direct_mounts(ctx, service),
            ports=[self.config.container.work_port],
            extra_args=["--entrypoint", entrypoint[0]] if entrypoint else [],
        )
        return self.containers.run_detached(
            spec,
            marker_file=ctx.marker_file,
            stdout_path=ctx.stdout_log,
            stderr_path=ctx.stderr_log,
            timeout_seconds=self.config.container.start_timeout_seconds,
            poll_interval_seconds=self.config.container.poll_interval_seconds,
        )

    def locate_container(self, ctx: RunContext) -> str | None:
        """Find the run's container: marker file, then compose, then predictable names."""
        try:
            marker = ctx.marker_file.read_text(encoding="utf-8").strip()
        except OSError:
            marker = ""
        if marker and self.containers.inspect_status(marker).status != UNKNOWN_STATUS:
            return marker
        if ctx.compose_file.exists():
            container_id = self.containers.compose_service_container(
                self.compose_project(ctx), ctx.service_name
            )
            if container_id:
                return container_id
        for name in (ctx.fallback_container_name, ctx.project_name):
            if self.containers.inspect_status(name).status != UNKNOWN_STATUS:
                return name
        return None

    def inspect(self, ctx: RunContext) -> RunInspection:
        port_number = self.config.container.work_port
        if self.compose_mode:
            if not ctx.compose_file.exists():
                return RunInspection(status="stopped")
            project = self.compose_project(ctx)
            try:
                running = bool(self.containers.compose_running(project))
            except CommandError:
                running = False
            if not running:
                return RunInspection(status="stopped")
            try:
                port = self.containers.compose_port(project, ctx.service_name, port_number)
            except CommandError:
                port = 0
            return RunInspection(status="running", port=port)

        container = self.locate_container(ctx)
        if container is None or not self.containers.inspect_status(container).running:
            return RunInspection(status="stopped")
        try:
            port = self.containers.host_port(container, port_number)
        except CommandError:
            port = 0
        return RunInspection(status="running", port=port)

    def host_port(self, ctx: RunContext, container_port: int | None = None) -> int:
        port_number = container_port or self.config.container.work_port
        if not self.inspect(ctx).running:
            raise PreconditionError(f"Run '{ctx.branch}' is not running")
        try:
            if self.compose_mode:
                return self.containers.compose_port(
                    self.compose_project(ctx), ctx.service_name, port_number
                )
            container = self.locate_container(ctx)
            if container is None:
                raise PreconditionError(f"Run '{ctx.branch}' is not running")
            return self.containers.host_port(container, port_number)
        except CommandError as exc:
            raise PreconditionError(f"Port {port_number} is not opened") from exc

    def stop(self, ctx: RunContext) -> None:
        if self.compose_mode:
            if not ctx.compose_file.exists():
                logger.debug("No compose descriptor for {}; nothing to stop", ctx.ref)
                return
            self.containers.compose_stop(self.compose_project(ctx))
            return
        container = self.locate_container(ctx)
        if container is not None:
            self.containers.stop(container)

    def destroy(self, ctx: RunContext) -> list[str]:
        """Tear down container, checkout and branch; return warnings for failed steps.

        Every step is attempted even if an earlier one failed, so calling this
        again on a partly destroyed run finishes the job.
        """
        warnings: list[str] = []

        def _warn(message: str) -> None:
            logger.warning(message)
            warnings.append(message)

        if ctx.compose_file.exists():
            try:
                self.containers.compose_down(self.compose_project(ctx), volumes=True)
            except CommandError as exc:
                _warn(f"Docker cleanup failed for {ctx.ref}: {exc}")

        try:
            container = self.locate_container(ctx)
            if container is not None:
                self.containers.remove(container, force=True)
        except CommandError as exc:
            _warn(f"Container removal failed for {ctx.ref}: {exc}")

        if ctx.checkout_path.exists():
            try:
                self.vcs.remove_checkout(ctx.checkout_path, force=True)
            except (CommandError, OSError) as exc:
                _warn(f"Checkout removal failed for {ctx.ref}: {exc}")
        else:
            try:
                self.vcs.prune_worktrees()
            except (CommandError, OSError) as exc:
                _warn(f"Worktree prune failed for {ctx.ref}: {exc}")

        if self.vcs.branch_exists(ctx.branch):
            try:
                self.vcs.delete_branch(ctx.branch, force=True)
            except CommandError as exc:
                _warn(f"Branch deletion failed for {ctx.ref}: {exc}")
        return warnings

    def logs(self, ctx: RunContext, follow: bool = False) -> Iterator[str]:
        if self.compose_mode:
            if not ctx.compose_file.exists():
                raise NotFoundError(f"Run {ctx.ref} has no compose descriptor at {ctx.compose_file}")
            yield from self.containers.compose_logs(self.compose_project(ctx), follow=follow)
            return
        if follow:
            logger.warning("Following logs is only supported in compose mode")
        found = False
        for path in (ctx.stdout_log, ctx.stderr_log):
            if path.exists():
                found = True
                yield from path.read_text(encoding="utf-8", errors="replace").splitlines()
        if not found:
            raise NotFoundError(f"Run {ctx.ref} has no captured logs in {ctx.run_dir}")

    def get_run_state(self, ctx: RunContext) -> RunState:
        """Derive the run's phase from its resources. Never raises."""
        try:
            container = self.locate_container(ctx)
            if container is not None:
                return classify_container(self.containers.inspect_status(container))
            if ctx.checkout_path.exists() or self.vcs.branch_exists(ctx.branch):
                return RunState.PREPARING
            return RunState.UNKNOWN
        except (HyperbranchError, OSError) as exc:
            logger.debug("Could not derive state of {}: {}", ctx.ref, exc)
            return RunState.UNKNOWN
