from __future__ import annotations

import shlex
from dataclasses import dataclass
from pathlib import Path

import click

from hyperbranch.adapters import CommandError, ContainerAdapter, DockerAdapter, GitAdapter
from hyperbranch.config import (
    LOCAL_CONFIG_PATH,
    HyperbranchConfig,
    load_workspace_config,
    save_config,
)
from hyperbranch.errors import HyperbranchError, UnsafeStateError
from hyperbranch.log import configure_logging
from hyperbranch.runtime.cleanup import Reconciler
from hyperbranch.runtime.context import RunContext, RunState, Workspace
from hyperbranch.runtime.lifecycle import LifecycleEngine, PrepareOptions
from hyperbranch.tasks.store import TaskStatus, TaskStore


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config: HyperbranchConfig
    workspace: Workspace
    vcs: GitAdapter
    containers: ContainerAdapter
    tasks: TaskStore
    engine: LifecycleEngine
    reconciler: Reconciler


def _resolve_repo_root() -> Path:
    try:
        return GitAdapter(Path.cwd()).main_repo_root()
    except CommandError as exc:
        raise click.ClickException(f"Not inside a git repository: {Path.cwd()}") from exc


def _build_container_adapter(config: HyperbranchConfig) -> ContainerAdapter:
    return DockerAdapter(binary=config.container.binary)


def _load_runtime() -> Runtime:
    repo_root = _resolve_repo_root()
    config = load_workspace_config(repo_root)
    workspace = Workspace.from_config(repo_root, config)
    vcs = GitAdapter(
        repo_root,
        binary=config.git.binary,
        default_branches=config.git.default_branches,
    )
    containers = _build_container_adapter(config)
    tasks = TaskStore(workspace, vcs)
    engine = LifecycleEngine(workspace, vcs, containers, tasks, config)
    return Runtime(
        repo_root=repo_root,
        config=config,
        workspace=workspace,
        vcs=vcs,
        containers=containers,
        tasks=tasks,
        engine=engine,
        reconciler=Reconciler(engine, tasks),
    )


def _parse_target(target: str) -> tuple[str, int | None]:
    """`<task>` or `<task>/<run>`."""
    task_id, sep, run_part = target.partition("/")
    if not task_id:
        raise click.BadParameter(f"Invalid target: {target}")
    if not sep:
        return task_id, None
    if not run_part.isdigit() or run_part.startswith("0"):
        raise click.BadParameter(f"Invalid run index in target: {target}")
    return task_id, int(run_part)


def _resolve_run(runtime: Runtime, target: str) -> RunContext:
    task_id, run_index = _parse_target(target)
    if run_index is None:
        indices = runtime.reconciler.list_run_indices_for_task(task_id)
        if not indices:
            raise click.ClickException(f"No runs found for task {task_id}")
        run_index = indices[-1]
    return runtime.engine.context(task_id, run_index)


def _parse_env(values: tuple[str, ...]) -> dict[str, str]:
    env: dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected KEY=VALUE, got: {item}", param_hint="--env")
        env[key] = value
    return env


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Show debug logging.")
def cli(verbose: bool) -> None:
    """Hyperbranch: isolated branch, checkout and container runs for tasks."""
    configure_logging(verbose)


@cli.command("init")
def init_command() -> None:
    repo_root = _resolve_repo_root()
    config = load_workspace_config(repo_root)
    config_path = repo_root / LOCAL_CONFIG_PATH
    if not config_path.exists():
        save_config(config_path, config)

    workspace = Workspace.from_config(repo_root, config)
    workspace.tasks_dir.mkdir(parents=True, exist_ok=True)
    ignore_path = repo_root / config.workspace.state_dir / ".gitignore"
    ignore_entry = f"{config.workspace.runs_dir_name}/"
    existing = ignore_path.read_text(encoding="utf-8") if ignore_path.exists() else ""
    if ignore_entry not in existing.splitlines():
        prefix = existing if not existing or existing.endswith("\n") else f"{existing}\n"
        ignore_path.write_text(f"{prefix}{ignore_entry}\n", encoding="utf-8")

    click.echo(f"Initialized Hyperbranch in {repo_root}")
    click.echo(f"Config: {config_path}")


@cli.command("create")
@click.argument("title")
@click.option("--parent", default=None, help="Parent task id.")
def create_command(title: str, parent: str | None) -> None:
    runtime = _load_runtime()
    try:
        task = runtime.tasks.create(title, parent)
    except HyperbranchError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Created task {task.id}")
    click.echo(f"File: {task.path}")


@cli.command("ls")
def list_command() -> None:
    runtime = _load_runtime()
    tasks = runtime.tasks.list()
    if not tasks:
        click.echo("No tasks found.")
        return
    for task in tasks:
        parent = f" (parent {task.parent})" if task.parent else ""
        click.echo(f"{task.id}  {task.status.value:<11}  {task.title}{parent}")


@cli.command("dep")
@click.argument("task_id")
@click.argument("dep_id")
def dep_command(task_id: str, dep_id: str) -> None:
    runtime = _load_runtime()
    try:
        added = runtime.tasks.add_dependency(task_id, dep_id)
    except HyperbranchError as exc:
        raise click.ClickException(str(exc)) from exc
    if added:
        click.echo(f"Added dependency: {task_id} -> {dep_id}")
    else:
        click.echo(f"Task {task_id} already depends on {dep_id}")


@cli.command("move")
@click.argument("task_id")
@click.option("--parent", "parent_id", default=None, help="New parent task id.")
@click.option("--root", "to_root", is_flag=True, default=False, help="Detach from any parent.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus]),
    default=None,
)
def move_command(task_id: str, parent_id: str | None, to_root: bool, status: str | None) -> None:
    if parent_id is None and not to_root and status is None:
        raise click.UsageError("Nothing to do: pass --parent, --root or --status.")
    if parent_id is not None and to_root:
        raise click.UsageError("--parent and --root are mutually exclusive.")
    runtime = _load_runtime()
    try:
        if parent_id is not None or to_root:
            old_parent = runtime.tasks.get(task_id).parent
            if runtime.tasks.set_parent(task_id, parent_id):
                click.echo(
                    f"Task {task_id} reparented: {old_parent or 'root'} -> {parent_id or 'root'}"
                )
            else:
                click.echo(f"Task {task_id} is already under parent {parent_id or 'root'}")
        if status is not None:
            runtime.tasks.update(task_id, status=TaskStatus(status))
            click.echo(f"Task {task_id} moved to {status}")
    except HyperbranchError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command("run")
@click.argument("task_id")
@click.option("--prompt", default="", help="Extra instructions passed to the agent.")
@click.option(
    "--dockerfile",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
)
@click.option("--env", "env_values", multiple=True, help="KEY=VALUE, repeatable.")
@click.option("--exec", "exec_command", default=None, help="Command to run instead of the agent.")
@click.option("--no-start", is_flag=True, default=False, help="Prepare the run without starting it.")
def run_command(
    task_id: str,
    prompt: str,
    dockerfile: Path | None,
    env_values: tuple[str, ...],
    exec_command: str | None,
    no_start: bool,
) -> None:
    options = PrepareOptions(
        prompt=prompt,
        env=_parse_env(env_values),
        dockerfile=dockerfile,
        exec_command=shlex.split(exec_command) if exec_command else None,
    )
    runtime = _load_runtime()
    try:
        ctx = runtime.engine.create_run(task_id, options)
        click.echo(f"Prepared run {ctx.ref}")
        click.echo(f"Branch: {ctx.branch}")
        click.echo(f"Checkout: {ctx.checkout_path}")
        if no_start:
            return
        container_id = runtime.engine.start(ctx)
    except HyperbranchError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Started run {ctx.ref}")
    if container_id:
        click.echo(f"Container: {container_id}")


@cli.command("ps")
@click.argument("task_id", required=False)
def ps_command(task_id: str | None) -> None:
    runtime = _load_runtime()
    task_ids = [task_id] if task_id else [task.id for task in runtime.tasks.list()]
    found = False
    for current in task_ids:
        for run_index in runtime.reconciler.list_run_indices_for_task(current):
            ctx = runtime.engine.context(current, run_index)
            state = runtime.engine.get_run_state(ctx)
            line = f"{ctx.ref}  {state.value}"
            if state is RunState.WORKING:
                port = runtime.engine.inspect(ctx).port
                if port:
                    line += f"  port {port}"
            click.echo(line)
            found = True
    if not found:
        click.echo("No runs found.")


@cli.command("stop")
@click.argument("target")
def stop_command(target: str) -> None:
    runtime = _load_runtime()
    ctx = _resolve_run(runtime, target)
    try:
        runtime.engine.stop(ctx)
    except HyperbranchError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Stopped run {ctx.ref}")


@cli.command("logs")
@click.argument("target")
@click.option("--follow", "-f", is_flag=True, default=False)
def logs_command(target: str, follow: bool) -> None:
    runtime = _load_runtime()
    ctx = _resolve_run(runtime, target)
    try:
        for line in runtime.engine.logs(ctx, follow=follow):
            click.echo(line)
    except HyperbranchError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command("port")
@click.argument("target")
@click.argument("container_port", type=int, required=False)
def port_command(target: str, container_port: int | None) -> None:
    runtime = _load_runtime()
    ctx = _resolve_run(runtime, target)
    try:
        port = runtime.engine.host_port(ctx, container_port)
    except HyperbranchError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(str(port))


@cli.command("rm")
@click.argument("targets", nargs=-1)
@click.option("--force", is_flag=True, default=False, help="Skip the safety checks.")
@click.option("--sweep", is_flag=True, default=False, help="Remove every merged, clean, stopped run.")
def rm_command(targets: tuple[str, ...], force: bool, sweep: bool) -> None:
    runtime = _load_runtime()
    if sweep:
        if targets:
            raise click.UsageError("--sweep does not take targets.")
        report = runtime.reconciler.sweep(force=force)
        for ref in report.removed:
            click.echo(f"Removed {ref}")
        for candidate in report.skipped:
            label = str(candidate.ref) if candidate.ref else candidate.name
            click.echo(f"Skipped {label}: {candidate.status.value}")
        for name in report.orphans:
            click.echo(f"Removed orphan {name}")
        click.echo("Sweep complete.")
        return

    if not targets:
        candidates = runtime.reconciler.list_candidates()
        if not candidates:
            click.echo("No candidates found.")
            return
        click.echo("Candidates for removal (sweep):")
        for candidate in candidates:
            click.echo(f"- {candidate.ref}")
        click.echo("\nRun 'hb rm --sweep' to remove these items.")
        return

    failed = False
    for target in targets:
        try:
            task_id, run_index = _parse_target(target)
            if run_index is None:
                task_report = runtime.reconciler.remove_task(task_id, force=force)
                if task_report.not_found:
                    click.echo(f"Task {task_id} not found.", err=True)
                    failed = True
                    continue
                if task_report.record_found and not task_report.record_removed:
                    click.echo(f"Task {task_id} record could not be removed.", err=True)
                    failed = True
                    continue
                click.echo(f"Removed task {task_id} ({len(task_report.runs)} run(s))")
            else:
                run_report = runtime.reconciler.remove_run(task_id, run_index, force=force)
                if run_report.not_found:
                    click.echo(f"Run {run_report.ref} not found.", err=True)
                    failed = True
                    continue
                click.echo(f"Removed run {run_report.ref}")
        except click.BadParameter:
            click.echo(f"Invalid target format: {target}", err=True)
            failed = True
        except UnsafeStateError as exc:
            click.echo(str(exc), err=True)
            click.echo("Use --force to remove anyway.", err=True)
            failed = True
        except HyperbranchError as exc:
            click.echo(f"Error removing {target}: {exc}", err=True)
            failed = True
    if failed:
        raise click.ClickException("Some targets could not be removed.")

