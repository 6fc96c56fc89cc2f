from pathlib import Path

import pytest
import yaml

from hyperbranch.adapters.base import CommandError
from hyperbranch.errors import NotFoundError, PreconditionError
from hyperbranch.runtime.assets import read_env_file
from hyperbranch.runtime.context import RunState
from hyperbranch.runtime.lifecycle import PrepareOptions


def test_run_indices_are_max_plus_one(harness) -> None:
    task = harness.tasks.create("Indices")

    first = harness.engine.create_run(task.id)
    second = harness.engine.create_run(task.id)
    assert (first.run_index, second.run_index) == (1, 2)

    harness.engine.destroy(first)
    assert harness.engine.next_run_index(task.id) == 3
    third = harness.engine.create_run(task.id)
    assert third.run_index == 3

    harness.engine.destroy(third)
    harness.engine.destroy(second)
    assert harness.engine.next_run_index(task.id) == 1


def test_create_run_skips_claimed_indices(harness) -> None:
    task = harness.tasks.create("Skip")
    harness.git("branch", f"task/{task.id}/1")
    harness.workspace.run_context(task.id, 2).checkout_path.mkdir(parents=True)

    ctx = harness.engine.create_run(task.id)

    assert ctx.run_index == 3


def test_create_run_retries_after_losing_a_race(harness, monkeypatch: pytest.MonkeyPatch) -> None:
    task = harness.tasks.create("Race")
    harness.git("branch", f"task/{task.id}/1")
    real_branch_exists = harness.vcs.branch_exists
    hidden = {f"task/{task.id}/1"}

    def stale_branch_exists(branch: str) -> bool:
        # The first lookup misses the branch, as if another process created it right after.
        if branch in hidden:
            hidden.discard(branch)
            return False
        return real_branch_exists(branch)

    monkeypatch.setattr(harness.vcs, "branch_exists", stale_branch_exists)
    monkeypatch.setattr(harness.engine, "next_run_index", lambda task_id: 1)

    ctx = harness.engine.create_run(task.id)

    assert ctx.run_index == 2
    assert ctx.checkout_path.exists()


def test_create_run_requires_known_task(harness) -> None:
    with pytest.raises(NotFoundError):
        harness.engine.create_run("missing")


def test_prepare_requires_committed_task(harness) -> None:
    task = harness.tasks.create("Uncommitted", commit=False)
    ctx = harness.engine.context(task.id, 1)

    with pytest.raises(PreconditionError):
        harness.engine.prepare(ctx)

    assert not ctx.checkout_path.exists()
    assert harness.vcs.branch_exists(ctx.branch) is False


def test_prepare_refuses_existing_checkout(harness) -> None:
    task = harness.tasks.create("Existing")
    ctx = harness.engine.context(task.id, 1)
    ctx.checkout_path.mkdir(parents=True)

    with pytest.raises(PreconditionError):
        harness.engine.prepare(ctx)


def test_prepare_scaffolds_run_dir(harness, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HB_TEST_TOKEN", "secret")
    harness.config.run.env_vars = ["HB_TEST_TOKEN", "HB_TEST_UNSET"]
    task = harness.tasks.create("Scaffold")

    ctx = harness.engine.create_run(
        task.id, PrepareOptions(prompt="line one\nline two", env={"EXTRA": "1"})
    )

    for path in (ctx.dockerfile, ctx.compose_file, ctx.env_file, ctx.entrypoint):
        assert path.is_file()
    assert ctx.entrypoint.stat().st_mode & 0o111
    assert (ctx.run_dir / ".gitignore").read_text(encoding="utf-8") == "*\n"
    assert harness.vcs.is_dirty(ctx.checkout_path) is False

    service = yaml.safe_load(ctx.compose_file.read_text(encoding="utf-8"))["services"]["task"]
    assert service["image"] == f"hyperbranch-run:{task.id}"
    agent_dir = harness.config.container.agent_config_dir
    assert service["volumes"] == ["../..:/app", f"{agent_dir}:/root/.opencode:ro"]
    assert Path(agent_dir).is_dir()
    assert service["ports"] == ["4096"]
    assert f".hyperbranch/tasks/task-{task.id}.md" in service["command"]

    env = read_env_file(ctx.env_file)
    assert env["HYPERBRANCH_TASK_ID"] == task.id
    assert env["HYPERBRANCH_TASK_FILE"] == f".hyperbranch/tasks/task-{task.id}.md"
    assert env["HYPERBRANCH_AGENT_MODE"] == "build"
    assert env["HYPERBRANCH_PROMPT"] == "line one\\nline two"
    assert env["GIT_AUTHOR_NAME"] == "Test User"
    assert env["GIT_COMMITTER_EMAIL"] == "test@example.com"
    assert env["HB_TEST_TOKEN"] == "secret"
    assert "HB_TEST_UNSET" not in env
    assert env["EXTRA"] == "1"
    assert env["HB_USER"] == f"{env['HB_UID']}:{env['HB_GID']}" or env["HB_USER"] == "node"


def test_prepare_uses_parent_branch_as_base(harness) -> None:
    parent = harness.tasks.create("Parent")
    child = harness.tasks.create("Child", parent=parent.id)
    harness.git("branch", f"task/{parent.id}")

    assert harness.engine.resolve_base_branch(child.id) == f"task/{parent.id}"
    ctx = harness.engine.create_run(child.id)
    assert harness.vcs.is_merged(ctx.branch, f"task/{parent.id}")

    late = harness.tasks.create("Late child", parent=parent.id)
    with pytest.raises(PreconditionError):
        harness.engine.create_run(late.id)


def test_exec_override_and_custom_dockerfile(harness, tmp_path: Path) -> None:
    dockerfile = tmp_path / "Dockerfile.custom"
    dockerfile.write_text("FROM alpine:3\n", encoding="utf-8")
    task = harness.tasks.create("Custom")

    ctx = harness.engine.create_run(
        task.id, PrepareOptions(dockerfile=dockerfile, exec_command=["echo", "hi"])
    )

    assert ctx.dockerfile.read_text(encoding="utf-8") == "FROM alpine:3\n"
    service = yaml.safe_load(ctx.compose_file.read_text(encoding="utf-8"))["services"]["task"]
    assert service["command"] == ["echo", "hi"]


def test_compose_lifecycle(harness) -> None:
    task = harness.tasks.create("Compose")
    ctx = harness.engine.create_run(task.id)
    assert harness.engine.get_run_state(ctx) is RunState.PREPARING
    assert harness.engine.inspect(ctx).status == "stopped"

    container_id = harness.engine.start(ctx)

    assert container_id == f"hb-{task.id}-1-task-1"
    assert ctx.marker_file.read_text(encoding="utf-8").strip() == container_id
    assert harness.engine.get_run_state(ctx) is RunState.WORKING
    inspection = harness.engine.inspect(ctx)
    assert inspection.status == "running"
    assert inspection.port == 49153
    assert harness.engine.host_port(ctx) == 49153
    assert list(harness.engine.logs(ctx)) == [f"hb-{task.id}-1-task-1  | hello"]

    harness.engine.stop(ctx)
    assert harness.engine.get_run_state(ctx) is RunState.COMPLETED
    with pytest.raises(PreconditionError):
        harness.engine.host_port(ctx)


def test_start_requires_prepared_run(harness) -> None:
    task = harness.tasks.create("Unprepared")

    with pytest.raises(PreconditionError):
        harness.engine.start(harness.engine.context(task.id, 1))


def test_stop_without_descriptor_is_a_no_op(harness) -> None:
    task = harness.tasks.create("Nothing")

    harness.engine.stop(harness.engine.context(task.id, 1))

    assert harness.containers.calls == []


def test_direct_mode_lifecycle(harness) -> None:
    harness.config.container.mode = "direct"
    task = harness.tasks.create("Direct")
    ctx = harness.engine.create_run(task.id)

    container_id = harness.engine.start(ctx)

    assert container_id == f"hb-{task.id}-1"
    assert f"hyperbranch-run:{task.id}" in harness.containers.images
    assert harness.engine.get_run_state(ctx) is RunState.WORKING
    assert harness.engine.host_port(ctx, 4096) == 49153
    assert list(harness.engine.logs(ctx)) == ["agent started"]

    harness.engine.stop(ctx)
    assert harness.engine.get_run_state(ctx) is RunState.COMPLETED
    assert harness.engine.destroy(ctx) == []
    assert ctx.marker_file.exists() is False
    assert f"hb-{task.id}-1" not in harness.containers.containers


def test_direct_mode_mounts_follow_compose_volumes(harness, monkeypatch: pytest.MonkeyPatch) -> None:
    harness.config.container.mode = "direct"
    (harness.repo / "package-lock.json").write_text("{}\n", encoding="utf-8")
    monkeypatch.setattr(
        "hyperbranch.runtime.assets._command_output",
        lambda argv: "/host/npm-cache" if argv[0] == "npm" else None,
    )
    task = harness.tasks.create("Mounts")
    ctx = harness.engine.create_run(task.id)

    harness.engine.start(ctx)

    agent_dir = harness.config.container.agent_config_dir
    assert harness.containers.specs[-1].mounts == [
        f"{ctx.checkout_path}:/app",
        "/host/npm-cache:/root/.npm",
        f"{agent_dir}:/root/.opencode:ro",
    ]


def test_prepare_without_host_mounts(harness) -> None:
    harness.config.container.package_cache_mounts = False
    harness.config.container.agent_config_dir = ""
    (harness.repo / "yarn.lock").write_text("", encoding="utf-8")
    task = harness.tasks.create("Bare")

    ctx = harness.engine.create_run(task.id)

    service = yaml.safe_load(ctx.compose_file.read_text(encoding="utf-8"))["services"]["task"]
    assert service["volumes"] == ["../..:/app"]


def test_destroy_is_idempotent(harness) -> None:
    task = harness.tasks.create("Destroy")
    ctx = harness.engine.create_run(task.id)
    harness.engine.start(ctx)

    assert harness.engine.destroy(ctx) == []
    assert not ctx.checkout_path.exists()
    assert harness.vcs.branch_exists(ctx.branch) is False
    assert harness.containers.containers == {}
    assert harness.engine.get_run_state(ctx) is RunState.UNKNOWN

    assert harness.engine.destroy(ctx) == []
    assert harness.engine.get_run_state(ctx) is RunState.UNKNOWN


def test_destroy_continues_past_failures(harness) -> None:
    task = harness.tasks.create("Stubborn")
    ctx = harness.engine.create_run(task.id)
    harness.engine.start(ctx)
    harness.containers.fail.add("compose_down")

    warnings = harness.engine.destroy(ctx)

    assert len(warnings) == 1
    assert "Docker cleanup failed" in warnings[0]
    assert harness.containers.containers == {}
    assert not ctx.checkout_path.exists()
    assert harness.vcs.branch_exists(ctx.branch) is False


def test_destroy_partial_run_with_only_a_branch(harness) -> None:
    task = harness.tasks.create("Partial")
    ctx = harness.engine.context(task.id, 4)
    harness.git("branch", ctx.branch)

    assert harness.engine.destroy(ctx) == []
    assert harness.vcs.branch_exists(ctx.branch) is False


@pytest.mark.parametrize(
    ("branch", "checkout", "container", "expected"),
    [
        (False, False, None, RunState.UNKNOWN),
        (True, False, None, RunState.PREPARING),
        (False, True, None, RunState.PREPARING),
        (True, True, None, RunState.PREPARING),
        (False, False, ("running", None), RunState.WORKING),
        (True, True, ("created", None), RunState.STARTING),
        (True, True, ("restarting", None), RunState.STARTING),
        (True, False, ("exited", 0), RunState.COMPLETED),
        (False, True, ("exited", 2), RunState.FAILED),
        (True, True, ("dead", None), RunState.FAILED),
        (True, True, ("paused", None), RunState.FAILED),
    ],
)
def test_run_state_over_resource_matrix(harness, branch, checkout, container, expected) -> None:
    ctx = harness.engine.context("matrix", 1)
    if branch:
        harness.git("branch", ctx.branch)
    if checkout:
        ctx.checkout_path.mkdir(parents=True)
    if container is not None:
        status, exit_code = container
        harness.containers.add_container(ctx.fallback_container_name, status=status, exit_code=exit_code)

    assert harness.engine.get_run_state(ctx) is expected


def test_run_state_never_raises(harness) -> None:
    ctx = harness.engine.context("broken", 1)
    harness.containers.fail.add("inspect_status")

    assert harness.engine.get_run_state(ctx) is RunState.UNKNOWN


def test_inspect_survives_port_lookup_failure(harness) -> None:
    task = harness.tasks.create("Ports")
    ctx = harness.engine.create_run(task.id)
    harness.engine.start(ctx)
    harness.containers.fail.add("compose_port")

    inspection = harness.engine.inspect(ctx)

    assert inspection.status == "running"
    assert inspection.port == 0
    with pytest.raises(PreconditionError):
        harness.engine.host_port(ctx)


def test_start_failure_surfaces_command_error(harness) -> None:
    task = harness.tasks.create("Boom")
    ctx = harness.engine.create_run(task.id)
    harness.containers.fail.add("compose_up")

    with pytest.raises(CommandError):
        harness.engine.start(ctx)
