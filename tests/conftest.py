import subprocess
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

import pytest

from hyperbranch.adapters.base import (
    CommandError,
    ComposeProject,
    ContainerAdapter,
    ContainerSpec,
    ContainerStatus,
)
from hyperbranch.adapters.git import GitAdapter
from hyperbranch.config import HyperbranchConfig
from hyperbranch.runtime.cleanup import Reconciler
from hyperbranch.runtime.context import Workspace
from hyperbranch.runtime.lifecycle import LifecycleEngine
from hyperbranch.tasks.store import TaskStore


def _run(cmd: list[str], cwd: Path) -> str:
    proc = subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)
    return proc.stdout


def _init_git_repo(repo_path: Path) -> None:
    _run(["git", "init", "-b", "main"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    _run(["git", "config", "commit.gpgsign", "false"], cwd=repo_path)
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    state_dir = repo_path / ".hyperbranch"
    state_dir.mkdir()
    (state_dir / ".gitignore").write_text(".runs/\n", encoding="utf-8")
    _run(["git", "add", "README.md", ".hyperbranch/.gitignore"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


class FakeContainerAdapter(ContainerAdapter):
    """In-memory container runtime. Container ids are their names."""

    def __init__(self) -> None:
        self.containers: dict[str, ContainerStatus] = {}
        self.networks: set[str] = set()
        self.images: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self.specs: list[ContainerSpec] = []
        self.fail: set[str] = set()
        self.port = 49153

    def _record(self, operation: str, target: str) -> None:
        self.calls.append((operation, target))
        if operation in self.fail:
            raise CommandError(
                f"docker command failed: {operation} {target}",
                tool="docker",
                argv=["docker", operation, target],
                exit_code=1,
            )

    def add_container(self, name: str, status: str = "running", exit_code: int | None = None) -> None:
        self.containers[name] = ContainerStatus(status=status, exit_code=exit_code)

    def _project_containers(self, project: ComposeProject) -> list[str]:
        return [name for name in self.containers if name.startswith(f"{project.name}-")]

    def build_image(self, dockerfile: Path, tag: str, build_args: dict[str, str] | None = None) -> None:
        self._record("build_image", tag)
        self.images.add(tag)

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
        self._record("run_detached", spec.name)
        self.specs.append(spec)
        self.add_container(spec.name)
        stdout_path.write_text("agent started\n", encoding="utf-8")
        marker_file.write_text(spec.name, encoding="utf-8")
        return spec.name

    def inspect_status(self, container: str) -> ContainerStatus:
        self._record("inspect_status", container)
        return self.containers.get(container, ContainerStatus())

    def remove(self, container: str, force: bool = False) -> None:
        self._record("remove", container)
        if container not in self.containers:
            raise CommandError(f"No such container: {container}", tool="docker", exit_code=1)
        del self.containers[container]

    def stop(self, container: str) -> None:
        self._record("stop", container)
        self.add_container(container, status="exited", exit_code=0)

    def host_port(self, container: str, container_port: int) -> int:
        self._record("host_port", container)
        if not self.containers.get(container, ContainerStatus()).running:
            raise CommandError(f"No public port for {container}", tool="docker", exit_code=1)
        return self.port

    def find_by_partial_name(self, fragment: str) -> list[str]:
        return sorted(name for name in self.containers if fragment in name)

    def find_networks_by_partial_name(self, fragment: str) -> list[str]:
        return sorted(name for name in self.networks if fragment in name)

    def remove_network(self, name: str) -> None:
        self._record("remove_network", name)
        self.networks.discard(name)

    def remove_image(self, tag: str, force: bool = False) -> None:
        self._record("remove_image", tag)
        if tag not in self.images:
            raise CommandError(f"No such image: {tag}", tool="docker", exit_code=1)
        self.images.discard(tag)

    def compose_up(self, project: ComposeProject) -> None:
        self._record("compose_up", project.name)
        assert project.compose_file.exists()
        self.add_container(f"{project.name}-task-1")
        self.networks.add(f"{project.name}_default")

    def compose_down(self, project: ComposeProject, volumes: bool = True) -> None:
        self._record("compose_down", project.name)
        for name in self._project_containers(project):
            del self.containers[name]
        self.networks.discard(f"{project.name}_default")

    def compose_stop(self, project: ComposeProject) -> None:
        self._record("compose_stop", project.name)
        for name in self._project_containers(project):
            self.add_container(name, status="exited", exit_code=0)

    def compose_running(self, project: ComposeProject) -> list[str]:
        self._record("compose_running", project.name)
        return [name for name in self._project_containers(project) if self.containers[name].running]

    def compose_service_container(self, project: ComposeProject, service: str) -> str | None:
        name = f"{project.name}-{service}-1"
        return name if name in self.containers else None

    def compose_port(self, project: ComposeProject, service: str, container_port: int) -> int:
        self._record("compose_port", project.name)
        name = f"{project.name}-{service}-1"
        if not self.containers.get(name, ContainerStatus()).running:
            raise CommandError(f"No public port for {name}", tool="docker", exit_code=1)
        return self.port

    def compose_logs(self, project: ComposeProject, follow: bool = False) -> Iterator[str]:
        self._record("compose_logs", project.name)
        yield f"{project.name}-task-1  | hello"


@dataclass
class Harness:
    repo: Path
    config: HyperbranchConfig
    workspace: Workspace
    vcs: GitAdapter
    containers: FakeContainerAdapter
    tasks: TaskStore
    engine: LifecycleEngine
    reconciler: Reconciler

    def git(self, *args: str, cwd: Path | None = None) -> str:
        return _run(["git", *args], cwd=cwd or self.repo)

    def commit_in_checkout(self, checkout: Path, name: str = "work.txt") -> None:
        (checkout / name).write_text("work\n", encoding="utf-8")
        self.git("add", name, cwd=checkout)
        self.git("commit", "-m", f"add {name}", cwd=checkout)


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    repo_path = tmp_path / "repo"
    repo_path.mkdir()
    _init_git_repo(repo_path)
    return repo_path.resolve()


@pytest.fixture
def fake_containers() -> FakeContainerAdapter:
    return FakeContainerAdapter()


def build_harness(
    repo: Path,
    containers: FakeContainerAdapter,
    config: HyperbranchConfig | None = None,
) -> Harness:
    config = config or HyperbranchConfig.default()
    config.container.poll_interval_seconds = 0.01
    config.container.agent_config_dir = str(repo.parent / "agent-home" / ".opencode")
    workspace = Workspace.from_config(repo, config)
    vcs = GitAdapter(repo, default_branches=config.git.default_branches)
    tasks = TaskStore(workspace, vcs)
    engine = LifecycleEngine(workspace, vcs, containers, tasks, config)
    return Harness(
        repo=repo,
        config=config,
        workspace=workspace,
        vcs=vcs,
        containers=containers,
        tasks=tasks,
        engine=engine,
        reconciler=Reconciler(engine, tasks),
    )


@pytest.fixture
def harness(repo: Path, fake_containers: FakeContainerAdapter) -> Harness:
    return build_harness(repo, fake_containers)
