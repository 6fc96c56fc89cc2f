from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

ContainerMode = Literal["compose", "direct"]

LOCAL_CONFIG_PATH = Path(".hyperbranch") / "config.toml"
ROOT_CONFIG_PATH = Path(".hyperbranch.config.toml")


@dataclass(slots=True)
class WorkspaceConfig:
    namespace: str = "task"
    container_prefix: str = "hb"
    state_dir: str = ".hyperbranch"
    runs_dir_name: str = ".runs"
    tasks_dir_name: str = "tasks"
    run_dir_name: str = ".current-run"


@dataclass(slots=True)
class GitConfig:
    binary: str = "git"
    default_branches: list[str] = field(default_factory=lambda: ["main", "master"])


@dataclass(slots=True)
class ContainerConfig:
    binary: str = "docker"
    mode: ContainerMode = "compose"
    base_image: str = "mcr.microsoft.com/devcontainers/typescript-node:22"
    image_prefix: str = "hyperbranch-run"
    service_name: str = "task"
    work_port: int = 4096
    workdir: str = "/app"
    command: list[str] = field(
        default_factory=lambda: [
            "npx",
            "-y",
            "opencode-ai",
            "run",
            "--file",
            "{task_file}",
            "--",
            "Please complete this task.",
        ]
    )
    start_timeout_seconds: float = 300.0
    poll_interval_seconds: float = 0.5
    package_cache_mounts: bool = True
    agent_config_dir: str = "~/.opencode"
    agent_config_target: str = "/root/.opencode"


@dataclass(slots=True)
class RunConfig:
    env_vars: list[str] = field(default_factory=list)
    agent_mode: str = "build"


@dataclass(slots=True)
class HyperbranchConfig:
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    git: GitConfig = field(default_factory=GitConfig)
    container: ContainerConfig = field(default_factory=ContainerConfig)
    run: RunConfig = field(default_factory=RunConfig)

    @classmethod
    def default(cls) -> HyperbranchConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> HyperbranchConfig:
        return cls(
            workspace=WorkspaceConfig(**data.get("workspace", {})),
            git=GitConfig(**data.get("git", {})),
            container=ContainerConfig(**data.get("container", {})),
            run=RunConfig(**data.get("run", {})),
        )

    def to_dict(self) -> dict:
        return {
            "workspace": {
                "namespace": self.workspace.namespace,
                "container_prefix": self.workspace.container_prefix,
                "state_dir": self.workspace.state_dir,
                "runs_dir_name": self.workspace.runs_dir_name,
                "tasks_dir_name": self.workspace.tasks_dir_name,
                "run_dir_name": self.workspace.run_dir_name,
            },
            "git": {
                "binary": self.git.binary,
                "default_branches": list(self.git.default_branches),
            },
            "container": {
                "binary": self.container.binary,
                "mode": self.container.mode,
                "base_image": self.container.base_image,
                "image_prefix": self.container.image_prefix,
                "service_name": self.container.service_name,
                "work_port": self.container.work_port,
                "workdir": self.container.workdir,
                "command": list(self.container.command),
                "start_timeout_seconds": self.container.start_timeout_seconds,
                "poll_interval_seconds": self.container.poll_interval_seconds,
                "package_cache_mounts": self.container.package_cache_mounts,
                "agent_config_dir": self.container.agent_config_dir,
                "agent_config_target": self.container.agent_config_target,
            },
            "run": {
                "env_vars": list(self.run.env_vars),
                "agent_mode": self.run.agent_mode,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: HyperbranchConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["workspace", "git", "container", "run"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            # Arrays and scalars replace.
            merged[key] = value
    return merged


def load_config(path: Path) -> HyperbranchConfig:
    if not path.exists():
        return HyperbranchConfig.default()
    return HyperbranchConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def load_workspace_config(root: Path) -> HyperbranchConfig:
    """Layer `.hyperbranch/config.toml` under the root-level `.hyperbranch.config.toml`."""
    data: dict[str, Any] = {}
    for relative in (LOCAL_CONFIG_PATH, ROOT_CONFIG_PATH):
        path = root / relative
        if path.exists():
            data = _merge(data, tomllib.loads(path.read_text(encoding="utf-8")))
    return HyperbranchConfig.from_dict(data)


def save_config(path: Path, config: HyperbranchConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
