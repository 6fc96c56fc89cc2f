from __future__ import annotations

import os
import shutil
import subprocess
from collections.abc import Callable
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from hyperbranch.config import ContainerConfig
from hyperbranch.errors import PreconditionError
from hyperbranch.runtime.context import (
    DOCKERFILE_NAME,
    ENTRYPOINT_NAME,
    ENV_FILE_NAME,
    RunContext,
    Workspace,
)

TASK_FILE_PLACEHOLDER = "{task_file}"

# (lock file, host command printing the cache dir, container cache dir)
PACKAGE_CACHES = (
    ("package-lock.json", ["npm", "config", "get", "cache"], "/root/.npm"),
    ("yarn.lock", ["yarn", "cache", "dir"], "/usr/local/share/.cache/yarn"),
    ("pnpm-lock.yaml", ["pnpm", "store", "path"], "/root/.local/share/pnpm/store"),
)


def _packaged_asset(name: str) -> str:
    return resources.files("hyperbranch").joinpath("assets", name).read_text(encoding="utf-8")


def host_user() -> str:
    """`uid:gid` of the invoking user, so files written in the container stay ours."""
    if hasattr(os, "getuid") and hasattr(os, "getgid"):
        return f"{os.getuid()}:{os.getgid()}"
    return "node"


def render_command(command: list[str], task_file: str) -> list[str]:
    return [part.replace(TASK_FILE_PLACEHOLDER, task_file) for part in command]


def _command_output(argv: list[str]) -> str | None:
    try:
        proc = subprocess.run(argv, text=True, capture_output=True)
    except OSError:
        return None
    if proc.returncode != 0:
        return None
    return proc.stdout.strip() or None


def package_cache_mounts(
    root: Path,
    query: Callable[[list[str]], str | None] = _command_output,
) -> list[str]:
    """Host package-manager caches for every lock file present at `root`."""
    mounts: list[str] = []
    for lock_file, argv, target in PACKAGE_CACHES:
        if not (root / lock_file).exists():
            continue
        cache_dir = query(argv)
        if not cache_dir:
            logger.debug("No cache mount for {}: `{}` gave nothing", lock_file, " ".join(argv))
            continue
        mounts.append(f"{cache_dir}:{target}")
    return mounts


def agent_config_mount(host_dir: str, target: str) -> str | None:
    """Read-only mount of the agent's config dir, created on the host if missing."""
    if not host_dir:
        return None
    path = Path(host_dir).expanduser()
    # Created up front so docker does not create it root-owned.
    path.mkdir(parents=True, exist_ok=True)
    return f"{path}:{target}:ro"


def run_mounts(root: Path, container: ContainerConfig) -> list[str]:
    mounts = package_cache_mounts(root, _command_output) if container.package_cache_mounts else []
    agent_mount = agent_config_mount(container.agent_config_dir, container.agent_config_target)
    if agent_mount is not None:
        mounts.append(agent_mount)
    return mounts


def container_run_dir(workspace: Workspace, workdir: str) -> str:
    return f"{workdir.rstrip('/')}/{workspace.state_dir}/{workspace.run_dir_name}"


def compose_descriptor(
    ctx: RunContext,
    workspace: Workspace,
    container: ContainerConfig,
    command: list[str],
    user: str,
    mounts: list[str] | None = None,
) -> dict[str, Any]:
    service: dict[str, Any] = {
        "build": {
            "context": ".",
            "dockerfile": DOCKERFILE_NAME,
            "args": {"BASE_IMAGE": container.base_image},
        },
        "image": workspace.image_tag(ctx.task_id),
        "working_dir": container.workdir,
        "env_file": [ENV_FILE_NAME],
        # The run dir sits two levels below the checkout root.
        "volumes": [f"../..:{container.workdir}", *(mounts or [])],
        "ports": [str(container.work_port)],
        "entrypoint": ["sh", f"{container_run_dir(workspace, container.workdir)}/{ENTRYPOINT_NAME}"],
        "command": list(command),
    }
    if ":" in user:
        service["user"] = user
    return {"services": {ctx.service_name: service}}


def write_run_assets(
    ctx: RunContext,
    workspace: Workspace,
    container: ContainerConfig,
    *,
    command: list[str],
    user: str,
    dockerfile: Path | None = None,
    mounts: list[str] | None = None,
) -> None:
    """Scaffold the run dir: Dockerfile, compose descriptor, entrypoint and a catch-all ignore."""
    ctx.run_dir.mkdir(parents=True, exist_ok=True)
    # Keeps run assets and logs from ever making the checkout dirty.
    (ctx.run_dir / ".gitignore").write_text("*\n", encoding="utf-8")

    if dockerfile is not None:
        if not dockerfile.is_file():
            raise PreconditionError(f"Dockerfile override not found at {dockerfile}")
        shutil.copyfile(dockerfile, ctx.dockerfile)
    else:
        ctx.dockerfile.write_text(_packaged_asset(DOCKERFILE_NAME), encoding="utf-8")

    ctx.entrypoint.write_text(_packaged_asset(ENTRYPOINT_NAME), encoding="utf-8")
    ctx.entrypoint.chmod(0o755)

    descriptor = compose_descriptor(ctx, workspace, container, command, user, mounts)
    ctx.compose_file.write_text(
        yaml.safe_dump(descriptor, sort_keys=False, default_flow_style=False),
        encoding="utf-8",
    )


def write_env_file(path: Path, env: dict[str, str]) -> None:
    # Env files are line based; embedded newlines are written as `\n`.
    lines = [f"{key}={value}".replace("\r", "").replace("\n", "\\n") for key, value in env.items()]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def read_env_file(path: Path) -> dict[str, str]:
    env: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        key, sep, value = line.partition("=")
        if sep and key and not key.startswith("#"):
            env[key] = value
    return env
