from __future__ import annotations

import shutil
import subprocess
import time
from collections.abc import Iterator
from pathlib import Path

from loguru import logger

from hyperbranch.adapters.base import (
    CommandError,
    CommandFailure,
    ComposeProject,
    ContainerAdapter,
    ContainerSpec,
    ContainerStatus,
    LaunchTimeoutError,
)

_STATUS_FORMAT = "{{.State.Status}}|{{.State.StartedAt}}|{{.State.ExitCode}}"


def _parse_port(output: str) -> int | None:
    # `docker port` prints one binding per line, e.g. `0.0.0.0:49153`.
    for line in output.splitlines():
        _, sep, port = line.strip().rpartition(":")
        if sep and port.isdigit():
            return int(port)
    return None


def _read_marker(marker_file: Path) -> str:
    try:
        return marker_file.read_text(encoding="utf-8").strip()
    except OSError:
        return ""


def _tail(path: Path, limit: int = 2000) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")[-limit:]
    except OSError:
        return ""


class DockerAdapter(ContainerAdapter):
    def __init__(self, binary: str = "docker") -> None:
        self.binary = binary

    def _missing_binary(self, argv: list[str], exc: OSError) -> CommandError:
        reason = (
            CommandFailure.MISSING_BINARY
            if shutil.which(self.binary) is None
            else CommandFailure.GENERIC
        )
        return CommandError(
            f"Cannot run {' '.join(argv)}: {exc}",
            tool="docker",
            argv=argv,
            reason=reason,
        )

    def _run(
        self,
        args: list[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        argv = ["docker", *args]
        logger.debug("Running {}", " ".join(argv))
        try:
            proc = subprocess.run(
                [self.binary, *args],
                cwd=cwd,
                text=True,
                capture_output=True,
            )
        except OSError as exc:
            raise self._missing_binary(argv, exc) from exc
        if check and proc.returncode != 0:
            raise CommandError.from_process(
                "docker", argv, proc.returncode, proc.stderr, proc.stdout
            )
        return proc

    @staticmethod
    def _compose_args(project: ComposeProject, args: list[str]) -> list[str]:
        return ["compose", "-f", str(project.compose_file), "-p", project.name, *args]

    def _compose(
        self, project: ComposeProject, args: list[str], *, check: bool = True
    ) -> subprocess.CompletedProcess[str]:
        return self._run(self._compose_args(project, args), cwd=project.workdir, check=check)

    def build_image(
        self, dockerfile: Path, tag: str, build_args: dict[str, str] | None = None
    ) -> None:
        args = ["build", "-f", str(dockerfile), "-t", tag]
        for key, value in (build_args or {}).items():
            args.extend(["--build-arg", f"{key}={value}"])
        args.append(str(dockerfile.parent))
        self._run(args, cwd=dockerfile.parent)

    def _run_args(self, spec: ContainerSpec, marker_file: Path) -> list[str]:
        args = ["run", "--cidfile", str(marker_file), "--name", spec.name, "-w", spec.workdir]
        if spec.env_file is not None:
            args.extend(["--env-file", str(spec.env_file)])
        if spec.user:
            args.extend(["--user", spec.user])
        for mount in spec.mounts:
            args.extend(["-v", mount])
        for port in spec.ports:
            args.extend(["-p", str(port)])
        args.extend(spec.extra_args)
        args.append(spec.image)
        args.extend(spec.command)
        return args

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
        """Launch `docker run` in its own session and wait for the cid file.

        The launcher stays attached to the container so its output lands in
        the run's log files. Docker refuses to overwrite an existing cid file,
        so a stale marker is removed first.
        """
        marker_file.unlink(missing_ok=True)
        args = self._run_args(spec, marker_file)
        argv = ["docker", *args]
        logger.debug("Launching {}", " ".join(argv))
        with stdout_path.open("ab") as stdout, stderr_path.open("ab") as stderr:
            try:
                process = subprocess.Popen(
                    [self.binary, *args],
                    cwd=spec.host_workdir,
                    stdin=subprocess.DEVNULL,
                    stdout=stdout,
                    stderr=stderr,
                    start_new_session=True,
                )
            except OSError as exc:
                raise self._missing_binary(argv, exc) from exc

        deadline = time.monotonic() + timeout_seconds
        try:
            while True:
                container_id = _read_marker(marker_file)
                if container_id:
                    return container_id
                exit_code = process.poll()
                if exit_code is not None:
                    container_id = _read_marker(marker_file)
                    if container_id and exit_code == 0:
                        return container_id
                    raise CommandError.from_process(
                        "docker", argv, exit_code, _tail(stderr_path)
                    )
                if time.monotonic() >= deadline:
                    process.kill()
                    process.wait()
                    raise LaunchTimeoutError(
                        f"Container {spec.name} did not start within {timeout_seconds:g}s",
                        tool="docker",
                        argv=argv,
                    )
                time.sleep(poll_interval_seconds)
        except KeyboardInterrupt:
            logger.warning("Interrupted while starting {}; stopping it", spec.name)
            process.kill()
            process.wait()
            self._run(["stop", _read_marker(marker_file) or spec.name], check=False)
            raise

    def inspect_status(self, container: str) -> ContainerStatus:
        proc = self._run(["inspect", "--format", _STATUS_FORMAT, container], check=False)
        if proc.returncode != 0:
            return ContainerStatus()
        status, _, rest = proc.stdout.strip().partition("|")
        started_at, _, exit_code = rest.partition("|")
        try:
            parsed_exit: int | None = int(exit_code)
        except ValueError:
            parsed_exit = None
        return ContainerStatus(
            status=status or ContainerStatus().status,
            started_at=started_at,
            exit_code=parsed_exit,
        )

    def remove(self, container: str, force: bool = False) -> None:
        args = ["rm"]
        if force:
            args.append("-f")
        args.append(container)
        self._run(args)

    def stop(self, container: str) -> None:
        self._run(["stop", container])

    def host_port(self, container: str, container_port: int) -> int:
        args = ["port", container, str(container_port)]
        proc = self._run(args)
        port = _parse_port(proc.stdout)
        if port is None:
            raise CommandError(
                f"Port {container_port} of {container} is not published",
                tool="docker",
                argv=["docker", *args],
            )
        return port

    def find_by_partial_name(self, fragment: str) -> list[str]:
        proc = self._run(
            ["ps", "-a", "--filter", f"name={fragment}", "--format", "{{.Names}}"],
            check=False,
        )
        if proc.returncode != 0:
            return []
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

    def find_networks_by_partial_name(self, fragment: str) -> list[str]:
        proc = self._run(
            ["network", "ls", "--filter", f"name={fragment}", "--format", "{{.Name}}"],
            check=False,
        )
        if proc.returncode != 0:
            return []
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

    def remove_network(self, name: str) -> None:
        self._run(["network", "rm", name])

    def remove_image(self, tag: str, force: bool = False) -> None:
        args = ["rmi"]
        if force:
            args.append("-f")
        args.append(tag)
        self._run(args)

    def compose_up(self, project: ComposeProject) -> None:
        self._compose(project, ["up", "-d", "--build"])

    def compose_down(self, project: ComposeProject, volumes: bool = True) -> None:
        args = ["down", "--remove-orphans"]
        if volumes:
            args.insert(1, "-v")
        self._compose(project, args)

    def compose_stop(self, project: ComposeProject) -> None:
        self._compose(project, ["stop"])

    def compose_running(self, project: ComposeProject) -> list[str]:
        proc = self._compose(project, ["ps", "-q"])
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

    def compose_service_container(self, project: ComposeProject, service: str) -> str | None:
        proc = self._compose(project, ["ps", "-a", "-q", service], check=False)
        if proc.returncode != 0:
            return None
        ids = [line.strip() for line in proc.stdout.splitlines() if line.strip()]
        return ids[0] if ids else None

    def compose_port(self, project: ComposeProject, service: str, container_port: int) -> int:
        args = ["port", service, str(container_port)]
        proc = self._compose(project, args)
        port = _parse_port(proc.stdout)
        if port is None:
            raise CommandError(
                f"Port {container_port} of service {service} is not published",
                tool="docker",
                argv=["docker", *self._compose_args(project, args)],
            )
        return port

    def compose_logs(self, project: ComposeProject, follow: bool = False) -> Iterator[str]:
        args = self._compose_args(project, ["logs", "--no-color"])
        if follow:
            args.append("-f")
        argv = ["docker", *args]
        try:
            process = subprocess.Popen(
                [self.binary, *args],
                cwd=project.workdir,
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
            )
        except OSError as exc:
            raise self._missing_binary(argv, exc) from exc
        assert process.stdout is not None
        try:
            for line in process.stdout:
                yield line.rstrip("\n")
        finally:
            if process.poll() is None:
                process.terminate()
            return_code = process.wait()
            process.stdout.close()
        if return_code not in (0, -15):
            raise CommandError(
                f"docker command failed: {' '.join(argv)}",
                tool="docker",
                argv=argv,
                exit_code=return_code,
            )
