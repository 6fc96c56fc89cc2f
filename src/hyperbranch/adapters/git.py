from __future__ import annotations

import os
import re
import shutil
import subprocess
from collections.abc import Sequence
from pathlib import Path

from loguru import logger

from hyperbranch.adapters.base import CommandError, CommandFailure, VcsAdapter
from hyperbranch.errors import PreconditionError

_VERSION_PATTERN = re.compile(r"git version (\d+)\.(\d+)(?:\.(\d+))?")
_GITDIR_PATTERN = re.compile(r"^gitdir:\s*(.+)$", re.MULTILINE)


class GitAdapter(VcsAdapter):
    # `git worktree add --relative-paths` first shipped in 2.48.
    RELATIVE_PATHS_VERSION = (2, 48)

    def __init__(
        self,
        repo_root: Path,
        *,
        binary: str = "git",
        default_branches: Sequence[str] = ("main", "master"),
        native_relative_paths: bool | None = None,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.binary = binary
        self.default_branches = list(default_branches) or ["master"]
        self._native_relative_paths = native_relative_paths

    def _run_git(
        self,
        args: list[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        workdir = cwd or self.repo_root
        argv = ["git", *args]
        try:
            proc = subprocess.run(
                [self.binary, "--no-pager", *args],
                cwd=workdir,
                text=True,
                capture_output=True,
            )
        except OSError as exc:
            reason = (
                CommandFailure.MISSING_BINARY
                if shutil.which(self.binary) is None
                else CommandFailure.GENERIC
            )
            raise CommandError(
                f"Cannot run {' '.join(argv)} in {workdir}: {exc}",
                tool="git",
                argv=argv,
                reason=reason,
            ) from exc
        if check and proc.returncode != 0:
            raise CommandError.from_process(
                "git", argv, proc.returncode, proc.stderr, proc.stdout
            )
        return proc

    def version(self) -> tuple[int, int, int]:
        proc = self._run_git(["--version"])
        match = _VERSION_PATTERN.search(proc.stdout)
        if match is None:
            raise CommandError(
                f"Could not parse git version from: {proc.stdout.strip()}",
                tool="git",
                argv=["git", "--version"],
            )
        major, minor, patch = match.groups()
        return int(major), int(minor), int(patch or 0)

    def supports_relative_paths(self) -> bool:
        if self._native_relative_paths is None:
            try:
                self._native_relative_paths = (
                    self.version()[:2] >= self.RELATIVE_PATHS_VERSION
                )
            except CommandError:
                self._native_relative_paths = False
        return self._native_relative_paths

    def current_branch(self) -> str | None:
        proc = self._run_git(["branch", "--show-current"], check=False)
        if proc.returncode != 0:
            return None
        return proc.stdout.strip() or None

    def branch_exists(self, branch: str) -> bool:
        proc = self._run_git(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"],
            check=False,
        )
        return proc.returncode == 0

    def list_branches(self, prefix: str) -> list[str]:
        proc = self._run_git(["for-each-ref", "--format=%(refname)", "refs/heads"])
        branches: list[str] = []
        for line in proc.stdout.splitlines():
            name = line.strip().removeprefix("refs/heads/")
            if name and name.startswith(prefix):
                branches.append(name)
        return branches

    def resolve_base_branch(self, preferred: str | None = None) -> str:
        if preferred and self.branch_exists(preferred):
            return preferred
        current = self.current_branch()
        if current and self.branch_exists(current):
            return current
        for candidate in self.default_branches[:-1]:
            if self.branch_exists(candidate):
                return candidate
        return self.default_branches[-1]

    def config_get(self, key: str) -> str | None:
        proc = self._run_git(["config", "--get", key], check=False)
        if proc.returncode != 0:
            return None
        return proc.stdout.strip() or None

    def file_exists_on_branch(self, branch: str, relative_path: str) -> bool:
        proc = self._run_git(["cat-file", "-e", f"{branch}:{relative_path}"], check=False)
        return proc.returncode == 0

    def commit(self, paths: list[Path], message: str) -> None:
        rel_paths = [str(path.resolve().relative_to(self.repo_root)) for path in paths]
        self._run_git(["add", "--", *rel_paths])
        self._run_git(["commit", "-m", message, "--", *rel_paths])

    def common_dir(self) -> Path:
        proc = self._run_git(
            ["rev-parse", "--path-format=absolute", "--git-common-dir"], check=False
        )
        if proc.returncode == 0 and proc.stdout.strip():
            return Path(proc.stdout.strip())
        raw = self._run_git(["rev-parse", "--git-common-dir"]).stdout.strip()
        return (self.repo_root / raw).resolve()

    def main_repo_root(self) -> Path:
        common = self.common_dir()
        return common.parent if common.name == ".git" else common

    def _admin_entries(self) -> list[tuple[Path, Path | None]]:
        """`(admin_dir, linked .git path)` for every worktree git has metadata for."""
        admin_root = self.common_dir() / "worktrees"
        if not admin_root.is_dir():
            return []
        entries: list[tuple[Path, Path | None]] = []
        for admin_dir in sorted(admin_root.iterdir()):
            if not admin_dir.is_dir():
                continue
            gitdir_file = admin_dir / "gitdir"
            target: Path | None = None
            if gitdir_file.is_file():
                target = Path(gitdir_file.read_text(encoding="utf-8").strip())
                # Relative links are relative to the admin dir, never the cwd.
                if not target.is_absolute():
                    target = admin_dir / target
            entries.append((admin_dir, target))
        return entries

    def list_worktrees(self) -> list[Path]:
        """The main checkout, then every linked checkout git still tracks."""
        paths = [self.main_repo_root().resolve()]
        for _, dot_git in self._admin_entries():
            if dot_git is not None:
                paths.append(dot_git.parent.resolve())
        return paths

    def _is_registered_worktree(self, path: Path) -> bool:
        try:
            return path.resolve() in self.list_worktrees()
        except CommandError:
            return False

    def create_checkout(self, branch: str, base: str, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        native = self.supports_relative_paths()
        args = ["worktree", "add"]
        if native:
            args.append("--relative-paths")
        args.extend(["-b", branch, str(path), base])
        try:
            self._run_git(args)
        except CommandError as exc:
            if self.branch_exists(branch):
                raise exc.with_reason(CommandFailure.BRANCH_EXISTS) from exc
            raise
        if native:
            return

        try:
            self._rewrite_links_relative(path)
        except (OSError, PreconditionError) as exc:
            logger.error("Failed to rewrite worktree links for {}: {}", path, exc)
            try:
                self.remove_checkout(path, force=True)
            except (CommandError, OSError) as cleanup_exc:
                logger.warning("Rollback could not remove checkout {}: {}", path, cleanup_exc)
            try:
                self.delete_branch(branch, force=True)
            except CommandError as cleanup_exc:
                logger.warning("Rollback could not delete branch {}: {}", branch, cleanup_exc)
            raise

    @staticmethod
    def _rewrite_links_relative(checkout: Path) -> None:
        """Point `<checkout>/.git` and the admin dir's `gitdir` at each other relatively."""
        dot_git = checkout / ".git"
        if not dot_git.is_file():
            raise PreconditionError(f"Worktree .git file not found at {dot_git}")
        match = _GITDIR_PATTERN.search(dot_git.read_text(encoding="utf-8"))
        if match is None:
            raise PreconditionError(f"Invalid .git file format in {dot_git}")

        admin_dir = Path(match.group(1).strip())
        if not admin_dir.is_absolute():
            admin_dir = (checkout / admin_dir).resolve()
        gitdir_file = admin_dir / "gitdir"
        if not gitdir_file.is_file():
            raise PreconditionError(f"Repository gitdir file not found at {gitdir_file}")

        linked_dot_git = Path(gitdir_file.read_text(encoding="utf-8").strip())
        if not linked_dot_git.is_absolute():
            linked_dot_git = (admin_dir / linked_dot_git).resolve()

        dot_git.write_text(f"gitdir: {os.path.relpath(admin_dir, checkout)}\n", encoding="utf-8")
        gitdir_file.write_text(f"{os.path.relpath(linked_dot_git, admin_dir)}\n", encoding="utf-8")

    def is_dirty(self, path: Path) -> bool:
        try:
            proc = self._run_git(["status", "--porcelain"], cwd=path)
        except CommandError:
            return True
        return bool(proc.stdout.strip())

    def is_merged(self, branch: str, base: str) -> bool:
        proc = self._run_git(
            ["branch", "--merged", base, "--format=%(refname)"], check=False
        )
        if proc.returncode != 0:
            return False
        merged = {line.strip().removeprefix("refs/heads/") for line in proc.stdout.splitlines()}
        return branch in merged

    def unmerged_commits(self, branch: str, base: str) -> list[str]:
        proc = self._run_git(["log", "--oneline", branch, f"^{base}"])
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

    def remove_checkout(self, path: Path, force: bool = False) -> None:
        args = ["worktree", "remove"]
        if force:
            args.append("--force")
        args.append(str(path))
        try:
            self._run_git(args)
        except CommandError as exc:
            if self._is_registered_worktree(path):
                raise
            not_a_worktree = exc.with_reason(CommandFailure.NOT_A_WORKTREE)
            if not force:
                raise not_a_worktree from exc
            logger.debug("{} is not a registered worktree; deleting directory", path)
            if path.exists():
                shutil.rmtree(path)
            self.prune_worktrees()

    def delete_branch(self, branch: str, force: bool = False) -> None:
        self._run_git(["branch", "-D" if force else "-d", branch])

    def prune_worktrees(self) -> None:
        main_root = self.main_repo_root()
        if self.supports_relative_paths():
            self._run_git(["worktree", "prune"], cwd=main_root)
            return
        # Older git resolves a relative `gitdir` against its cwd and would
        # prune live checkouts, so resolve against the admin dir here.
        for admin_dir, dot_git in self._admin_entries():
            if (admin_dir / "locked").exists():
                continue
            if dot_git is not None and dot_git.exists():
                continue
            logger.debug("Pruning stale worktree metadata {}", admin_dir.name)
            shutil.rmtree(admin_dir)
