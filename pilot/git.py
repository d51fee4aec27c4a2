"""
Pilot Git access.

Thin wrapper over the git CLI for the one repository the loop drives.
Every command runs with a timeout; failures raise GitError unless the
caller passes check=False.
"""

from __future__ import annotations

import subprocess
from pathlib import Path

from loguru import logger


class GitError(Exception):
    pass


class Git:
    """Git commands rooted at the project's top-level directory."""

    def __init__(self, root: Path, timeout: int = 60):
        self.root = root
        self.timeout = timeout

    @classmethod
    def discover(cls, start: Path) -> "Git":
        """Locate the repository containing `start` (the workspace directory)."""
        top = cls._run_cmd(["git", "rev-parse", "--show-toplevel"], cwd=start, capture=True)
        return cls(Path(top.strip()).resolve())

    @staticmethod
    def is_repository(path: Path) -> bool:
        try:
            out = Git._run_cmd(["git", "rev-parse", "--is-inside-work-tree"], cwd=path, capture=True)
        except (GitError, OSError):
            return False
        return out.strip() == "true"

    # -- refs ------------------------------------------------------------

    def head(self) -> str | None:
        try:
            return self._git("rev-parse", "HEAD", capture=True).strip() or None
        except GitError:
            return None

    def branch(self) -> str | None:
        """Current branch name, or None on a detached HEAD."""
        try:
            name = self._git("rev-parse", "--abbrev-ref", "HEAD", capture=True).strip()
        except GitError:
            return None
        return None if name == "HEAD" else name

    def origin_default_branch(self) -> str | None:
        try:
            ref = self._git("symbolic-ref", "refs/remotes/origin/HEAD", capture=True).strip()
        except GitError:
            return None
        prefix = "refs/remotes/origin/"
        return ref[len(prefix):] if ref.startswith(prefix) else None

    def checkout_new_branch(self, name: str) -> None:
        self._git("checkout", "-b", name)

    def stash_push(self, message: str) -> None:
        self._git("stash", "push", "-u", "-m", message)

    # -- working tree ----------------------------------------------------

    def is_dirty(self) -> bool:
        return bool(self._git("status", "--porcelain", capture=True, check=False).strip())

    def changed_files(self) -> tuple[list[str], set[str]]:
        """All changed paths (tracked + untracked) and the untracked subset."""
        out = self._git("status", "--porcelain", "-z", "--untracked-files=all", capture=True)
        files: list[str] = []
        untracked: set[str] = set()
        entries = out.split("\0")
        i = 0
        while i < len(entries):
            entry = entries[i]
            i += 1
            if len(entry) < 4:
                continue
            xy, path = entry[:2], entry[3:]
            if "R" in xy or "C" in xy:
                # -z emits the rename source as the following entry
                i += 1
            if path not in files:
                files.append(path)
            if xy == "??":
                untracked.add(path)
        return files, untracked

    def untracked_files(self) -> list[str]:
        out = self._git("ls-files", "--others", "--exclude-standard", "-z", capture=True, check=False)
        return [p for p in out.split("\0") if p]

    def numstat(self, cached: bool = False) -> list[tuple[str, str, str]]:
        """(added, removed, path) rows; binary files report '-' for both counts."""
        args = ["diff", "--numstat", "--no-renames", "-z"]
        if cached:
            args.insert(1, "--cached")
        out = self._git(*args, capture=True, check=False)
        rows = []
        for record in out.split("\0"):
            parts = record.split("\t", 2)
            if len(parts) == 3 and parts[2]:
                rows.append((parts[0], parts[1], parts[2]))
        return rows

    def diff(self, cached: bool = False) -> str:
        args = ["diff", "--cached"] if cached else ["diff"]
        return self._git(*args, capture=True, check=False)

    def diff_stat(self) -> str:
        return self._git("diff", "--stat", capture=True, check=False).rstrip()

    def reset_hard(self, ref: str) -> None:
        self._git("reset", "--hard", ref)

    def clean(self, exclude: list[str] | None = None) -> None:
        args = ["clean", "-fd"]
        for pattern in exclude or []:
            args += ["-e", pattern]
        self._git(*args)

    def clean_paths(self, paths: list[str]) -> None:
        if paths:
            self._git("clean", "-fd", "--", *paths)

    def add_all(self) -> None:
        self._git("add", "-A")

    def commit(self, message: str) -> str | None:
        """Stage everything and commit. Returns None when there is nothing to commit."""
        self.add_all()
        if not self._git("status", "--porcelain", capture=True).strip():
            logger.info("[GIT] Nothing to commit.")
            return None
        self._git("commit", "-m", message)
        return self.head()

    def show_name_only(self, ref: str = "HEAD") -> list[str]:
        out = self._git("show", "--name-only", "--pretty=", ref, capture=True, check=False)
        return [line.strip() for line in out.splitlines() if line.strip()]

    def show_stat(self, ref: str = "HEAD") -> str:
        return self._git("show", "--stat", "--oneline", "--no-color", ref, capture=True, check=False).rstrip()

    # -- plumbing --------------------------------------------------------

    def _git(self, *args: str, check: bool = True, capture: bool = False) -> str:
        return self._run_cmd(["git", *args], cwd=self.root, check=check, capture=capture, timeout=self.timeout)

    @staticmethod
    def _run_cmd(cmd: list[str], cwd: Path, check: bool = True, capture: bool = False, timeout: int = 60) -> str:
        try:
            result = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            raise GitError(f"Git timed out: {' '.join(cmd)}") from e
        except OSError as e:
            raise GitError(f"Git could not start: {e}") from e
        if check and result.returncode != 0:
            raise GitError(f"Git failed: {' '.join(cmd)}\n{result.stderr}")
        return result.stdout if capture else ""
