from __future__ import annotations

import logging
import subprocess
from datetime import datetime
from typing import Any, Callable, Protocol

LOGGER = logging.getLogger(__name__)

# 5MB
DIFF_MAX_BYTES = 5 * 1024 * 1024


class GitError(RuntimeError):
    """A git command exited non-zero."""

    def __init__(self, args: list[str], returncode: int, stderr: str) -> None:
        self.args_list = args
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"git {' '.join(args)} failed ({returncode}): {stderr.strip()}")


class VersionControl(Protocol):
    def is_repository(self) -> bool: ...

    def untracked_files(self) -> list[str]: ...

    def stage(self, path: str) -> None: ...

    def has_changes(self) -> bool: ...

    def diff(self) -> str: ...

    def commit_all(self, message: str) -> None: ...

    def recent_commit_summaries(self, limit: int) -> list[str]: ...

    def last_commit_time(self) -> datetime | None: ...


class GitRepository:
    def __init__(
        self,
        root: str,
        runner: Callable[..., subprocess.CompletedProcess[Any]] = subprocess.run,
    ) -> None:
        self.root = root
        self._runner = runner

    def _git(self, *args: str, check: bool = True) -> str:
        cmd = ["git", *args]
        result = self._runner(
            cmd,
            cwd=self.root,
            capture_output=True,
            text=True,
            check=False,
        )
        if check and result.returncode != 0:
            raise GitError(list(args), result.returncode, result.stderr or "")
        return result.stdout or ""

    def is_repository(self) -> bool:
        try:
            self._git("rev-parse", "--git-dir")
        except (GitError, OSError):
            return False
        return True

    def untracked_files(self) -> list[str]:
        out = self._git("ls-files", "--others", "--exclude-standard")
        return [line for line in out.splitlines() if line]

    def stage(self, path: str) -> None:
        self._git("add", "--", path)

    def has_changes(self) -> bool:
        return bool(self._git("status", "--porcelain").strip())

    def has_head(self) -> bool:
        try:
            self._git("rev-parse", "--verify", "--quiet", "HEAD")
        except GitError:
            return False
        return True

    def diff(self) -> str:
        if not self.has_changes():
            return ""
        if not self.has_head():
            # Fresh repository: everything staged so far is the change set.
            return self._git("diff", "--cached")
        out = self._git("diff", "HEAD")
        if len(out) > DIFF_MAX_BYTES:
            LOGGER.warning("Diff exceeds %d bytes, truncating", DIFF_MAX_BYTES)
            out = out[:DIFF_MAX_BYTES]
        return out

    def commit_all(self, message: str) -> None:
        self._git("add", "-A")
        self._git("commit", "-m", message)

    def recent_commit_summaries(self, limit: int) -> list[str]:
        out = self._git("log", "--oneline", f"-{limit}")
        return [line for line in out.splitlines() if line.strip()]

    def last_commit_time(self) -> datetime | None:
        try:
            iso = self._git("log", "-1", "--format=%cI").strip()
        except GitError:
            return None
        if not iso:
            return None
        try:
            return datetime.fromisoformat(iso)
        except ValueError:
            return None
