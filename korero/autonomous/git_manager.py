"""File-system diff for the loop, measured through git."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)


class GitManager:
    """Counts files changed by an iteration.

    Changes are the union of uncommitted paths (``git status --porcelain``)
    and paths touched by commits made since :meth:`snapshot` was taken, so
    work the agent already committed still counts.
    """

    def __init__(self, cwd: Path, timeout: float = 30.0):
        self.cwd = cwd
        self.timeout = timeout

    def is_git_repo(self) -> bool:
        return (self.cwd / ".git").exists()

    def _git(self, *args: str) -> str | None:
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=self.cwd,
                capture_output=True,
                text=True,
                check=True,
                timeout=self.timeout,
            )
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, FileNotFoundError) as e:
            logger.debug(f"git {' '.join(args)} failed: {e}")
            return None
        return result.stdout

    def head(self) -> str | None:
        if not self.is_git_repo():
            return None
        out = self._git("rev-parse", "HEAD")
        return out.strip() if out else None

    def snapshot(self) -> str | None:
        """Commit to diff against at the end of the iteration."""
        return self.head()

    def get_changed_files(self, since: str | None = None) -> set[str]:
        if not self.is_git_repo():
            return set()

        changed: set[str] = set()
        status = self._git("status", "--porcelain")
        if status:
            for line in status.splitlines():
                if len(line) > 3:
                    path = line[3:].strip()
                    # Renames are reported as "old -> new"
                    changed.add(path.split(" -> ")[-1])

        head = self.head()
        if since and head and head != since:
            committed = self._git("diff", "--name-only", since, head)
            if committed:
                changed.update(p.strip() for p in committed.splitlines() if p.strip())
        return changed

    def count_changed_files(self, since: str | None = None) -> int:
        return len(self.get_changed_files(since))
