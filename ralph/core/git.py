"""Thin git/gh plumbing around the loop.

Everything here is best effort: failures are logged and reported as False,
never raised, so version control trouble cannot stop the loop.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)


class GitOps:
    """Git operations on the workspace repository."""

    GIT_TIMEOUT = 60

    def __init__(self, repo_path: Path):
        self.repo_path = Path(repo_path).absolute()

    def _run(self, *args: str, timeout: int | None = None) -> subprocess.CompletedProcess | None:
        try:
            return subprocess.run(
                list(args),
                cwd=self.repo_path,
                capture_output=True,
                text=True,
                timeout=timeout or self.GIT_TIMEOUT,
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"Timed out: {' '.join(args[:3])}")
            return None
        except FileNotFoundError:
            logger.warning(f"Command not found: {args[0]}")
            return None

    def is_repo(self) -> bool:
        result = self._run("git", "rev-parse", "--git-dir")
        return result is not None and result.returncode == 0

    def has_changes(self) -> bool:
        result = self._run("git", "status", "--porcelain")
        return result is not None and result.returncode == 0 and bool(result.stdout.strip())

    def commit_all(self, message: str) -> bool:
        """Stage and commit everything. False if there was nothing to commit or it failed."""
        if not self.has_changes():
            return False
        add = self._run("git", "add", "-A")
        if add is None or add.returncode != 0:
            logger.warning(f"git add failed: {add.stderr.strip() if add else 'timeout'}")
            return False
        commit = self._run("git", "commit", "-m", message)
        if commit is None or commit.returncode != 0:
            logger.warning(f"git commit failed: {commit.stderr.strip() if commit else 'timeout'}")
            return False
        return True

    def checkout_branch(self, branch: str) -> bool:
        """Create ``branch`` or switch to it if it already exists."""
        result = self._run("git", "checkout", "-b", branch)
        if result is not None and result.returncode == 0:
            return True
        result = self._run("git", "checkout", branch)
        if result is None or result.returncode != 0:
            logger.warning(f"Could not check out branch {branch}")
            return False
        return True

    def push(self, branch: str | None = None) -> bool:
        if branch:
            result = self._run("git", "push", "-u", "origin", branch, timeout=120)
            if result is not None and result.returncode == 0:
                return True
        result = self._run("git", "push", timeout=120)
        return result is not None and result.returncode == 0

    def open_pull_request(self, branch: str) -> bool:
        """Push ``branch`` and open a PR with ``gh pr create --fill``."""
        if not self.push(branch):
            logger.warning(f"Push of {branch} failed")
        if shutil.which("gh") is None:
            logger.warning("gh CLI not found; open the pull request manually")
            return False
        result = self._run("gh", "pr", "create", "--fill", timeout=120)
        if result is None or result.returncode != 0:
            logger.warning(f"Could not create PR: {result.stderr.strip() if result else 'timeout'}")
            return False
        logger.info(f"Opened PR: {result.stdout.strip()}")
        return True
