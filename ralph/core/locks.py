"""Cross-process exclusion for one workspace.

Two loops on the same workspace would interleave iterations on the same task
file and iteration counter, so ``RalphLoop.run`` holds a WorkspaceLock for its
whole lifetime. The lock file lives at ``.ralph/state/.loop_lock``.
"""

from __future__ import annotations

import logging
from pathlib import Path

from filelock import FileLock, Timeout

from ralph.core.errors import LoopLockedError

logger = logging.getLogger(__name__)


class WorkspaceLock:
    """File-based lock held while a loop runs in a workspace.

    Uses filelock; a held lock is reported immediately instead of waiting.
    """

    LOCK_TIMEOUT: float = 0
    LOCK_FILENAME: str = ".loop_lock"

    def __init__(self, state_dir: Path, timeout: float | None = None):
        self.lock_path = Path(state_dir) / self.LOCK_FILENAME
        self.timeout = self.LOCK_TIMEOUT if timeout is None else timeout
        self._filelock = FileLock(str(self.lock_path), timeout=self.timeout)
        self.acquired = False

    def __enter__(self) -> "WorkspaceLock":
        # SECURITY: never follow a symlinked lock file out of the workspace
        if self.lock_path.is_symlink():
            raise LoopLockedError(f"{self.lock_path} is a symlink; refusing to lock")
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._filelock.acquire()
        except Timeout as e:
            raise LoopLockedError(
                f"Another Ralph loop is already running in this workspace ({self.lock_path})"
            ) from e
        self.acquired = True
        logger.debug(f"Acquired {self.lock_path}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.acquired:
            self._filelock.release()
            self.acquired = False
        return False
