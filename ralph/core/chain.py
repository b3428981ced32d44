"""Task-chain walker.

Tasks link forward through the ``next_task`` header key, resolved relative
to the tasks directory. The active task is the first one in the chain that
is not both fully checked and verified.
"""

from __future__ import annotations

import logging
from pathlib import Path

from ralph.core.state import StateStore
from ralph.core.tasks import TaskFile

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 20


class TaskChain:
    """Walks the chain starting at an entry task."""

    def __init__(
        self,
        entry: Path,
        tasks_dir: Path | None = None,
        state: StateStore | None = None,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ):
        self.entry = Path(entry)
        self.tasks_dir = Path(tasks_dir) if tasks_dir else self.entry.parent
        self.state = state
        self.max_depth = max_depth

    def resolve(self, reference: str) -> Path:
        path = Path(reference)
        if not path.is_absolute():
            path = self.tasks_dir / path
        return path

    def _structural_error(self, message: str) -> None:
        logger.warning(message)
        if self.state is not None:
            self.state.log_error(f"⚠️ TASK CHAIN: {message}")

    def find_current(self) -> TaskFile | None:
        """Return the active task, or None when the whole chain is done.

        Structural problems (missing successor, cycle, depth bound) return
        the task where the walk stopped instead of raising.
        """
        current = TaskFile(self.entry)
        if not current.exists():
            self._structural_error(f"entry task {self.entry} not found")
            return None

        visited: set[Path] = set()
        for _ in range(self.max_depth):
            key = current.path.resolve()
            if key in visited:
                self._structural_error(f"cycle detected at {current.path.name}")
                return current
            visited.add(key)

            if not current.is_complete():
                return current
            if not current.qc_passed():
                return current

            reference = current.next_task
            if not reference:
                return None

            successor = TaskFile(self.resolve(reference))
            if not successor.exists():
                self._structural_error(
                    f"next_task '{reference}' of {current.path.name} not found"
                )
                return current
            current = successor

        self._structural_error(f"chain deeper than {self.max_depth} tasks, stopping walk")
        return current

    def successor_of(self, task: TaskFile) -> TaskFile | None:
        """The existing successor of ``task``, if any."""
        reference = task.next_task
        if not reference:
            return None
        successor = TaskFile(self.resolve(reference))
        return successor if successor.exists() else None

    def walk(self) -> list[TaskFile]:
        """All reachable tasks in chain order (for status displays)."""
        tasks: list[TaskFile] = []
        seen: set[Path] = set()
        current: TaskFile | None = TaskFile(self.entry)
        while current is not None and current.exists() and len(tasks) < self.max_depth:
            key = current.path.resolve()
            if key in seen:
                break
            seen.add(key)
            tasks.append(current)
            current = self.successor_of(current)
        return tasks
