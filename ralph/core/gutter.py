"""Stuck-pattern ("gutter") detection.

Two independent triggers, both scoped to one iteration:

- the same shell command failing 3 or more times, and
- the same file written 5 or more times inside a trailing 10-minute window.

Nothing carries over between iterations; each fresh agent gets a clean slate.
"""

from __future__ import annotations

import time
from collections import Counter, deque
from collections.abc import Callable
from dataclasses import dataclass

REPEATED_FAILURE_LIMIT = 3
THRASH_WRITE_LIMIT = 5
THRASH_WINDOW_SECONDS = 600.0


@dataclass
class GutterFinding:
    """Why the detector tripped. Carries aggregate counts only."""

    reason: str
    subject: str
    count: int

    def describe(self) -> str:
        if self.reason == "repeated_failure":
            return f"same command failed {self.count}x"
        return f"{self.subject} written {self.count}x in 10 min"


class FailureLedger:
    """Multiset of failing command signatures."""

    def __init__(self) -> None:
        self._counts: Counter[str] = Counter()

    def record(self, signature: str) -> int:
        self._counts[signature] += 1
        return self._counts[signature]

    def count(self, signature: str) -> int:
        return self._counts[signature]

    def __len__(self) -> int:
        return sum(self._counts.values())


class WriteLedger:
    """Time-stamped file writes, queried as a sliding window."""

    def __init__(
        self,
        window_seconds: float = THRASH_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.window_seconds = window_seconds
        self._clock = clock
        self._writes: deque[tuple[str, float]] = deque()

    def record(self, path: str) -> int:
        """Record a write and return writes to ``path`` inside the window."""
        now = self._clock()
        self._writes.append((path, now))
        cutoff = now - self.window_seconds
        while self._writes and self._writes[0][1] < cutoff:
            self._writes.popleft()
        return sum(1 for p, _ in self._writes if p == path)

    def __len__(self) -> int:
        return len(self._writes)


class GutterDetector:
    """Combines both ledgers into a single stuck verdict."""

    def __init__(
        self,
        failure_limit: int = REPEATED_FAILURE_LIMIT,
        write_limit: int = THRASH_WRITE_LIMIT,
        window_seconds: float = THRASH_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.failure_limit = failure_limit
        self.write_limit = write_limit
        self.failures = FailureLedger()
        self.writes = WriteLedger(window_seconds=window_seconds, clock=clock)

    def record_failure(self, command: str) -> tuple[int, GutterFinding | None]:
        """Record one non-zero exit of ``command``.

        Returns the attempt count and a finding once the limit is reached.
        """
        count = self.failures.record(command)
        if count >= self.failure_limit:
            return count, GutterFinding("repeated_failure", command, count)
        return count, None

    def record_write(self, path: str) -> GutterFinding | None:
        count = self.writes.record(path)
        if count >= self.write_limit:
            return GutterFinding("thrashing", path, count)
        return None
