"""Live status display for a running iteration.

Shows the active task, criteria progress, context usage and the most recent
activity-log lines, refreshed on its own cadence in a background thread.
"""

from __future__ import annotations

import threading
import time

from rich.console import Console, Group
from rich.live import Live
from rich.markup import escape
from rich.panel import Panel
from rich.progress import BarColumn, Progress, TextColumn
from rich.table import Table

from ralph.core.models import ControlSignal
from ralph.core.parser import StreamParser
from ralph.core.signals import SignalMessage
from ralph.core.state import StateStore
from ralph.core.tasks import TaskFile


class ActivityMonitor:
    """
    Display actor for one iteration.

    Design Notes:
    - Reads parser counters without locking; a slightly stale frame is fine
    - Polls the activity log tail instead of subscribing to the parser
    - notify() only records the latest WARN/terminal message for the header
    """

    RECENT_LINES = 5

    def __init__(
        self,
        parser: StreamParser,
        state: StateStore,
        task: TaskFile,
        console: Console | None = None,
        interval: float = 0.5,
    ):
        self.parser = parser
        self.state = state
        self.task = task
        self.console = console or Console()
        self.interval = interval
        self._started_at = time.monotonic()
        self._notice: SignalMessage | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._progress = Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
        )
        self._progress_task_id = self._progress.add_task("Context", total=100)

    def start(self) -> None:
        self._started_at = time.monotonic()
        self._thread = threading.Thread(target=self._run, name="ralph-display", daemon=True)
        self._thread.start()

    def notify(self, message: SignalMessage) -> None:
        self._notice = message

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=2.0)

    def _header(self) -> str:
        elapsed = int(time.monotonic() - self._started_at)
        minutes, seconds = divmod(elapsed, 60)
        snapshot = self.task.snapshot()
        header = (
            f"[bold blue]⟳ {escape(self.task.name)}[/]  "
            f"criteria {snapshot}  tools {self.parser.tool_calls}  {minutes}m{seconds:02d}s"
        )
        if self._notice is not None:
            if self._notice.signal == ControlSignal.WARN:
                header += "\n[yellow]⚠️  Context warning - agent should wrap up soon[/]"
            elif self._notice.is_terminal:
                header += f"\n[bold]{self._notice.signal.value}[/] {escape(self._notice.detail)}"
        return header

    def render(self) -> Panel:
        tracker = self.parser.tracker
        self._progress.update(
            self._progress_task_id,
            completed=min(tracker.percent_used(), 100),
            description=f"{tracker.health_emoji()} {tracker.context_tokens} tok",
        )

        recent = Table.grid(padding=(0, 1))
        recent.add_column(overflow="ellipsis", no_wrap=True)
        for line in self.state.recent_activity(self.RECENT_LINES):
            recent.add_row(escape(line))

        return Panel(
            Group(self._header(), self._progress, recent),
            title="Ralph",
            border_style="blue",
        )

    def _run(self) -> None:
        with Live(self.render(), console=self.console, refresh_per_second=4, transient=True) as live:
            while not self._stop_event.wait(self.interval):
                live.update(self.render())
