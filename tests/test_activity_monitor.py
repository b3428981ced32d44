"""Tests for the live activity display."""

import io

from rich.console import Console

from ralph.cli_ui.activity_monitor import ActivityMonitor
from ralph.core.models import ControlSignal
from ralph.core.parser import StreamParser
from ralph.core.signals import SignalMessage


def render_text(monitor: ActivityMonitor) -> str:
    console = Console(file=io.StringIO(), width=120)
    console.print(monitor.render())
    return console.file.getvalue()


class TestActivityMonitor:
    """Tests for frame rendering and lifecycle."""

    def test_frame_contents(self, state, make_task, records):
        parser = StreamParser(state=state)
        parser.feed(records.text("hi", cache_read=40_000))
        parser.feed(records.bash("ls"))
        monitor = ActivityMonitor(parser, state, make_task(criteria=[True, False], task="Todo app"))

        text = render_text(monitor)
        assert "Todo app" in text
        assert "criteria 1/2" in text
        assert "tools 1" in text
        assert "40000 tok" in text
        assert "TOOL Bash" in text

    def test_notice_shown(self, state, make_task):
        monitor = ActivityMonitor(StreamParser(state=state), state, make_task())
        monitor.notify(SignalMessage(ControlSignal.WARN, "parser"))
        assert "Context warning" in render_text(monitor)
        monitor.notify(SignalMessage(ControlSignal.GUTTER, "watchdog", "blocking process: node REPL"))
        assert "GUTTER" in render_text(monitor)

    def test_start_stop(self, state, make_task):
        console = Console(file=io.StringIO())
        monitor = ActivityMonitor(StreamParser(state=state), state, make_task(), console=console, interval=0.01)
        monitor.start()
        monitor.stop()
        assert not monitor._thread.is_alive()
