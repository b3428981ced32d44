"""Terminal UI components for watching a running loop."""

from ralph.cli_ui.activity_monitor import ActivityMonitor

__all__ = ["ActivityMonitor"]
