"""File-backed workspace state.

Layout under the workspace root::

    .ralph/
    ├── config.yaml        optional overrides
    ├── state/
    │   ├── activity.log   append-only, timestamped tool/session log
    │   ├── errors.log     append-only failures and blocked commands
    │   ├── progress.md    session narrative (loop + agent)
    │   ├── guardrails.md  lessons learned, injected into every prompt
    │   ├── .iteration     persisted iteration counter
    │   └── .active_task   task file the counter belongs to
    └── tasks/
        └── RALPH_TASK.md  entry point of the task chain

Appends from concurrent actors (parser thread, watchdog thread, loop) are
serialized by one lock per store.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)

RALPH_DIRNAME = ".ralph"
ENTRY_TASK_NAME = "RALPH_TASK.md"
LEARNED_FAILURES_HEADING = "## Learned Failures"

PROGRESS_HEADER = """# Progress Log

> Updated by the agent after significant work.

---

## Session History

"""

GUARDRAILS_HEADER = """# Guardrails

> STOP. Read these before every action.

## Non-Interactive Commands Only

**NEVER** run commands that wait for input. Always use flags:
- `npm init -y` (not `npm init`)
- `git commit -m "msg"` (not `git commit`)
- `python script.py` (not `python`)
- `node script.js` (not `node`)

## Safe Workflow

1. **Read before write** - Check file contents before editing
2. **Test after changes** - Run tests to verify
3. **Commit checkpoints** - Save state before risky changes

---

## Learned Failures

_(Added automatically when errors occur)_

"""

ERRORS_HEADER = """# Error Log

> Failures detected while supervising the agent. Use to update guardrails.

"""

ACTIVITY_HEADER = """# Activity Log

> Real-time tool call logging from the stream parser.

"""

# Ordered: first matching prefix/substring wins.
_ACTIVITY_EMOJI: tuple[tuple[str, str, bool], ...] = (
    ("SESSION START", "🚀", True),
    ("SESSION END", "🏁", True),
    ("TOOL READ", "📖", True),
    ("READ ", "📖", True),
    ("TOOL Write", "✏️", True),
    ("TOOL Edit", "✏️", True),
    ("TOOL Bash", "💻", True),
    ("TOOL Grep", "🔍", True),
    ("TOOL Glob", "📂", True),
    ("TOOL LS", "📂", True),
    ("TOOL TodoWrite", "📝", True),
    ("TOOL TaskOutput", "📋", True),
    ("TOOL KillShell", "💀", True),
    ("QC PASS", "✅", False),
    ("QC FAIL", "❌", False),
    ("QC START", "🔍", False),
    ("COMPLETE", "✅", False),
    ("GUTTER", "🚨", False),
)


def activity_emoji(message: str) -> str:
    """Pick the activity-log emoji for a message."""
    for needle, emoji, prefix_only in _ACTIVITY_EMOJI:
        if prefix_only and message.startswith(needle):
            return emoji
        if not prefix_only and needle in message:
            return emoji
    return "⚡"


def _timestamp() -> str:
    return datetime.now().strftime("%H:%M:%S")


class StateStore:
    """Reads and appends the persisted state of one workspace."""

    def __init__(self, workspace: Path):
        self.workspace = Path(workspace).absolute()
        self._lock = threading.Lock()

    # --- Paths ---

    @property
    def ralph_dir(self) -> Path:
        return self.workspace / RALPH_DIRNAME

    @property
    def state_dir(self) -> Path:
        return self.ralph_dir / "state"

    @property
    def tasks_dir(self) -> Path:
        return self.ralph_dir / "tasks"

    @property
    def entry_task(self) -> Path:
        return self.tasks_dir / ENTRY_TASK_NAME

    @property
    def activity_log(self) -> Path:
        return self.state_dir / "activity.log"

    @property
    def errors_log(self) -> Path:
        return self.state_dir / "errors.log"

    @property
    def progress_file(self) -> Path:
        return self.state_dir / "progress.md"

    @property
    def guardrails_file(self) -> Path:
        return self.state_dir / "guardrails.md"

    @property
    def iteration_file(self) -> Path:
        return self.state_dir / ".iteration"

    @property
    def active_task_file(self) -> Path:
        return self.state_dir / ".active_task"

    # --- Initialization ---

    def initialize(self) -> list[Path]:
        """Create the directory tree and default files. Never overwrites.

        Returns the files that were created.
        """
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.tasks_dir.mkdir(parents=True, exist_ok=True)

        created = []
        defaults = {
            self.progress_file: PROGRESS_HEADER,
            self.guardrails_file: GUARDRAILS_HEADER,
            self.errors_log: ERRORS_HEADER,
            self.activity_log: ACTIVITY_HEADER,
        }
        for path, content in defaults.items():
            if not path.exists():
                path.write_text(content, encoding="utf-8")
                created.append(path)
        if not self.iteration_file.exists():
            self.set_iteration(0)
            created.append(self.iteration_file)
        return created

    # --- Append-only logs ---

    def _append(self, path: Path, text: str) -> None:
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as f:
                f.write(text)

    def log_activity(self, message: str, emoji: str | None = None) -> None:
        mark = emoji if emoji is not None else activity_emoji(message)
        self._append(self.activity_log, f"[{_timestamp()}] {mark} {message}\n")

    def log_activity_raw(self, line: str) -> None:
        """Append a preformatted line (banners, token status)."""
        self._append(self.activity_log, line if line.endswith("\n") else line + "\n")

    def log_error(self, message: str) -> None:
        self._append(self.errors_log, f"[{_timestamp()}] {message}\n")

    def record_blocked(self, command: str, hint: str, action: str) -> None:
        """Write a structured blocked-command entry the next iteration can learn from."""
        self._append(
            self.errors_log,
            "\n## BLOCKED: Interactive Command\n"
            f"- **Command**: {command}\n"
            f"- **Action**: {action}\n"
            f"- **Fix**: {hint}\n\n",
        )
        self.add_guardrail(f"- `{command.strip()}` blocks waiting for input -> {hint}")

    def log_progress(self, message: str) -> None:
        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        self._append(self.progress_file, f"\n### {stamp}\n{message}\n")

    def add_guardrail(self, lesson: str) -> bool:
        """Append a lesson under Learned Failures unless it is already there."""
        with self._lock:
            existing = ""
            if self.guardrails_file.exists():
                existing = self.guardrails_file.read_text(encoding="utf-8")
            if lesson in existing:
                return False
            if not existing:
                existing = GUARDRAILS_HEADER
            elif LEARNED_FAILURES_HEADING not in existing:
                existing = existing.rstrip("\n") + f"\n\n{LEARNED_FAILURES_HEADING}\n\n"
            if not existing.endswith("\n"):
                existing += "\n"
            self.guardrails_file.parent.mkdir(parents=True, exist_ok=True)
            self.guardrails_file.write_text(existing + lesson + "\n", encoding="utf-8")
        logger.info(f"Guardrail added: {lesson}")
        return True

    def reset_activity_log(self) -> None:
        """Truncate the activity log to a one-line header (shutdown housekeeping)."""
        with self._lock:
            if self.activity_log.exists():
                self.activity_log.write_text(
                    "# Activity Log (cleared on shutdown)\n", encoding="utf-8"
                )

    # --- Readers ---

    def read_guardrails(self) -> str:
        if not self.guardrails_file.exists():
            return ""
        return self.guardrails_file.read_text(encoding="utf-8")

    def recent_errors(self, lines: int = 30) -> str:
        return "\n".join(self._tail(self.errors_log, lines))

    def recent_activity(self, lines: int = 5) -> list[str]:
        return self._tail(self.activity_log, lines)

    @staticmethod
    def _tail(path: Path, lines: int) -> list[str]:
        if not path.exists():
            return []
        with open(path, encoding="utf-8", errors="replace") as f:
            return [line.rstrip("\n") for line in deque(f, maxlen=lines)]

    # --- Iteration counter ---

    def get_iteration(self) -> int:
        try:
            return int(self.iteration_file.read_text(encoding="utf-8").strip() or 0)
        except (OSError, ValueError):
            return 0

    def set_iteration(self, value: int) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.iteration_file.write_text(f"{value}\n", encoding="utf-8")

    def increment_iteration(self) -> int:
        value = self.get_iteration() + 1
        self.set_iteration(value)
        return value

    def get_active_task(self) -> Path | None:
        try:
            value = self.active_task_file.read_text(encoding="utf-8").strip()
        except OSError:
            return None
        return Path(value) if value else None

    def activate_task(self, task_path: Path) -> int:
        """Record ``task_path`` as active; reset the counter if the task changed.

        Returns the counter value after the call (0 on change, so the next
        increment yields 1).
        """
        task_path = Path(task_path).absolute()
        if self.get_active_task() != task_path:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            self.active_task_file.write_text(f"{task_path}\n", encoding="utf-8")
            self.set_iteration(0)
        return self.get_iteration()
