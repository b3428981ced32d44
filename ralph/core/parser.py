"""Real-time interpreter for the agent's stream-json output.

Input is one JSON record per line, in the shape emitted by
``claude -p --output-format stream-json --verbose``::

    {"type": "system", "subtype": "init", "session_id": "...", "model": "..."}
    {"type": "assistant", "message": {"content": [...], "usage": {...}}}
    {"type": "user", "message": {"content": [{"type": "tool_result", ...}]},
     "tool_use_result": {...}}
    {"type": "result", "duration_ms": 1234, "total_cost_usd": 0.12}

Anything else (stderr noise, truncated JSON, unknown types) is dropped.

``parse_event_line`` normalizes a record into StreamEvents. ``StreamParser``
folds those events into the iteration's budget and ledgers, writes the
activity/error logs, and emits control signals on the SignalChannel.
"""

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

from ralph.core.blocking import BLOCKING_PATTERNS, BlockingPattern, find_blocking_command
from ralph.core.budget import BudgetTracker
from ralph.core.gutter import GutterDetector
from ralph.core.models import (
    ControlSignal,
    EventKind,
    QCVerdict,
    Sigil,
    SigilMatch,
    StreamEvent,
)
from ralph.core.signals import SignalChannel, SignalMessage
from ralph.core.state import StateStore

logger = logging.getLogger(__name__)

TOKEN_LOG_INTERVAL_SECONDS = 30.0

# <ralph>COMPLETE</ralph>, <ralph>GUTTER</ralph>, <qc>PASS</qc>, <qc>FAIL</qc>, <qc>FAIL:N</qc>
_SIGIL_RE = re.compile(
    r"<ralph>(?P<ralph>COMPLETE|GUTTER)</ralph>"
    r"|<qc>(?P<qc>PASS|FAIL)(?::(?P<criterion>\d+))?</qc>"
)
_EXIT_CODE_RE = re.compile(r"\bExit code:?\s*(-?\d+)", re.IGNORECASE)

WRITE_TOOLS = frozenset(["Write", "Edit", "MultiEdit", "NotebookEdit"])
SHELL_TOOLS = frozenset(["Bash"])


# --- Record normalization ---


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return 0


def _text_of(content: Any) -> str:
    """Flatten tool_result content (string or list of text blocks)."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and isinstance(block.get("text"), str)
        ]
        return "\n".join(parts)
    return ""


def _exit_code_from(text: str) -> int | None:
    match = _EXIT_CODE_RE.search(text[:500])
    return int(match.group(1)) if match else None


def _parse_system(record: dict) -> list[StreamEvent]:
    if record.get("subtype") != "init":
        return []
    return [
        StreamEvent(
            kind=EventKind.SESSION_START,
            session_id=record.get("session_id"),
            model=record.get("model") or "unknown",
        )
    ]


def _parse_assistant(record: dict) -> list[StreamEvent]:
    message = record.get("message")
    if not isinstance(message, dict):
        return []

    events: list[StreamEvent] = []
    content = message.get("content")
    for item in content if isinstance(content, list) else []:
        if not isinstance(item, dict):
            continue
        item_type = item.get("type")
        if item_type == "text" and isinstance(item.get("text"), str):
            events.append(StreamEvent(kind=EventKind.ASSISTANT_TEXT, text=item["text"]))
        elif item_type == "tool_use":
            tool_input = item.get("input") if isinstance(item.get("input"), dict) else {}
            path = tool_input.get("file_path") or tool_input.get("path")
            command = tool_input.get("command")
            events.append(
                StreamEvent(
                    kind=EventKind.TOOL_INVOCATION,
                    tool_name=str(item.get("name") or ""),
                    tool_id=item.get("id"),
                    tool_input=tool_input,
                    path=path if isinstance(path, str) else None,
                    command=command if isinstance(command, str) else None,
                )
            )

    usage = message.get("usage")
    if isinstance(usage, dict):
        if not events:
            # Usage-only record: carry the counters on an empty text event.
            events.append(StreamEvent(kind=EventKind.ASSISTANT_TEXT, text=None))
        first = events[0]
        first.output_tokens = max(_as_int(usage.get("output_tokens")), 0)
        first.cache_read_tokens = max(_as_int(usage.get("cache_read_input_tokens")), 0)
        first.cache_creation_tokens = max(_as_int(usage.get("cache_creation_input_tokens")), 0)
    return events


def _parse_user(record: dict) -> list[StreamEvent]:
    events: list[StreamEvent] = []
    message = record.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    for item in content if isinstance(content, list) else []:
        if not isinstance(item, dict) or item.get("type") != "tool_result":
            continue
        text = _text_of(item.get("content"))
        events.append(
            StreamEvent(
                kind=EventKind.TOOL_RESULT,
                tool_id=item.get("tool_use_id"),
                text=text,
                is_error=bool(item.get("is_error")),
                exit_code=_exit_code_from(text) if item.get("is_error") else None,
            )
        )

    # File payloads ride on the top-level tool_use_result.
    result = record.get("tool_use_result")
    if isinstance(result, dict):
        file_info = result.get("file")
        if isinstance(file_info, dict) and isinstance(file_info.get("filePath"), str):
            if not events:
                events.append(StreamEvent(kind=EventKind.TOOL_RESULT))
            file_content = file_info.get("content")
            event = events[0]
            event.path = file_info["filePath"]
            event.content_chars = len(file_content) if isinstance(file_content, str) else 0
            event.tool_input = {"numLines": _as_int(file_info.get("numLines"))}
        exit_code = result.get("exitCode", result.get("returnCode"))
        if events and isinstance(exit_code, int) and events[0].exit_code is None:
            events[0].exit_code = exit_code
    return events


def _parse_result(record: dict) -> list[StreamEvent]:
    cost = record.get("total_cost_usd")
    return [
        StreamEvent(
            kind=EventKind.SESSION_END,
            session_id=record.get("session_id"),
            duration_ms=_as_int(record.get("duration_ms")),
            cost_usd=float(cost) if isinstance(cost, (int, float)) else 0.0,
        )
    ]


_RECORD_PARSERS: dict[str, Callable[[dict], list[StreamEvent]]] = {
    "system": _parse_system,
    "assistant": _parse_assistant,
    "user": _parse_user,
    "result": _parse_result,
}


def parse_event_line(line: str) -> list[StreamEvent]:
    """Normalize one output line. Malformed or unknown input yields []."""
    line = line.strip()
    if not line:
        return []
    try:
        record = json.loads(line)
    except json.JSONDecodeError:
        logger.debug(f"Dropping non-JSON line: {line[:80]}")
        return []
    if not isinstance(record, dict):
        return []
    parser = _RECORD_PARSERS.get(record.get("type"))
    if parser is None:
        return []
    try:
        return parser(record)
    except (TypeError, ValueError, AttributeError) as e:
        logger.debug(f"Dropping malformed {record.get('type')} record: {e}")
        return []


def detect_sigil(text: str | None) -> SigilMatch | None:
    """Find the earliest sigil in a text block. At most one is returned."""
    if not text:
        return None
    match = _SIGIL_RE.search(text)
    if match is None:
        return None
    if match.group("ralph"):
        return SigilMatch(sigil=Sigil(match.group("ralph")))
    if match.group("qc") == "PASS":
        return SigilMatch(sigil=Sigil.QC_PASS)
    criterion = match.group("criterion")
    return SigilMatch(sigil=Sigil.QC_FAIL, criterion=int(criterion) if criterion else None)


# --- Stateful interpreter ---


class StreamParser:
    """Folds one iteration's event stream into control signals.

    Owns the iteration-scoped BudgetTracker and GutterDetector. After the
    first terminal signal the parser stops accumulating: later lines are
    ignored.

    In ``verification`` mode QC sigils end the run with a QCVerdict and the
    COMPLETE/GUTTER sigils are only logged.
    """

    def __init__(
        self,
        channel: SignalChannel | None = None,
        state: StateStore | None = None,
        tracker: BudgetTracker | None = None,
        detector: GutterDetector | None = None,
        patterns: tuple[BlockingPattern, ...] = BLOCKING_PATTERNS,
        verification: bool = False,
        token_log_interval: float = TOKEN_LOG_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.channel = channel
        self.state = state
        self.tracker = tracker or BudgetTracker()
        self.detector = detector or GutterDetector()
        self.patterns = patterns
        self.verification = verification
        self.token_log_interval = token_log_interval
        self._clock = clock
        self._last_token_log = clock()
        self._pending_tools: dict[str, StreamEvent] = {}
        self.tool_calls = 0
        self.session_id: str | None = None
        self.terminal: SignalMessage | None = None

    @property
    def stopped(self) -> bool:
        return self.terminal is not None

    # --- Logging helpers ---

    def _activity(self, message: str) -> None:
        if self.state is not None:
            self.state.log_activity(message)

    def _error(self, message: str) -> None:
        logger.warning(message)
        if self.state is not None:
            self.state.log_error(message)

    def _log_token_status(self) -> None:
        if self.state is not None:
            stamp = datetime.now().strftime("%H:%M:%S")
            self.state.log_activity_raw(f"[{stamp}] {self.tracker.status_line()}")

    def write_banner(self) -> None:
        """Mark the start of a parser session in the activity log."""
        if self.state is None:
            return
        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        label = "QC Session" if self.verification else "Ralph Session"
        self.state.log_activity_raw(
            "\n"
            "╔═══════════════════════════════════════════════════════════════╗\n"
            f"║ 🐛 {label}: {stamp}\n"
            "╚═══════════════════════════════════════════════════════════════╝"
        )
        self.state.log_activity("Stream parser connected, awaiting agent...", emoji="🔌")

    # --- Emission ---

    def _emit(
        self, signal: ControlSignal, detail: str = "", verdict: QCVerdict | None = None
    ) -> SignalMessage:
        message = SignalMessage(signal=signal, source="parser", detail=detail, verdict=verdict)
        if self.channel is not None:
            self.channel.send(message)
        if message.is_terminal:
            self.terminal = message
        return message

    # --- Event handlers ---

    def _on_session_start(self, event: StreamEvent) -> list[SignalMessage]:
        self.session_id = event.session_id or self.session_id
        self._activity(f"SESSION START: model={event.model}")
        return []

    def _on_assistant_text(self, event: StreamEvent) -> list[SignalMessage]:
        if not event.text:
            return []
        self.tracker.record_assistant_text(len(event.text))
        match = detect_sigil(event.text)
        if match is None:
            return []

        if match.sigil == Sigil.COMPLETE:
            self._activity("Agent signaled COMPLETE")
            if not self.verification:
                return [self._emit(ControlSignal.COMPLETE, "agent sigil")]
        elif match.sigil == Sigil.GUTTER:
            self._activity("Agent signaled GUTTER (stuck)")
            if not self.verification:
                return [self._emit(ControlSignal.GUTTER, "agent sigil")]
        elif match.sigil == Sigil.QC_PASS:
            self._activity("QC PASS: verifier confirmed checked criteria")
            if self.verification:
                return [self._emit(ControlSignal.COMPLETE, "qc", QCVerdict(passed=True))]
        else:
            label = match.criterion if match.criterion is not None else "unknown"
            self._activity(f"QC FAIL: verification failed on criterion {label}")
            if self.verification:
                verdict = QCVerdict(passed=False, criterion=match.criterion)
                return [self._emit(ControlSignal.COMPLETE, "qc", verdict)]
        return []

    def _on_tool_invocation(self, event: StreamEvent) -> list[SignalMessage]:
        self.tool_calls += 1
        name = event.tool_name or "unknown"
        if event.tool_id:
            self._pending_tools[event.tool_id] = event

        if name == "Read":
            self._activity(f"TOOL READ: {event.path or 'unknown'} (started)")
            return []

        if name in WRITE_TOOLS:
            path = event.path or "unknown"
            self._activity(f"TOOL {name}: {path} (started)")
            written = event.tool_input.get("content") or event.tool_input.get("new_string")
            if isinstance(written, str):
                self.tracker.record_write(len(written))
            finding = self.detector.record_write(path)
            if finding is not None:
                self._error(f"⚠️ THRASHING: {finding.describe()}")
                return [self._emit(ControlSignal.GUTTER, finding.describe())]
            return []

        if name in SHELL_TOOLS:
            command = event.command or "unknown"
            self._activity(f"TOOL Bash: {command[:60]}... (started)")
            blocking = find_blocking_command(command, self.patterns)
            if blocking is not None:
                self._error(f"🚨 BLOCKED: Interactive command detected: {command} ({blocking.hint})")
                if self.state is not None:
                    self.state.record_blocked(
                        command, blocking.hint, "Blocked by stream parser before it could hang"
                    )
                self.detector.record_failure(command)
                return [self._emit(ControlSignal.GUTTER, f"blocking command: {blocking.name}")]
            return []

        self._activity(f"TOOL {name} (started)")
        return []

    def _on_tool_result(self, event: StreamEvent) -> list[SignalMessage]:
        invocation = self._pending_tools.pop(event.tool_id, None) if event.tool_id else None

        if event.path is not None:
            self.tracker.record_read(event.content_chars)
            num_lines = event.tool_input.get("numLines", 0)
            kb = event.content_chars / 1024
            self._activity(f"READ {event.path} ({num_lines} lines, ~{kb:.1f}KB)")

        failed = event.is_error or (event.exit_code is not None and event.exit_code != 0)
        if failed and invocation is not None and invocation.tool_name in SHELL_TOOLS:
            command = invocation.command or "unknown"
            exit_code = event.exit_code if event.exit_code is not None else 1
            count, finding = self.detector.record_failure(command)
            self._error(f"SHELL FAIL: {command} → exit {exit_code} (attempt {count})")
            if finding is not None:
                self._error(f"⚠️ GUTTER: {finding.describe()}")
                return [self._emit(ControlSignal.GUTTER, finding.describe())]
        return []

    def _on_session_end(self, event: StreamEvent) -> list[SignalMessage]:
        self.session_id = event.session_id or self.session_id
        self._activity(
            f"SESSION END: {event.duration_ms or 0}ms, "
            f"~{self.tracker.context_tokens} tokens (estimated), ${event.cost_usd or 0}"
        )
        return []

    def _check_budget(self) -> list[SignalMessage]:
        verdict = self.tracker.classify()
        tokens = self.tracker.context_tokens
        if verdict == ControlSignal.ROTATE:
            self._activity(
                f"⚠️ ROTATE: Token threshold reached ({tokens} >= {self.tracker.rotate_threshold})"
            )
            return [self._emit(ControlSignal.ROTATE, f"{tokens} tokens")]
        if verdict == ControlSignal.WARN:
            self._activity(
                f"⚠️ WARN: Approaching token limit ({tokens} >= {self.tracker.warn_threshold})"
            )
            return [self._emit(ControlSignal.WARN, f"{tokens} tokens")]
        return []

    # --- Public API ---

    def handle(self, event: StreamEvent) -> list[SignalMessage]:
        """Fold one normalized event. Returns the messages it produced."""
        if self.stopped:
            return []
        self.tracker.record_usage(
            output_tokens=event.output_tokens,
            cache_read=event.cache_read_tokens,
            cache_creation=event.cache_creation_tokens,
        )
        handlers = {
            EventKind.SESSION_START: self._on_session_start,
            EventKind.ASSISTANT_TEXT: self._on_assistant_text,
            EventKind.TOOL_INVOCATION: self._on_tool_invocation,
            EventKind.TOOL_RESULT: self._on_tool_result,
            EventKind.SESSION_END: self._on_session_end,
        }
        messages = handlers[event.kind](event)
        if not self.stopped:
            messages.extend(self._check_budget())
        return messages

    def feed(self, line: str) -> list[SignalMessage]:
        """Process one raw output line in arrival order."""
        messages: list[SignalMessage] = []
        for event in parse_event_line(line):
            if self.stopped:
                break
            messages.extend(self.handle(event))

        now = self._clock()
        if now - self._last_token_log >= self.token_log_interval:
            self._log_token_status()
            self._last_token_log = now
        return messages

    def consume(self, lines: Iterable[str]) -> None:
        """Read a line iterator to exhaustion (blocking per line).

        Keeps draining after a terminal signal so the producer never blocks on
        a full pipe, but ignores the content. Marks end-of-stream on the channel.
        """
        try:
            for line in lines:
                if not self.stopped:
                    self.feed(line)
        except (OSError, ValueError) as e:
            # Pipe closed underneath us by a process-tree kill.
            logger.debug(f"Stream closed: {e}")
        finally:
            self._log_token_status()
            if self.channel is not None:
                self.channel.end_of_stream("parser")
