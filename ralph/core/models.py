"""Data models for the Ralph supervisor.

Uses Pydantic for the facts that cross component boundaries: parsed stream
events, control signals, criteria snapshots and verification verdicts.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class ControlSignal(str, Enum):
    """Signal emitted outward by one iteration.

    WARN is advisory. ROTATE, GUTTER and COMPLETE end the iteration.
    """

    NONE = "none"
    WARN = "WARN"
    ROTATE = "ROTATE"
    GUTTER = "GUTTER"
    COMPLETE = "COMPLETE"

    @property
    def is_terminal(self) -> bool:
        return self in (ControlSignal.ROTATE, ControlSignal.GUTTER, ControlSignal.COMPLETE)


class IterationOutcome(str, Enum):
    """How an iteration ended."""

    ROTATED = "rotated"
    STUCK = "stuck"
    COMPLETED = "completed"
    EXHAUSTED = "exhausted"

    @classmethod
    def from_signal(cls, signal: ControlSignal) -> "IterationOutcome":
        return {
            ControlSignal.ROTATE: cls.ROTATED,
            ControlSignal.GUTTER: cls.STUCK,
            ControlSignal.COMPLETE: cls.COMPLETED,
        }.get(signal, cls.EXHAUSTED)


class EventKind(str, Enum):
    """Normalized kind of one agent stream event."""

    SESSION_START = "session_start"
    ASSISTANT_TEXT = "assistant_text"
    TOOL_INVOCATION = "tool_invocation"
    TOOL_RESULT = "tool_result"
    SESSION_END = "session_end"


class StreamEvent(BaseModel):
    """One normalized unit parsed from the agent's output stream.

    Only the fields relevant to ``kind`` are populated. Usage counters ride
    along on assistant events and are zero elsewhere.
    """

    kind: EventKind
    text: str | None = None
    tool_name: str | None = None
    tool_id: str | None = None
    tool_input: dict = Field(default_factory=dict)
    path: str | None = None
    command: str | None = None
    content_chars: int = 0
    is_error: bool = False
    exit_code: int | None = None
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0
    session_id: str | None = None
    model: str | None = None
    duration_ms: int | None = None
    cost_usd: float | None = None


class Sigil(str, Enum):
    """Literal control markers the agent writes into its free text."""

    COMPLETE = "COMPLETE"
    GUTTER = "GUTTER"
    QC_PASS = "QC_PASS"
    QC_FAIL = "QC_FAIL"


class SigilMatch(BaseModel):
    """A detected sigil. ``criterion`` is only set for QC_FAIL:N (1-based)."""

    sigil: Sigil
    criterion: int | None = None


class QCVerdict(BaseModel):
    """Outcome of one verification sub-agent run."""

    passed: bool
    criterion: int | None = None
    timed_out: bool = False
    defaulted: bool = False

    @classmethod
    def default_pass(cls, timed_out: bool = False) -> "QCVerdict":
        return cls(passed=True, timed_out=timed_out, defaulted=True)

    def describe(self) -> str:
        if self.passed:
            return "PASS"
        if self.criterion is not None:
            return f"FAIL:{self.criterion}"
        return "FAIL"


class CriteriaSnapshot(BaseModel):
    """Checked/total criteria counts of a task file at one point in time."""

    done: int = 0
    total: int = 0

    @property
    def remaining(self) -> int:
        return self.total - self.done

    @property
    def complete(self) -> bool:
        return self.remaining == 0

    def __str__(self) -> str:
        return f"{self.done}/{self.total}"
