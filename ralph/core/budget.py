"""Context budget tracking.

Two sources feed the estimate of how much context the agent is holding:

1. Server-reported usage (``cache_read_input_tokens`` + output tokens). Accurate,
   preferred whenever a cache-read figure has been seen.
2. A byte-based fallback: everything read, written and said, divided by four,
   plus output tokens. Used only while no cache-read figure exists.

The two are never mixed.
"""

from __future__ import annotations

from dataclasses import dataclass

from ralph.core.models import ControlSignal

BYTES_PER_TOKEN = 4
DEFAULT_PROMPT_SIZE_ESTIMATE = 3000


@dataclass
class ContextBudget:
    """Iteration-scoped token counters."""

    prompt_size_estimate: int = DEFAULT_PROMPT_SIZE_ESTIMATE
    latest_cache_read: int | None = None
    cumulative_output_tokens: int = 0
    cumulative_cache_creation_tokens: int = 0
    bytes_read: int = 0
    bytes_written: int = 0
    assistant_chars: int = 0
    warn_signaled: bool = False

    @property
    def uses_reported_usage(self) -> bool:
        return self.latest_cache_read is not None

    @property
    def context_tokens(self) -> int:
        if self.latest_cache_read is not None:
            return self.latest_cache_read + self.cumulative_output_tokens
        input_bytes = (
            self.prompt_size_estimate + self.bytes_read + self.bytes_written + self.assistant_chars
        )
        return input_bytes // BYTES_PER_TOKEN + self.cumulative_output_tokens


class BudgetTracker:
    """Accumulates usage facts and classifies them against thresholds."""

    def __init__(
        self,
        warn_threshold: int = 80_000,
        rotate_threshold: int = 100_000,
        prompt_size_estimate: int = DEFAULT_PROMPT_SIZE_ESTIMATE,
    ):
        self.warn_threshold = warn_threshold
        self.rotate_threshold = rotate_threshold
        self.budget = ContextBudget(prompt_size_estimate=prompt_size_estimate)

    @property
    def context_tokens(self) -> int:
        return self.budget.context_tokens

    def reset(self) -> None:
        """Start a fresh iteration."""
        self.budget = ContextBudget(prompt_size_estimate=self.budget.prompt_size_estimate)

    def record_usage(
        self, output_tokens: int = 0, cache_read: int = 0, cache_creation: int = 0
    ) -> None:
        if output_tokens > 0:
            self.budget.cumulative_output_tokens += output_tokens
        if cache_read > 0:
            # Latest figure, not a sum: it already is the whole cached context.
            self.budget.latest_cache_read = cache_read
        if cache_creation > 0:
            self.budget.cumulative_cache_creation_tokens += cache_creation

    def record_read(self, nbytes: int) -> None:
        self.budget.bytes_read += max(nbytes, 0)

    def record_write(self, nbytes: int) -> None:
        self.budget.bytes_written += max(nbytes, 0)

    def record_assistant_text(self, nchars: int) -> None:
        self.budget.assistant_chars += max(nchars, 0)

    def classify(self) -> ControlSignal:
        """Return ROTATE, a one-time WARN, or NONE for the current estimate."""
        tokens = self.budget.context_tokens
        if tokens >= self.rotate_threshold:
            return ControlSignal.ROTATE
        if tokens >= self.warn_threshold and not self.budget.warn_signaled:
            self.budget.warn_signaled = True
            return ControlSignal.WARN
        return ControlSignal.NONE

    def percent_used(self) -> int:
        return self.budget.context_tokens * 100 // self.rotate_threshold

    def health_emoji(self) -> str:
        pct = self.percent_used()
        if pct >= 90:
            return "🔴"
        if pct >= 80:
            return "🟠"
        if pct >= 60:
            return "🟡"
        return "🟢"

    def status_line(self) -> str:
        """Human-readable token status for the activity log."""
        b = self.budget
        breakdown = (
            f"[ctx:{b.latest_cache_read or 0}tok out:{b.cumulative_output_tokens}tok "
            f"cache+:{b.cumulative_cache_creation_tokens}tok]"
        )
        return (
            f"{self.health_emoji()} TOKENS: {b.context_tokens} / {self.rotate_threshold} "
            f"({self.percent_used()}%) {breakdown}"
        )
