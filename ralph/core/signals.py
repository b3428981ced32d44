"""Single-reader, multi-writer control channel for one iteration.

The stream parser and the process watchdog both write; the iteration
controller is the only reader. Exactly one terminal signal gets through:
the first writer wins, later terminal writes are discarded without blocking.
Advisory WARN messages and the end-of-stream marker pass through until then.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass

from ralph.core.models import ControlSignal, QCVerdict

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignalMessage:
    """One message on the control channel."""

    signal: ControlSignal
    source: str
    detail: str = ""
    verdict: QCVerdict | None = None
    end_of_stream: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.signal.is_terminal


class SignalChannel:
    """Thread-safe, non-blocking for writers, closes after the first terminal."""

    def __init__(self) -> None:
        self._queue: queue.Queue[SignalMessage] = queue.Queue()
        self._lock = threading.Lock()
        self._terminal: SignalMessage | None = None
        self._closed = False

    @property
    def terminal(self) -> SignalMessage | None:
        return self._terminal

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, message: SignalMessage) -> bool:
        """Offer a message. Returns False if it was discarded."""
        with self._lock:
            if self._closed or self._terminal is not None:
                logger.debug(f"Discarding {message.signal.value} from {message.source}")
                return False
            if message.is_terminal:
                self._terminal = message
            self._queue.put(message)
            return True

    def emit(self, signal: ControlSignal, source: str, detail: str = "", **kwargs) -> bool:
        return self.send(SignalMessage(signal=signal, source=source, detail=detail, **kwargs))

    def end_of_stream(self, source: str) -> bool:
        """Mark that ``source`` has no more output. Not terminal by itself."""
        return self.send(SignalMessage(ControlSignal.NONE, source, end_of_stream=True))

    def receive(self, timeout: float | None = None) -> SignalMessage | None:
        """Block for the next message. Returns None on timeout."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        """Stop accepting messages. Pending writers return immediately."""
        with self._lock:
            self._closed = True
