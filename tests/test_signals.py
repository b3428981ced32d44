"""Tests for the single-reader control channel."""

import threading

from ralph.core.models import ControlSignal
from ralph.core.signals import SignalChannel, SignalMessage


class TestSignalChannel:
    """Tests for first-writer-wins semantics."""

    def test_first_terminal_wins(self):
        channel = SignalChannel()
        assert channel.emit(ControlSignal.GUTTER, "watchdog")
        assert not channel.emit(ControlSignal.COMPLETE, "parser")

        message = channel.receive(timeout=0.1)
        assert message.signal == ControlSignal.GUTTER
        assert message.source == "watchdog"
        assert channel.receive(timeout=0.05) is None
        assert channel.terminal.signal == ControlSignal.GUTTER

    def test_warn_passes_before_terminal(self):
        channel = SignalChannel()
        channel.emit(ControlSignal.WARN, "parser")
        channel.emit(ControlSignal.ROTATE, "parser")
        assert channel.receive(timeout=0.1).signal == ControlSignal.WARN
        assert channel.receive(timeout=0.1).signal == ControlSignal.ROTATE

    def test_warn_discarded_after_terminal(self):
        channel = SignalChannel()
        channel.emit(ControlSignal.COMPLETE, "parser")
        assert not channel.emit(ControlSignal.WARN, "parser")

    def test_closed_channel_discards(self):
        channel = SignalChannel()
        channel.close()
        assert channel.closed
        assert not channel.emit(ControlSignal.GUTTER, "watchdog")
        assert not channel.end_of_stream("parser")

    def test_end_of_stream_is_not_terminal(self):
        channel = SignalChannel()
        assert channel.end_of_stream("parser")
        message = channel.receive(timeout=0.1)
        assert message.end_of_stream
        assert not message.is_terminal
        assert channel.terminal is None

    def test_receive_timeout(self):
        assert SignalChannel().receive(timeout=0.01) is None

    def test_concurrent_writers_single_terminal(self):
        """Racing writers never block and exactly one terminal gets through."""
        channel = SignalChannel()
        barrier = threading.Barrier(8)
        accepted = []

        def writer(i: int) -> None:
            barrier.wait()
            signal = ControlSignal.GUTTER if i % 2 else ControlSignal.ROTATE
            if channel.send(SignalMessage(signal, f"w{i}")):
                accepted.append(i)

        threads = [threading.Thread(target=writer, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=2)

        assert len(accepted) == 1
        assert channel.receive(timeout=0.1).source == f"w{accepted[0]}"
        assert channel.receive(timeout=0.05) is None
