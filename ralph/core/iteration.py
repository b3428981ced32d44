"""One iteration: launch the agent, watch it, tear it down.

State machine::

    starting -> running -> rotated | stuck | completed | exhausted

Per iteration four actors run concurrently: the agent subprocess, the stream
parser thread (blocking read per line), the process watchdog thread and an
optional display actor. Parser and watchdog write to one SignalChannel; this
controller is its only reader. The first terminal message ends the iteration
and the whole agent tree is killed, even if it was already exiting.

A non-zero agent exit status is not a terminal signal by itself. An agent
that exits without one is reported as EXHAUSTED and the outer loop decides.
"""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from ralph.core.agent import AgentRunner
from ralph.core.budget import BudgetTracker
from ralph.core.config import RalphConfig
from ralph.core.gutter import GutterDetector
from ralph.core.models import ControlSignal, CriteriaSnapshot, IterationOutcome, QCVerdict
from ralph.core.parser import StreamParser
from ralph.core.signals import SignalChannel, SignalMessage
from ralph.core.state import StateStore
from ralph.core.tasks import TaskFile
from ralph.core.watchdog import ProcessWatchdog, kill_process_group, kill_tree

logger = logging.getLogger(__name__)

RECEIVE_POLL_SECONDS = 0.5
JOIN_TIMEOUT_SECONDS = 5.0
EXIT_GRACE_SECONDS = 1.0
STREAM_DRAIN_SECONDS = 2.0


class Display(Protocol):
    """Status actor attached to a running iteration."""

    def start(self) -> None: ...

    def notify(self, message: SignalMessage) -> None: ...

    def stop(self) -> None: ...


DisplayFactory = Callable[[StreamParser, TaskFile], Display]


@dataclass
class IterationResult:
    """What the outer loop learns from one iteration."""

    outcome: IterationOutcome
    signal: ControlSignal
    criteria: CriteriaSnapshot
    session_id: str | None = None
    verdict: QCVerdict | None = None
    detail: str = ""
    source: str = ""
    warned: bool = False
    timed_out: bool = False
    exit_code: int | None = None


class IterationController:
    """Owns the lifecycle of one agent run."""

    def __init__(
        self,
        config: RalphConfig,
        state: StateStore,
        runner: AgentRunner | None = None,
        display_factory: DisplayFactory | None = None,
    ):
        self.config = config
        self.state = state
        self.runner = runner or AgentRunner(config, state.workspace)
        self.display_factory = display_factory

    def _new_parser(self, channel: SignalChannel, verification: bool) -> StreamParser:
        # Fresh budget and ledgers: nothing carries over between iterations.
        tracker = BudgetTracker(
            warn_threshold=self.config.warn_threshold,
            rotate_threshold=self.config.rotate_threshold,
            prompt_size_estimate=self.config.prompt_size_estimate,
        )
        return StreamParser(
            channel=channel,
            state=self.state,
            tracker=tracker,
            detector=GutterDetector(),
            verification=verification,
        )

    def run(
        self,
        task: TaskFile,
        prompt: str,
        session_id: str | None = None,
        verification: bool = False,
        timeout: float | None = None,
    ) -> IterationResult:
        """Run the agent once with ``prompt`` and wait for the outcome.

        Raises AgentLaunchError if the agent cannot be started.
        """
        # --- starting ---
        channel = SignalChannel()
        parser = self._new_parser(channel, verification)
        parser.write_banner()

        proc = self.runner.spawn(prompt, session_id)
        logger.debug(f"Agent started (pid={proc.pid}, verification={verification})")

        parser_thread = threading.Thread(
            target=parser.consume,
            args=(proc.stdout,),
            name=f"ralph-parser-{proc.pid}",
            daemon=True,
        )
        watchdog = ProcessWatchdog(
            proc.pid, channel, self.state, interval=self.config.watchdog_interval
        )
        display = self.display_factory(parser, task) if self.display_factory else None

        terminal: SignalMessage | None = None
        warned = False
        timed_out = False
        exited_at: float | None = None

        try:
            parser_thread.start()
            watchdog.start()
            if display is not None:
                display.start()

            # --- running ---
            deadline = time.monotonic() + timeout if timeout else None
            while True:
                wait = RECEIVE_POLL_SECONDS
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        timed_out = True
                        logger.warning(f"Agent run timed out after {timeout}s")
                        self.state.log_activity(f"Agent timed out after {timeout}s", emoji="⏱️")
                        break
                    wait = min(wait, remaining)

                message = channel.receive(timeout=wait)
                if message is None:
                    if proc.poll() is None:
                        continue
                    # Agent exited; a leftover descendant may still hold the pipe open.
                    if exited_at is None:
                        exited_at = time.monotonic()
                    elif time.monotonic() - exited_at >= STREAM_DRAIN_SECONDS:
                        logger.warning(
                            f"Agent exited ({proc.returncode}) but its output is still open; "
                            "ending iteration"
                        )
                        break
                    continue
                if message.end_of_stream:
                    break
                if message.signal == ControlSignal.WARN:
                    warned = True
                    logger.info(f"Context warning: {message.detail}")
                    if display is not None:
                        display.notify(message)
                    continue
                if message.is_terminal:
                    terminal = message
                    if display is not None:
                        display.notify(message)
                    break
        finally:
            # --- teardown ---
            channel.close()
            if terminal is None and not timed_out:
                # Output ended on its own; let the agent exit with its own status.
                try:
                    proc.wait(timeout=EXIT_GRACE_SECONDS)
                except subprocess.TimeoutExpired:
                    pass
            if proc.poll() is None:
                kill_tree(proc.pid)
            try:
                proc.wait(timeout=JOIN_TIMEOUT_SECONDS)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
            # Descendants orphaned by an agent that exited first are still in its group.
            leftover = kill_process_group(proc.pid)
            if leftover:
                logger.info(f"Killed {leftover} leftover process(es) from agent group {proc.pid}")
            watchdog.stop()
            parser_thread.join(timeout=JOIN_TIMEOUT_SECONDS)
            if parser_thread.is_alive():
                logger.warning("Stream parser did not finish; an orphan may hold the output pipe")
            if display is not None:
                display.stop()
            if proc.stdout is not None:
                proc.stdout.close()

        signal = terminal.signal if terminal else ControlSignal.NONE
        outcome = IterationOutcome.from_signal(signal)
        result = IterationResult(
            outcome=outcome,
            signal=signal,
            criteria=task.snapshot(),
            session_id=parser.session_id,
            verdict=terminal.verdict if terminal else None,
            detail=terminal.detail if terminal else "",
            source=terminal.source if terminal else "",
            warned=warned,
            timed_out=timed_out,
            exit_code=proc.returncode,
        )
        logger.info(
            f"Iteration ended: {outcome.value} ({result.source or 'agent exit'}) "
            f"criteria {result.criteria}"
        )
        return result
