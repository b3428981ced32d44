"""Process-tree supervision for the agent subprocess.

The stream parser only sees commands the agent *declares*. The watchdog looks
at what is *actually running* under the agent (including processes started
transitively by build tools) and kills known-blocking interactive programs.

Also home of ``kill_tree`` and ``kill_process_group``, used by the iteration
controller to tear down the whole agent tree when an iteration ends.
"""

from __future__ import annotations

import logging
import os
import signal
import threading

import psutil

from ralph.core.blocking import BLOCKING_PATTERNS, BlockingPattern, find_blocking_process
from ralph.core.models import ControlSignal
from ralph.core.signals import SignalChannel
from ralph.core.state import StateStore

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 3.0
KILL_GRACE_SECONDS = 3.0


def kill_tree(pid: int, timeout: float = KILL_GRACE_SECONDS) -> int:
    """Terminate ``pid`` and all its descendants; kill survivors after ``timeout``.

    Safe to call on a process that already exited. Returns the number of
    processes signaled.
    """
    try:
        root = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return 0

    try:
        children = root.children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        children = []

    procs = children + [root]
    # Children first so nothing gets reparented mid-walk.
    for proc in procs:
        try:
            proc.terminate()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

    _, alive = psutil.wait_procs(procs, timeout=timeout)
    for proc in alive:
        try:
            logger.debug(f"Force killing pid {proc.pid}")
            proc.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
    return len(procs)


def _group_members(pgid: int) -> list[psutil.Process]:
    members = []
    for proc in psutil.process_iter():
        try:
            if os.getpgid(proc.pid) == pgid and proc.status() != psutil.STATUS_ZOMBIE:
                members.append(proc)
        except (OSError, psutil.Error):
            continue
    return members


def kill_process_group(pgid: int, timeout: float = KILL_GRACE_SECONDS) -> int:
    """Terminate every process left in group ``pgid``; kill survivors after ``timeout``.

    The agent runs as a session leader, so its pid is also its group id. This
    reaches descendants that were reparented when the agent exited first.
    Returns the number of processes signaled.
    """
    members = _group_members(pgid)
    if not members:
        return 0
    try:
        os.killpg(pgid, signal.SIGTERM)
    except ProcessLookupError:
        return 0
    except PermissionError as e:
        logger.warning(f"Could not signal process group {pgid}: {e}")
        return 0

    _, alive = psutil.wait_procs(members, timeout=timeout)
    for proc in alive:
        try:
            logger.debug(f"Force killing pid {proc.pid} (group {pgid})")
            proc.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
    return len(members)


class ProcessWatchdog:
    """Polls the agent's descendants for blocking interactive processes.

    On the first hit it kills that one process (not the tree), writes a
    structured entry to errors.log, sends GUTTER and stops polling.
    """

    def __init__(
        self,
        root_pid: int,
        channel: SignalChannel,
        state: StateStore | None = None,
        patterns: tuple[BlockingPattern, ...] = BLOCKING_PATTERNS,
        interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self.root_pid = root_pid
        self.channel = channel
        self.state = state
        self.patterns = patterns
        self.interval = interval
        self.detected: tuple[int, str, BlockingPattern] | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._run, name=f"ralph-watchdog-{self.root_pid}", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)

    def _root_alive(self) -> bool:
        try:
            root = psutil.Process(self.root_pid)
            return root.is_running() and root.status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            if not self._root_alive():
                logger.debug(f"Agent pid {self.root_pid} gone, watchdog exiting")
                return
            if self.scan_once():
                return

    def scan_once(self) -> bool:
        """Inspect the current descendants once. Returns True on a detection."""
        try:
            descendants = psutil.Process(self.root_pid).children(recursive=True)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

        for proc in descendants:
            try:
                cmdline = " ".join(proc.cmdline())
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
            if not cmdline:
                continue
            pattern = find_blocking_process(cmdline, self.patterns)
            if pattern is not None:
                self._handle_blocking(proc, cmdline, pattern)
                return True
        return False

    def _handle_blocking(self, proc: psutil.Process, cmdline: str, pattern: BlockingPattern) -> None:
        self.detected = (proc.pid, cmdline, pattern)
        message = f"WATCHDOG: Blocking process detected: {pattern.name} (pid={proc.pid})"
        logger.warning(message)

        try:
            proc.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            logger.debug(f"Could not kill blocking pid {proc.pid}: {e}")

        if self.state is not None:
            self.state.log_activity(message, emoji="🚨")
            self.state.record_blocked(cmdline, pattern.hint, "Process killed by watchdog")
        self.channel.emit(ControlSignal.GUTTER, "watchdog", f"blocking process: {pattern.name}")
