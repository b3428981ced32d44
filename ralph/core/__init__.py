"""Core modules for the Ralph loop."""

from ralph.core.config import RalphConfig, load_config
from ralph.core.loop import LoopResult, RalphLoop
from ralph.core.models import (
    ControlSignal,
    CriteriaSnapshot,
    IterationOutcome,
    QCVerdict,
    StreamEvent,
)
from ralph.core.state import StateStore
from ralph.core.tasks import TaskFile

__all__ = [
    "ControlSignal",
    "CriteriaSnapshot",
    "IterationOutcome",
    "LoopResult",
    "QCVerdict",
    "RalphConfig",
    "RalphLoop",
    "StateStore",
    "StreamEvent",
    "TaskFile",
    "load_config",
]
