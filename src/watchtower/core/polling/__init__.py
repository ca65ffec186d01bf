"""Poll/reconcile loop and its pure decision helpers."""

from watchtower.core.polling.engine import (
    IntervalDecision,
    Selection,
    calculate_adaptive_interval,
    restore_selection,
    sort_branches,
)
from watchtower.core.polling.loop import PollLoop, PollPhase

__all__ = [
    "IntervalDecision",
    "PollLoop",
    "PollPhase",
    "Selection",
    "calculate_adaptive_interval",
    "restore_selection",
    "sort_branches",
]
