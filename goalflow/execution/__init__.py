"""Execution - lifecycle tracking, dispatch and progress events."""

from goalflow.execution.dispatcher import DryRunDispatcher, WorkerDispatcher
from goalflow.execution.events import (
    CycleReported,
    Event,
    EventStream,
    GoalCancelled,
    ReplanningDecision,
    SubTaskFailed,
    SubTaskUnblocked,
    UnassignableReported,
    WaveCompleted,
)
from goalflow.execution.lifecycle import LifecycleTracker

__all__ = [
    "WorkerDispatcher",
    "DryRunDispatcher",
    "Event",
    "EventStream",
    "SubTaskUnblocked",
    "SubTaskFailed",
    "WaveCompleted",
    "UnassignableReported",
    "CycleReported",
    "ReplanningDecision",
    "GoalCancelled",
    "LifecycleTracker",
]
