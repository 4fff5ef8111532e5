"""Core module - orchestrator, approval, state and configuration."""

from goalflow.core.config import Settings, get_settings
from goalflow.core.exceptions import (
    ApprovalDeniedError,
    AssignmentError,
    ConstructionError,
    CycleDetectedError,
    CycleResolutionError,
    GoalCancelledError,
    GoalflowError,
    InvalidTransitionError,
)
from goalflow.core.approval import (
    ApprovalDecision,
    ApprovalGate,
    ApprovalScope,
    AutoApprovalGate,
)
from goalflow.core.state import GoalStatus, Outcome, SubTaskStatus, WorkerResult
from goalflow.core.orchestrator import GoalOrchestrator, GoalReport

__all__ = [
    # Configuration
    "Settings",
    "get_settings",
    # Errors
    "GoalflowError",
    "ConstructionError",
    "CycleDetectedError",
    "CycleResolutionError",
    "AssignmentError",
    "InvalidTransitionError",
    "ApprovalDeniedError",
    "GoalCancelledError",
    # Approval
    "ApprovalDecision",
    "ApprovalGate",
    "ApprovalScope",
    "AutoApprovalGate",
    # State
    "GoalStatus",
    "Outcome",
    "SubTaskStatus",
    "WorkerResult",
    # Orchestration
    "GoalOrchestrator",
    "GoalReport",
]
