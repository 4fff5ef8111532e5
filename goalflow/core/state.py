"""Execution state types shared by the lifecycle tracker and orchestrator."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubTaskStatus(str, Enum):
    """Lifecycle status of a sub-task.

    BLOCKED is never stored; it is derived for a PENDING sub-task whose
    predecessors are not all COMPLETED.
    """

    PENDING = "pending"
    BLOCKED = "blocked"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {SubTaskStatus.COMPLETED, SubTaskStatus.FAILED, SubTaskStatus.CANCELLED}
)


class GoalStatus(str, Enum):
    """Status of a goal handled by one orchestrator."""

    PLANNING = "planning"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    HALTED = "halted"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ARCHIVED = "archived"


class Outcome(str, Enum):
    """Outcome reported by a worker callback."""

    SUCCESS = "success"
    FAILURE = "failure"


class ExecutionState(BaseModel):
    """Per-sub-task lifecycle record."""

    model_config = ConfigDict(frozen=False)

    status: SubTaskStatus = SubTaskStatus.PENDING
    updated_at: datetime = Field(default_factory=utcnow)
    attempts: int = Field(default=0, ge=0)
    worker_id: str | None = None
    last_error: str | None = None


class WorkerResult(BaseModel):
    """Result delivered by an external worker."""

    model_config = ConfigDict(frozen=True)

    subtask_id: str
    outcome: Outcome
    details: dict[str, Any] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=utcnow)

    @property
    def reason(self) -> str:
        """Failure reason, if the worker gave one."""
        return str(self.details.get("error") or self.details.get("reason") or "unspecified failure")
