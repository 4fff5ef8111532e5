"""Pydantic models for goal decomposition and planning.

This module defines the data structures shared by the planning pipeline:
sub-tasks and their dependency edges, worker descriptors, waves,
assignments and the aggregate plan presented to an approver.
"""

from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# =============================================================================
# ENUMS
# =============================================================================


class Effort(str, Enum):
    """Estimated effort of a sub-task."""

    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"


class ExecutionMode(str, Enum):
    """How a sub-task must be executed by its worker."""

    SYNC = "sync"
    ASYNC = "async"


class AutonomyLevel(str, Enum):
    """Whether a worker may act without per-step approval."""

    FULL = "full"
    GATED = "gated"


class FlagKind(str, Enum):
    """Kind of advisory granularity flag."""

    MERGE_UPWARD = "merge_upward"
    SPLIT_DOWNWARD = "split_downward"


class ApprovalStatus(str, Enum):
    """Approval state of a plan."""

    PENDING = "pending"
    APPROVED = "approved"
    PARTIAL = "partial"
    DENIED = "denied"


# =============================================================================
# GRAPH ELEMENTS
# =============================================================================


class SubTask(BaseModel):
    """Atomic, independently assignable unit of work.

    A sub-task without a verifiable completion condition is invalid, so an
    empty ``done_criteria`` fails validation at construction.

    Example:
        >>> task = SubTask(
        ...     id="schema",
        ...     name="Design schema",
        ...     outputs=["schema.sql"],
        ...     done_criteria="schema reviewed and applied to staging",
        ...     effort=Effort.SMALL,
        ...     domain_tag="database",
        ... )
        >>> task.domain_tags
        ['database']
    """

    model_config = ConfigDict(frozen=False)

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        min_length=1,
        description="Unique sub-task identifier",
    )
    name: str = Field(
        ...,
        min_length=1,
        max_length=255,
        description="Sub-task name",
    )
    description: str = Field(
        default="",
        description="Detailed description of the work",
    )
    inputs: list[str] = Field(
        default_factory=list,
        description="Artifact names this sub-task requires",
    )
    outputs: list[str] = Field(
        default_factory=list,
        description="Artifact names this sub-task produces",
    )
    done_criteria: str = Field(
        ...,
        description="Predicate describing when the sub-task is done",
    )
    effort: Effort = Field(
        default=Effort.MEDIUM,
        description="Estimated effort",
    )
    domain_tags: list[str] = Field(
        default_factory=list,
        description="Domain capabilities required to perform the work",
    )
    execution_mode: ExecutionMode = Field(
        default=ExecutionMode.ASYNC,
        description="Execution mode the worker must support",
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional metadata",
    )

    @model_validator(mode="before")
    @classmethod
    def accept_single_domain_tag(cls, data: Any) -> Any:
        """Allow ``domain_tag="x"`` as shorthand for ``domain_tags=["x"]``."""
        if isinstance(data, dict) and "domain_tag" in data:
            data = dict(data)
            tag = data.pop("domain_tag")
            if tag and not data.get("domain_tags"):
                data["domain_tags"] = [tag]
        return data

    @field_validator("done_criteria")
    @classmethod
    def validate_done_criteria(cls, v: str) -> str:
        """Reject sub-tasks with no verifiable completion condition."""
        v = v.strip()
        if not v:
            raise ValueError("done_criteria must not be empty")
        return v

    @property
    def domain_tag(self) -> str | None:
        """Primary domain tag, if any."""
        return self.domain_tags[0] if self.domain_tags else None

    def to_payload(self) -> dict[str, Any]:
        """Build the payload sent to a worker on dispatch."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "inputs": list(self.inputs),
            "outputs": list(self.outputs),
            "done_criteria": self.done_criteria,
        }


class DependencyEdge(BaseModel):
    """Producer -> consumer dependency between two sub-tasks."""

    model_config = ConfigDict(frozen=True)

    producer: str = Field(description="Sub-task producing the artifact")
    consumer: str = Field(description="Sub-task consuming the artifact")
    artifact: str | None = Field(
        default=None,
        description="Artifact carried by the edge, when known",
    )

    @property
    def key(self) -> tuple[str, str]:
        return (self.producer, self.consumer)

    def inverted(self) -> "DependencyEdge":
        """Return the same edge pointing the other way."""
        return DependencyEdge(producer=self.consumer, consumer=self.producer, artifact=self.artifact)


# =============================================================================
# WORKERS & ASSIGNMENTS
# =============================================================================


class WorkerDescriptor(BaseModel):
    """Worker record advertised by the external registry."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1, description="Worker identifier")
    domain_tags: list[str] = Field(
        default_factory=list,
        description="Domains the worker can handle",
    )
    autonomy_level: AutonomyLevel = Field(
        default=AutonomyLevel.GATED,
        description="Whether the worker acts without per-step approval",
    )
    execution_modes: list[ExecutionMode] = Field(
        default_factory=lambda: [ExecutionMode.SYNC, ExecutionMode.ASYNC],
        description="Execution modes the worker offers",
    )
    current_load: int = Field(
        default=0,
        ge=0,
        description="Work items currently held by the worker",
    )

    def capabilities(self) -> list[str]:
        """Capability set used for matching."""
        return list(self.domain_tags)

    def supports(self, mode: ExecutionMode) -> bool:
        return mode in self.execution_modes


class Assignment(BaseModel):
    """Binding of a sub-task to a worker."""

    model_config = ConfigDict(frozen=True)

    subtask_id: str
    worker_id: str
    autonomy_level: AutonomyLevel


class UnassignableSubTask(BaseModel):
    """A sub-task no registered worker can take."""

    model_config = ConfigDict(frozen=True)

    subtask_id: str
    missing_capability: str
    reason: str = ""


class GranularityFlag(BaseModel):
    """Advisory flag surfaced to the approver, never auto-applied."""

    model_config = ConfigDict(frozen=True)

    subtask_id: str
    kind: FlagKind
    reason: str


class AssignmentReport(BaseModel):
    """Output of one assignment pass."""

    assignments: dict[str, Assignment] = Field(default_factory=dict)
    unassignable: dict[str, UnassignableSubTask] = Field(default_factory=dict)
    flags: list[GranularityFlag] = Field(default_factory=list)


# =============================================================================
# WAVES & PLAN
# =============================================================================


class Wave(BaseModel):
    """A batch of mutually independent sub-tasks."""

    model_config = ConfigDict(frozen=True)

    index: int = Field(ge=0)
    subtask_ids: list[str] = Field(default_factory=list)


class WavePlan(BaseModel):
    """Wave partition plus critical path."""

    waves: list[Wave] = Field(default_factory=list)
    critical_path: list[str] = Field(default_factory=list)
    critical_path_weight: int = Field(default=0, ge=0)

    @property
    def total_waves(self) -> int:
        return len(self.waves)

    @property
    def critical_path_length(self) -> int:
        """Number of sub-tasks on the critical path."""
        return len(self.critical_path)

    def wave_of(self, subtask_id: str) -> int | None:
        """Get the wave index holding a sub-task.

        Args:
            subtask_id: Sub-task identifier.

        Returns:
            Wave index, or None if the sub-task is not scheduled.
        """
        for wave in self.waves:
            if subtask_id in wave.subtask_ids:
                return wave.index
        return None

    def as_lists(self) -> list[list[str]]:
        return [list(w.subtask_ids) for w in self.waves]


class Plan(BaseModel):
    """Everything an approver needs to decide on a goal."""

    goal_id: str = Field(default_factory=lambda: str(uuid4()))
    goal: str = Field(default="", description="Goal statement")
    subtasks: dict[str, SubTask] = Field(default_factory=dict)
    edges: list[DependencyEdge] = Field(default_factory=list)
    root_id: str | None = None
    wave_plan: WavePlan = Field(default_factory=WavePlan)
    assignments: dict[str, Assignment] = Field(default_factory=dict)
    unassignable: dict[str, UnassignableSubTask] = Field(default_factory=dict)
    flags: list[GranularityFlag] = Field(default_factory=list)
    cycles_reported: list[list[str]] = Field(default_factory=list)
    approval_status: ApprovalStatus = ApprovalStatus.PENDING
    approved_waves: list[int] = Field(default_factory=list)

    @property
    def waves(self) -> list[Wave]:
        return self.wave_plan.waves

    @property
    def has_gaps(self) -> bool:
        """True when some sub-task has no capable worker."""
        return bool(self.unassignable)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return self.model_dump(mode="json")
