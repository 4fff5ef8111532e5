"""Goal decomposition - from proposed sub-tasks to an approvable plan.

This module provides the planning pipeline:
- Graph store (sub-tasks and dependency edges, atomic edge batches)
- Cycle detection and repair proposals
- Wave planning (execution waves and critical path)
- Assignment (sub-tasks -> capable workers, granularity flags)
"""

from goalflow.decomposition.assignment import AssignmentResolver
from goalflow.decomposition.cycle_resolver import (
    ProposedFix,
    RepairStrategy,
    detect_cycle,
    resolve_cycle,
)
from goalflow.decomposition.graph_store import GraphStore, RejectedSubTask
from goalflow.decomposition.models import (
    ApprovalStatus,
    Assignment,
    AssignmentReport,
    AutonomyLevel,
    DependencyEdge,
    Effort,
    ExecutionMode,
    FlagKind,
    GranularityFlag,
    Plan,
    SubTask,
    UnassignableSubTask,
    Wave,
    WavePlan,
    WorkerDescriptor,
)
from goalflow.decomposition.registry import InMemoryWorkerRegistry, WorkerRegistry
from goalflow.decomposition.strategy import DecompositionStrategy, StaticDecomposition
from goalflow.decomposition.wave_planner import WavePlanner

__all__ = [
    # Models
    "SubTask",
    "DependencyEdge",
    "Effort",
    "ExecutionMode",
    "AutonomyLevel",
    "WorkerDescriptor",
    "Assignment",
    "AssignmentReport",
    "UnassignableSubTask",
    "GranularityFlag",
    "FlagKind",
    "Wave",
    "WavePlan",
    "Plan",
    "ApprovalStatus",
    # Graph
    "GraphStore",
    "RejectedSubTask",
    # Cycles
    "ProposedFix",
    "RepairStrategy",
    "detect_cycle",
    "resolve_cycle",
    # Planning
    "WavePlanner",
    "AssignmentResolver",
    # Interfaces
    "WorkerRegistry",
    "InMemoryWorkerRegistry",
    "DecompositionStrategy",
    "StaticDecomposition",
]
