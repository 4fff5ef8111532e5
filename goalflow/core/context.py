"""Per-goal context - the single owner of a goal's mutable state."""

from collections import defaultdict
from typing import Any
from uuid import uuid4

from goalflow.core.state import GoalStatus
from goalflow.decomposition.graph_store import GraphStore
from goalflow.decomposition.models import Plan
from goalflow.execution.events import EventStream
from goalflow.execution.lifecycle import LifecycleTracker


class GoalContext:
    """
    Graph, plan and lifecycle state for exactly one goal.

    Every component receives the context explicitly; nothing is shared
    between goals, so several goals can run in one process.
    """

    def __init__(self, goal: str = "", goal_id: str | None = None) -> None:
        self.goal_id = goal_id or str(uuid4())
        self.goal = goal
        self.status = GoalStatus.PLANNING
        self.graph = GraphStore(goal_id=self.goal_id)
        self.events = EventStream(goal_id=self.goal_id)
        self.tracker = LifecycleTracker(self.graph, self.events)
        self.plan: Plan | None = None
        # Sub-task ID -> workers it has been dispatched to
        self.tried_workers: dict[str, set[str]] = defaultdict(set)
        # Sub-tasks excluded from dispatch (declined recovery, unassignable)
        self.held: set[str] = set()

    def require_plan(self) -> Plan:
        if self.plan is None:
            raise RuntimeError(f"Goal {self.goal_id} has no plan yet")
        return self.plan

    def snapshot(self) -> dict[str, Any]:
        """Serializable view of the whole goal state."""
        return {
            "goal_id": self.goal_id,
            "goal": self.goal,
            "status": self.status.value,
            "graph": self.graph.to_dict(),
            "plan": self.plan.to_dict() if self.plan else None,
            "lifecycle": self.tracker.to_dict(),
            "held": sorted(self.held),
            "tried_workers": {k: sorted(v) for k, v in self.tried_workers.items()},
            "events": self.events.to_list(),
        }
