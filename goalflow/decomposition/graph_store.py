"""Graph store - owns the sub-tasks and dependency edges of one goal.

Edge batches are validated on a hypothetical copy of the graph and commit
all-or-nothing, so a partially cyclic graph is never observable.
"""

from collections import deque
from collections.abc import Iterable
from typing import Any

from loguru import logger
from pydantic import BaseModel, ValidationError

from goalflow.core.exceptions import ConstructionError, CycleDetectedError
from goalflow.decomposition.cycle_resolver import ProposedFix, detect_cycle, successor_map
from goalflow.decomposition.models import DependencyEdge, SubTask


class RejectedSubTask(BaseModel):
    """A proposed sub-task that failed validation."""

    name: str
    reason: str


class GraphStore:
    """
    Sub-task graph for a single goal.

    Example:
        >>> store = GraphStore()
        >>> store.add_subtasks([a, b])
        ['a', 'b']
        >>> store.add_edges([DependencyEdge(producer="a", consumer="b")]) is None
        True
        >>> store.successors("a")
        ['b']
    """

    def __init__(self, goal_id: str | None = None) -> None:
        self.goal_id = goal_id
        self._subtasks: dict[str, SubTask] = {}
        self._edges: dict[tuple[str, str], DependencyEdge] = {}
        self._root_id: str | None = None
        self.rejected: list[RejectedSubTask] = []

    # =========================================================================
    # ACCESSORS
    # =========================================================================

    @property
    def subtasks(self) -> dict[str, SubTask]:
        """Copy of the sub-task map."""
        return dict(self._subtasks)

    @property
    def edges(self) -> list[DependencyEdge]:
        return list(self._edges.values())

    @property
    def root_id(self) -> str | None:
        return self._root_id

    def __contains__(self, subtask_id: object) -> bool:
        return subtask_id in self._subtasks

    def __len__(self) -> int:
        return len(self._subtasks)

    def get(self, subtask_id: str) -> SubTask:
        """Get a sub-task by ID.

        Raises:
            KeyError: If the sub-task does not exist.
        """
        return self._subtasks[subtask_id]

    def predecessors(self, subtask_id: str) -> list[str]:
        return [p for (p, c) in self._edges if c == subtask_id]

    def successors(self, subtask_id: str) -> list[str]:
        return [c for (p, c) in self._edges if p == subtask_id]

    def successor_map(self) -> dict[str, list[str]]:
        return successor_map(self._subtasks, self._edges.values())

    def descendants(self, subtask_id: str) -> set[str]:
        """
        Get every sub-task transitively downstream of the given one.

        Args:
            subtask_id: Starting sub-task.

        Returns:
            Set of descendant IDs, not including the start node.
        """
        graph = self.successor_map()
        seen: set[str] = set()
        queue: deque[str] = deque(graph.get(subtask_id, []))
        while queue:
            node = queue.popleft()
            if node in seen:
                continue
            seen.add(node)
            queue.extend(graph.get(node, []))
        return seen

    # =========================================================================
    # MUTATION
    # =========================================================================

    def add_subtasks(self, items: Iterable[SubTask | dict[str, Any]]) -> list[str]:
        """
        Add proposed sub-tasks to the graph.

        Sub-tasks failing validation (missing done-criteria, duplicate ID)
        are rejected and recorded in ``rejected``.

        Args:
            items: SubTask objects or raw proposals from a decomposition strategy.

        Returns:
            IDs of the accepted sub-tasks.
        """
        accepted: list[str] = []

        for item in items:
            if isinstance(item, SubTask):
                task = item
            else:
                try:
                    task = SubTask.model_validate(item)
                except ValidationError as e:
                    name = str(item.get("name", "<unnamed>")) if isinstance(item, dict) else "<invalid>"
                    reasons = "; ".join(
                        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
                    )
                    self._reject(name, reasons)
                    continue

            if task.id in self._subtasks:
                self._reject(task.name, f"duplicate id {task.id}")
                continue

            self._subtasks[task.id] = task
            accepted.append(task.id)

        logger.debug(f"Accepted {len(accepted)} sub-tasks ({len(self.rejected)} rejected so far)")
        return accepted

    def _reject(self, name: str, reason: str) -> None:
        logger.warning(f"Rejected sub-task {name!r}: {reason}")
        self.rejected.append(RejectedSubTask(name=name, reason=reason))

    def mark_root(self, subtask_id: str) -> None:
        """Mark the single goal root sub-task."""
        if subtask_id not in self._subtasks:
            raise ConstructionError(f"Unknown root sub-task: {subtask_id}")
        self._root_id = subtask_id

    def add_edges(self, edges: Iterable[DependencyEdge]) -> list[str] | None:
        """
        Add a batch of edges atomically.

        The batch is checked for cycles on the hypothetical post-add graph,
        starting the traversal from each node of the batch.

        Args:
            edges: Dependency edges to add.

        Returns:
            None on commit, or the cycle path if the batch was rejected.

        Raises:
            ConstructionError: If an edge references an unknown sub-task.
        """
        batch = list(edges)
        unknown = sorted(
            {n for e in batch for n in e.key if n not in self._subtasks}
        )
        if unknown:
            raise ConstructionError(f"Edges reference unknown sub-tasks: {unknown}")

        candidate = dict(self._edges)
        for edge in batch:
            candidate.setdefault(edge.key, edge)

        start_nodes: list[str] = []
        for edge in batch:
            for node in (edge.consumer, edge.producer):
                if node not in start_nodes:
                    start_nodes.append(node)

        cycle = detect_cycle(successor_map(self._subtasks, candidate.values()), start_nodes)
        if cycle:
            logger.warning(f"Rejected edge batch of {len(batch)}: cycle {' -> '.join(cycle)}")
            return cycle

        self._edges = candidate
        logger.debug(f"Committed {len(batch)} edges ({len(self._edges)} total)")
        return None

    def infer_edges(self) -> list[DependencyEdge]:
        """
        Derive producer -> consumer edges from matching artifact names.

        Returns:
            Edges for every input artifact produced by another sub-task.
        """
        producers: dict[str, list[str]] = {}
        for task in self._subtasks.values():
            for artifact in task.outputs:
                producers.setdefault(artifact, []).append(task.id)

        inferred: dict[tuple[str, str], DependencyEdge] = {}
        for task in self._subtasks.values():
            for artifact in task.inputs:
                for producer in producers.get(artifact, []):
                    if producer == task.id:
                        continue
                    edge = DependencyEdge(producer=producer, consumer=task.id, artifact=artifact)
                    inferred.setdefault(edge.key, edge)

        return list(inferred.values())

    def replace_subtask(self, subtask: SubTask) -> SubTask:
        """
        Replace an existing sub-task definition in place (re-scoping).

        Returns:
            The previous definition.
        """
        if subtask.id not in self._subtasks:
            raise ConstructionError(f"Unknown sub-task: {subtask.id}")
        previous = self._subtasks[subtask.id]
        self._subtasks[subtask.id] = subtask
        return previous

    def apply_fix(self, fix: ProposedFix, batch: Iterable[DependencyEdge] = ()) -> None:
        """
        Commit an approved cycle fix together with the batch it repairs.

        Args:
            fix: Fix returned by ``resolve_cycle``.
            batch: The edge batch that was rejected.

        Raises:
            CycleDetectedError: If the result would still contain a cycle.
        """
        nodes, edges = fix.transform(self._subtasks, list(self._edges.values()) + list(batch))
        cycle = detect_cycle(successor_map(nodes, edges))
        if cycle:
            raise CycleDetectedError(cycle)

        self._subtasks = nodes
        self._edges = {e.key: e for e in edges}
        if self._root_id is not None and self._root_id not in nodes:
            self._root_id = fix.add_subtasks[0].id if fix.add_subtasks else None

        logger.info(f"Applied {fix.strategy.value} fix for cycle {' -> '.join(fix.cycle)}")

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def orphans(self) -> list[str]:
        """
        Find sub-tasks disconnected from the rest of the graph.

        Returns:
            IDs with no predecessor and no successor, excluding the goal root.
        """
        connected = {n for key in self._edges for n in key}
        return [
            sid for sid in self._subtasks
            if sid not in connected and sid != self._root_id
        ]

    def roots(self) -> list[str]:
        """Sub-tasks with no predecessors."""
        consumers = {c for (_, c) in self._edges}
        return [sid for sid in self._subtasks if sid not in consumers]

    def subgraph(self, subtask_ids: Iterable[str]) -> "GraphStore":
        """Copy of the graph restricted to the given sub-tasks."""
        keep = set(subtask_ids)
        sub = GraphStore(goal_id=self.goal_id)
        sub._subtasks = {sid: t for sid, t in self._subtasks.items() if sid in keep}
        sub._edges = {
            k: e for k, e in self._edges.items() if k[0] in keep and k[1] in keep
        }
        if self._root_id in keep:
            sub._root_id = self._root_id
        return sub

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "goal_id": self.goal_id,
            "root_id": self._root_id,
            "subtasks": {k: v.model_dump(mode="json") for k, v in self._subtasks.items()},
            "edges": [e.model_dump(mode="json") for e in self._edges.values()],
        }
