"""Wave planner - partitions the goal graph into execution waves.

Waves come from Kahn's algorithm: every batch of zero in-degree nodes forms
the next wave, with in-degree counting only predecessors not yet scheduled.
The critical path is the heaviest root-to-leaf chain, computed by a single
forward pass over the topological order.
"""

from collections.abc import Iterable, Mapping

from loguru import logger

from goalflow.core.config import DEFAULT_EFFORT_WEIGHTS
from goalflow.core.exceptions import CycleDetectedError
from goalflow.decomposition.cycle_resolver import detect_cycle
from goalflow.decomposition.graph_store import GraphStore
from goalflow.decomposition.models import Wave, WavePlan

EDGE_WEIGHT = 1


class WavePlanner:
    """
    Compute execution waves and the critical path.

    Example:
        >>> planner = WavePlanner()
        >>> plan = planner.plan(store)
        >>> plan.as_lists()
        [['A'], ['B', 'C'], ['D']]
        >>> plan.critical_path
        ['A', 'B', 'D']
    """

    def __init__(self, effort_weights: Mapping[str, int] | None = None) -> None:
        """
        Initialize the planner.

        Args:
            effort_weights: Effort level -> node weight. Defaults to
                small=1, medium=3, large=8.
        """
        self.effort_weights = dict(effort_weights or DEFAULT_EFFORT_WEIGHTS)

    def plan(self, graph: GraphStore) -> WavePlan:
        """
        Partition the whole graph into waves and find the critical path.

        Args:
            graph: Graph store to plan.

        Returns:
            WavePlan with waves and critical path.

        Raises:
            CycleDetectedError: If the graph is not acyclic.
        """
        batches = self._kahn_batches(graph, graph.subtasks)
        waves = [Wave(index=i, subtask_ids=batch) for i, batch in enumerate(batches)]
        order = [sid for batch in batches for sid in batch]
        path, weight = self._critical_path(graph, order)

        logger.info(
            f"Planned {len(order)} sub-tasks into {len(waves)} waves; "
            f"critical path {' -> '.join(path)} (weight {weight})"
        )
        return WavePlan(waves=waves, critical_path=path, critical_path_weight=weight)

    def replan_subgraph(
        self,
        graph: GraphStore,
        current: WavePlan,
        affected: Iterable[str],
    ) -> WavePlan:
        """
        Re-derive waves for the affected sub-tasks only.

        Unaffected sub-tasks keep their wave index. Each affected sub-task is
        placed in the earliest wave after all of its predecessors.

        Args:
            graph: Graph store (already updated).
            current: Wave plan in effect before the change.
            affected: Sub-tasks whose placement must be recomputed.

        Returns:
            New WavePlan with recomputed critical path.

        Raises:
            CycleDetectedError: If the affected subgraph is not acyclic.
        """
        affected_set = {sid for sid in affected if sid in graph}
        fixed: dict[str, int] = {}
        for wave in current.waves:
            for sid in wave.subtask_ids:
                if sid not in affected_set and sid in graph:
                    fixed[sid] = wave.index

        # Sub-tasks that are neither affected nor previously placed get planned too.
        affected_set |= {sid for sid in graph.subtasks if sid not in fixed}

        batches = self._kahn_batches(graph, affected_set)
        levels = dict(fixed)
        for batch in batches:
            for sid in batch:
                preds = graph.predecessors(sid)
                levels[sid] = max((levels[p] + 1 for p in preds if p in levels), default=0)

        total = max(levels.values(), default=-1) + 1
        grouped: list[list[str]] = [[] for _ in range(total)]
        for sid, level in levels.items():
            grouped[level].append(sid)

        waves = [
            Wave(index=i, subtask_ids=sorted(ids)) for i, ids in enumerate(grouped)
        ]
        order = sorted(levels, key=lambda sid: (levels[sid], sid))
        path, weight = self._critical_path(graph, order)

        logger.info(f"Re-planned {len(affected_set)} affected sub-tasks; {len(waves)} waves")
        return WavePlan(waves=waves, critical_path=path, critical_path_weight=weight)

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _kahn_batches(self, graph: GraphStore, nodes: Iterable[str]) -> list[list[str]]:
        """Extract zero in-degree batches from the given node set."""
        node_set = set(nodes)
        in_degree = {
            sid: sum(1 for p in graph.predecessors(sid) if p in node_set) for sid in node_set
        }

        batches: list[list[str]] = []
        scheduled: set[str] = set()
        ready = sorted(sid for sid, d in in_degree.items() if d == 0)

        while ready:
            batches.append(ready)
            scheduled.update(ready)
            next_ready: list[str] = []
            for sid in ready:
                for succ in graph.successors(sid):
                    if succ not in node_set:
                        continue
                    in_degree[succ] -= 1
                    if in_degree[succ] == 0:
                        next_ready.append(succ)
            ready = sorted(next_ready)

        if len(scheduled) != len(node_set):
            remaining = {sid: graph.successors(sid) for sid in node_set - scheduled}
            cycle = detect_cycle(remaining) or sorted(remaining)
            raise CycleDetectedError(cycle)

        return batches

    def _critical_path(self, graph: GraphStore, order: list[str]) -> tuple[list[str], int]:
        """Longest weighted path over a topological order."""
        if not order:
            return [], 0

        dist: dict[str, int] = {}
        best_pred: dict[str, str | None] = {}

        for sid in order:
            node_weight = self.node_weight(graph, sid)
            preds = sorted(p for p in graph.predecessors(sid) if p in dist)
            best: str | None = None
            for pred in preds:
                if best is None or dist[pred] > dist[best]:
                    best = pred
            dist[sid] = node_weight + (dist[best] + EDGE_WEIGHT if best is not None else 0)
            best_pred[sid] = best

        end = max(sorted(dist), key=lambda sid: dist[sid])
        path = [end]
        while best_pred[path[-1]] is not None:
            path.append(best_pred[path[-1]])  # type: ignore[arg-type]

        return list(reversed(path)), dist[end]

    def node_weight(self, graph: GraphStore, subtask_id: str) -> int:
        """Weight of a sub-task on the critical path."""
        effort = graph.get(subtask_id).effort
        return self.effort_weights.get(effort.value, DEFAULT_EFFORT_WEIGHTS[effort.value])
