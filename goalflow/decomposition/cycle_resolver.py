"""Cycle detection and repair proposals.

Detection is a depth-first traversal with an explicit recursion stack; a
back-edge to a node still on the stack closes a cycle. Repair is a pure
function: it inspects the graph plus the rejected edge batch and returns
candidate fixes without mutating anything. Fixes are tried in a fixed order
(merge, stage, invert, split) and only fixes that remove every cycle are
proposed. Applying one is the caller's job, after confirmation.
"""

from collections.abc import Iterable, Mapping, Sequence
from enum import Enum
from typing import TYPE_CHECKING

from loguru import logger
from pydantic import BaseModel, Field

from goalflow.decomposition.models import (
    Assignment,
    DependencyEdge,
    Effort,
    ExecutionMode,
    SubTask,
)

if TYPE_CHECKING:
    from goalflow.decomposition.graph_store import GraphStore

EFFORT_ORDER = [Effort.SMALL, Effort.MEDIUM, Effort.LARGE]


class RepairStrategy(str, Enum):
    """Cycle repair strategies, in the order they are tried."""

    MERGE = "merge"
    STAGE = "stage"
    INVERT = "invert"
    SPLIT = "split"


class ProposedFix(BaseModel):
    """A candidate repair for one cycle.

    The fix is expressed as a transformation of the committed graph plus
    the rejected batch: sub-tasks and edges to drop, then sub-tasks and
    edges to add. ``add_edges`` becomes the batch committed on approval.
    """

    strategy: RepairStrategy
    cycle: list[str]
    rationale: str
    remove_subtask_ids: list[str] = Field(default_factory=list)
    add_subtasks: list[SubTask] = Field(default_factory=list)
    replace_subtasks: list[SubTask] = Field(default_factory=list)
    remove_edges: list[tuple[str, str]] = Field(default_factory=list)
    add_edges: list[DependencyEdge] = Field(default_factory=list)

    def transform(
        self,
        subtasks: Mapping[str, SubTask],
        edges: Iterable[DependencyEdge],
    ) -> tuple[dict[str, SubTask], list[DependencyEdge]]:
        """Apply the fix to copies of the given nodes and edges.

        Args:
            subtasks: Sub-tasks by ID.
            edges: Committed edges plus the rejected batch.

        Returns:
            Tuple of (new sub-task map, new edge list).
        """
        removed = set(self.remove_subtask_ids)
        dropped = set(self.remove_edges)

        nodes = {sid: t for sid, t in subtasks.items() if sid not in removed}
        for task in self.replace_subtasks:
            nodes[task.id] = task
        for task in self.add_subtasks:
            nodes[task.id] = task

        result: dict[tuple[str, str], DependencyEdge] = {}
        for edge in list(edges) + list(self.add_edges):
            if edge.key in dropped and edge not in self.add_edges:
                continue
            if edge.producer in removed or edge.consumer in removed:
                continue
            result.setdefault(edge.key, edge)

        return nodes, list(result.values())


# =============================================================================
# CYCLE DETECTION
# =============================================================================


def successor_map(
    subtask_ids: Iterable[str],
    edges: Iterable[DependencyEdge],
) -> dict[str, list[str]]:
    """Build producer -> consumers adjacency for the given nodes."""
    graph: dict[str, list[str]] = {sid: [] for sid in subtask_ids}
    for edge in edges:
        consumers = graph.setdefault(edge.producer, [])
        if edge.consumer not in consumers:
            consumers.append(edge.consumer)
        graph.setdefault(edge.consumer, [])
    return graph


def detect_cycle(
    graph: Mapping[str, Sequence[str]],
    start_nodes: Iterable[str] | None = None,
) -> list[str] | None:
    """
    Detect a cycle using DFS with a recursion stack.

    Args:
        graph: Adjacency map (node -> successor nodes).
        start_nodes: Nodes to start traversal from, in order. Defaults to
            every node in the graph.

    Returns:
        Cycle path with the first node repeated at the end, or None.

    Example:
        >>> detect_cycle({"a": ["b"], "b": ["a"]})
        ['a', 'b', 'a']
    """
    WHITE, GRAY, BLACK = 0, 1, 2
    colors: dict[str, int] = {}
    stack: list[str] = []

    def dfs(node: str) -> list[str] | None:
        colors[node] = GRAY
        stack.append(node)

        for neighbor in graph.get(node, ()):
            state = colors.get(neighbor, WHITE)
            if state == GRAY:
                start = stack.index(neighbor)
                return stack[start:] + [neighbor]
            if state == WHITE:
                found = dfs(neighbor)
                if found:
                    return found

        stack.pop()
        colors[node] = BLACK
        return None

    starts = list(start_nodes) if start_nodes is not None else list(graph)
    for node in starts:
        if colors.get(node, WHITE) == WHITE:
            found = dfs(node)
            if found:
                return found

    return None


# =============================================================================
# CYCLE REPAIR
# =============================================================================


def resolve_cycle(
    graph: "GraphStore",
    cycle_path: list[str],
    batch: Sequence[DependencyEdge] = (),
    assignments: Mapping[str, Assignment] | None = None,
) -> list[ProposedFix]:
    """
    Propose fixes for a cycle without mutating the graph.

    Args:
        graph: Graph store holding the committed sub-tasks and edges.
        cycle_path: Cycle as reported by detection (first node repeated).
        batch: The rejected edge batch that introduced the cycle.
        assignments: Current assignments, used by the merge check.

    Returns:
        Fixes that eliminate every cycle, in strategy order. Empty when
        no strategy applies.
    """
    subtasks = graph.subtasks
    combined: dict[tuple[str, str], DependencyEdge] = {e.key: e for e in graph.edges}
    for edge in batch:
        combined.setdefault(edge.key, edge)
    edges = list(combined.values())

    nodes = _cycle_nodes(cycle_path)
    if any(n not in subtasks for n in nodes):
        logger.error(f"Cycle references unknown sub-tasks: {cycle_path}")
        return []

    candidates = [
        _propose_merge(subtasks, edges, cycle_path, assignments),
        _propose_stage(subtasks, edges, cycle_path),
        _propose_invert(subtasks, edges, cycle_path, batch),
        _propose_split(subtasks, edges, cycle_path),
    ]

    fixes: list[ProposedFix] = []
    for fix in candidates:
        if fix is None:
            continue
        new_nodes, new_edges = fix.transform(subtasks, edges)
        remaining = detect_cycle(successor_map(new_nodes, new_edges))
        if remaining:
            logger.debug(f"{fix.strategy.value} fix leaves cycle {remaining}, discarded")
            continue
        fixes.append(fix)

    logger.info(
        f"Cycle {' -> '.join(cycle_path)}: "
        f"{len(fixes)} fix(es) proposed ({', '.join(f.strategy.value for f in fixes) or 'none'})"
    )
    return fixes


def _cycle_nodes(cycle_path: list[str]) -> list[str]:
    nodes: list[str] = []
    for node in cycle_path:
        if node not in nodes:
            nodes.append(node)
    return nodes


def _cycle_edges(cycle_path: list[str]) -> list[tuple[str, str]]:
    return list(zip(cycle_path, cycle_path[1:]))


def _propose_merge(
    subtasks: Mapping[str, SubTask],
    edges: list[DependencyEdge],
    cycle_path: list[str],
    assignments: Mapping[str, Assignment] | None,
) -> ProposedFix | None:
    """Collapse the cycle into one sub-task when all members share a domain."""
    nodes = _cycle_nodes(cycle_path)
    if len(nodes) < 2:
        return None

    members = [subtasks[n] for n in nodes]
    tag_sets = {tuple(sorted(t.domain_tags)) for t in members}
    if len(tag_sets) != 1:
        return None
    if assignments:
        workers = {assignments[n].worker_id if n in assignments else None for n in nodes}
        if len(workers) != 1:
            return None

    produced = {o for t in members for o in t.outputs}
    merged = SubTask(
        id="+".join(nodes),
        name=" + ".join(t.name for t in members)[:255],
        description="\n".join(t.description for t in members if t.description),
        inputs=_unique(i for t in members for i in t.inputs if i not in produced),
        outputs=_unique(o for t in members for o in t.outputs),
        done_criteria="; ".join(t.done_criteria for t in members),
        effort=max((t.effort for t in members), key=EFFORT_ORDER.index),
        domain_tags=list(members[0].domain_tags),
        execution_mode=(
            ExecutionMode.SYNC
            if any(t.execution_mode == ExecutionMode.SYNC for t in members)
            else ExecutionMode.ASYNC
        ),
        metadata={"merged_from": nodes},
    )

    member_set = set(nodes)
    touching = [e for e in edges if e.producer in member_set or e.consumer in member_set]
    rewired: dict[tuple[str, str], DependencyEdge] = {}
    for edge in touching:
        producer = merged.id if edge.producer in member_set else edge.producer
        consumer = merged.id if edge.consumer in member_set else edge.consumer
        if producer == consumer:
            continue
        new_edge = DependencyEdge(producer=producer, consumer=consumer, artifact=edge.artifact)
        rewired.setdefault(new_edge.key, new_edge)

    return ProposedFix(
        strategy=RepairStrategy.MERGE,
        cycle=cycle_path,
        rationale=f"All of {', '.join(nodes)} share domain {list(tag_sets)[0]}; collapse into one",
        remove_subtask_ids=nodes,
        add_subtasks=[merged],
        remove_edges=[e.key for e in touching],
        add_edges=list(rewired.values()),
    )


def _propose_stage(
    subtasks: Mapping[str, SubTask],
    edges: list[DependencyEdge],
    cycle_path: list[str],
) -> ProposedFix | None:
    """Break a mutual dependency with an intermediate partial-artifact step."""
    nodes = _cycle_nodes(cycle_path)
    if len(nodes) != 2:
        return None

    for first, second in (nodes, list(reversed(nodes))):
        x, y = subtasks[first], subtasks[second]
        x_to_y = [a for a in x.outputs if a in y.inputs]
        y_to_x = [a for a in y.outputs if a in x.inputs]
        if not x_to_y or not y_to_x:
            continue

        partials = {a: f"{a}.partial" for a in x_to_y}
        stage = SubTask(
            id=f"{x.id}~stage",
            name=f"Stage partial {', '.join(x_to_y)} for {y.name}"[:255],
            description=f"Produce a partial version of {', '.join(x_to_y)} ahead of {x.name}",
            inputs=[i for i in x.inputs if i not in y.outputs],
            outputs=list(partials.values()),
            done_criteria=f"partial {', '.join(x_to_y)} available to {y.name}",
            effort=Effort.SMALL,
            domain_tags=list(x.domain_tags),
            execution_mode=x.execution_mode,
            metadata={"staged_for": [x.id, y.id]},
        )
        consumer = y.model_copy(
            update={"inputs": [partials.get(i, i) for i in y.inputs]},
            deep=True,
        )

        new_edges = [
            DependencyEdge(producer=stage.id, consumer=y.id, artifact=partials[x_to_y[0]])
        ]
        for edge in edges:
            if edge.consumer == x.id and edge.producer != y.id:
                new_edges.append(
                    DependencyEdge(producer=edge.producer, consumer=stage.id, artifact=edge.artifact)
                )

        return ProposedFix(
            strategy=RepairStrategy.STAGE,
            cycle=cycle_path,
            rationale=(
                f"{x.id} and {y.id} need each other's outputs; stage partial "
                f"{', '.join(x_to_y)} so {y.id} can start first"
            ),
            add_subtasks=[stage],
            replace_subtasks=[consumer],
            remove_edges=[(x.id, y.id)],
            add_edges=new_edges,
        )

    return None


def _propose_invert(
    subtasks: Mapping[str, SubTask],
    edges: list[DependencyEdge],
    cycle_path: list[str],
    batch: Sequence[DependencyEdge],
) -> ProposedFix | None:
    """Flip one cycle edge whose direction no artifact supports."""
    by_key = {e.key: e for e in edges}
    batch_keys = {e.key for e in batch}
    cycle_edges = _cycle_edges(cycle_path)
    if len(_cycle_nodes(cycle_path)) < 2:
        return None

    # Newly proposed edges are the likelier mistake, so they go first.
    ordered = [k for k in cycle_edges if k in batch_keys] + [
        k for k in cycle_edges if k not in batch_keys
    ]
    for producer, consumer in ordered:
        p, c = subtasks[producer], subtasks[consumer]
        if set(p.outputs) & set(c.inputs):
            continue
        edge = by_key.get((producer, consumer)) or DependencyEdge(
            producer=producer, consumer=consumer
        )
        return ProposedFix(
            strategy=RepairStrategy.INVERT,
            cycle=cycle_path,
            rationale=(
                f"No artifact of {producer} is consumed by {consumer}; "
                f"dependency direction was likely misjudged"
            ),
            remove_edges=[edge.key],
            add_edges=[edge.inverted()],
        )

    return None


def _propose_split(
    subtasks: Mapping[str, SubTask],
    edges: list[DependencyEdge],
    cycle_path: list[str],
) -> ProposedFix | None:
    """Split a node so only the part feeding the cycle stays in it."""
    cycle_edges = _cycle_edges(cycle_path)
    if len(_cycle_nodes(cycle_path)) < 2:
        return None

    for index, (node_id, successor_id) in enumerate(cycle_edges):
        predecessor_id = cycle_edges[index - 1][0]
        node = subtasks[node_id]
        predecessor, successor = subtasks[predecessor_id], subtasks[successor_id]

        feeds_cycle = [o for o in node.outputs if o in successor.inputs]
        independent = [o for o in node.outputs if o not in feeds_cycle]
        if not feeds_cycle or not independent:
            continue

        from_cycle = set(node.inputs) & set(predecessor.outputs)
        early = node.model_copy(
            update={
                "id": f"{node.id}.a",
                "name": f"{node.name} ({', '.join(feeds_cycle)})"[:255],
                "inputs": [i for i in node.inputs if i not in from_cycle],
                "outputs": feeds_cycle,
                "done_criteria": f"{node.done_criteria} [{', '.join(feeds_cycle)} delivered]",
                "metadata": {**node.metadata, "split_from": node.id},
            },
            deep=True,
        )
        late = node.model_copy(
            update={
                "id": f"{node.id}.b",
                "name": f"{node.name} ({', '.join(independent)})"[:255],
                "outputs": independent,
                "metadata": {**node.metadata, "split_from": node.id},
            },
            deep=True,
        )

        rewired: dict[tuple[str, str], DependencyEdge] = {}

        def link(producer: str, consumer: str, artifact: str | None) -> None:
            edge = DependencyEdge(producer=producer, consumer=consumer, artifact=artifact)
            rewired.setdefault(edge.key, edge)

        touching = [e for e in edges if node_id in e.key]
        for edge in touching:
            if edge.consumer == node_id:
                source = subtasks.get(edge.producer)
                link(edge.producer, late.id, edge.artifact)
                if edge.producer != predecessor_id and source and set(source.outputs) & set(
                    early.inputs
                ):
                    link(edge.producer, early.id, edge.artifact)
            else:
                target = subtasks.get(edge.consumer)
                target_inputs = set(target.inputs) if target else set()
                if edge.consumer == successor_id or target_inputs & set(feeds_cycle):
                    link(early.id, edge.consumer, edge.artifact)
                if target_inputs & set(independent) or (
                    edge.consumer != successor_id and not target_inputs & set(feeds_cycle)
                ):
                    link(late.id, edge.consumer, edge.artifact)

        return ProposedFix(
            strategy=RepairStrategy.SPLIT,
            cycle=cycle_path,
            rationale=(
                f"{node_id} bundles {', '.join(feeds_cycle)} with independent "
                f"{', '.join(independent)}; split so only the former joins the cycle"
            ),
            remove_subtask_ids=[node_id],
            add_subtasks=[early, late],
            remove_edges=[e.key for e in touching],
            add_edges=list(rewired.values()),
        )

    return None


def _unique(items: Iterable[str]) -> list[str]:
    seen: list[str] = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen
