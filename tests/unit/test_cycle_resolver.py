"""Unit tests for cycle detection and repair proposals."""

import pytest

from goalflow.decomposition.cycle_resolver import (
    RepairStrategy,
    detect_cycle,
    resolve_cycle,
    successor_map,
)
from goalflow.decomposition.graph_store import GraphStore
from goalflow.decomposition.models import Assignment, AutonomyLevel, DependencyEdge, SubTask


def make_store(tasks: list[SubTask], edges: list[DependencyEdge]) -> GraphStore:
    store = GraphStore()
    store.add_subtasks(tasks)
    assert store.add_edges(edges) is None
    return store


class TestDetectCycle:
    """Tests for DFS cycle detection."""

    def test_two_node_cycle(self) -> None:
        assert detect_cycle({"a": ["b"], "b": ["a"]}) == ["a", "b", "a"]

    def test_acyclic(self) -> None:
        assert detect_cycle({"a": ["b", "c"], "b": ["d"], "c": ["d"], "d": []}) is None

    def test_self_loop(self) -> None:
        assert detect_cycle({"a": ["a"]}) == ["a", "a"]

    def test_path_starts_at_first_cycle_node(self) -> None:
        """Test nodes leading into the cycle are not part of the path."""
        graph = {"x": ["a"], "a": ["b"], "b": ["c"], "c": ["a"]}

        assert detect_cycle(graph) == ["a", "b", "c", "a"]

    def test_start_nodes_order(self) -> None:
        """Test traversal starts from the given nodes first."""
        graph = {"a": ["b"], "b": ["a"]}

        assert detect_cycle(graph, ["b"]) == ["b", "a", "b"]

    def test_successor_map_includes_isolated_nodes(self) -> None:
        graph = successor_map(["a", "b", "c"], [DependencyEdge(producer="a", consumer="b")])

        assert graph == {"a": ["b"], "b": [], "c": []}


class TestResolveCycle:
    """Tests for repair proposals."""

    def test_invert_unsupported_edge(self) -> None:
        """Test an edge no artifact supports is proposed for inversion."""
        store = make_store(
            [
                SubTask(id="A", name="Design", outputs=["design"], done_criteria="ok", domain_tag="design"),
                SubTask(id="B", name="Build", inputs=["design"], outputs=["api"], done_criteria="ok", domain_tag="backend"),
            ],
            [DependencyEdge(producer="A", consumer="B", artifact="design")],
        )
        batch = [DependencyEdge(producer="B", consumer="A")]

        fixes = resolve_cycle(store, ["A", "B", "A"], batch)

        assert [f.strategy for f in fixes] == [RepairStrategy.INVERT]
        assert fixes[0].remove_edges == [("B", "A")]
        assert [e.key for e in fixes[0].add_edges] == [("A", "B")]

    def test_merge_same_domain(self) -> None:
        """Test a cycle inside one domain is proposed for merging first."""
        store = make_store(
            [
                SubTask(id="X", name="Schema", outputs=["schema"], inputs=["seed"], done_criteria="schema ok", domain_tag="db"),
                SubTask(id="Y", name="Seed", outputs=["seed"], inputs=["schema"], done_criteria="seed ok", domain_tag="db"),
            ],
            [DependencyEdge(producer="X", consumer="Y", artifact="schema")],
        )
        batch = [DependencyEdge(producer="Y", consumer="X", artifact="seed")]

        fixes = resolve_cycle(store, ["X", "Y", "X"], batch)

        assert fixes[0].strategy == RepairStrategy.MERGE
        merged = fixes[0].add_subtasks[0]
        assert merged.id == "X+Y"
        assert merged.inputs == []
        assert merged.outputs == ["schema", "seed"]
        assert merged.done_criteria == "schema ok; seed ok"

    def test_merge_requires_same_worker(self) -> None:
        """Test merging is skipped when members are bound to different workers."""
        store = make_store(
            [
                SubTask(id="X", name="Schema", outputs=["schema"], inputs=["seed"], done_criteria="ok", domain_tag="db"),
                SubTask(id="Y", name="Seed", outputs=["seed"], inputs=["schema"], done_criteria="ok", domain_tag="db"),
            ],
            [DependencyEdge(producer="X", consumer="Y", artifact="schema")],
        )
        batch = [DependencyEdge(producer="Y", consumer="X", artifact="seed")]
        assignments = {
            "X": Assignment(subtask_id="X", worker_id="db-1", autonomy_level=AutonomyLevel.GATED),
            "Y": Assignment(subtask_id="Y", worker_id="db-2", autonomy_level=AutonomyLevel.GATED),
        }

        fixes = resolve_cycle(store, ["X", "Y", "X"], batch, assignments)

        assert RepairStrategy.MERGE not in [f.strategy for f in fixes]

    def test_stage_mutual_artifacts(self) -> None:
        """Test a mutual dependency gets an intermediate partial step."""
        store = make_store(
            [
                SubTask(id="P", name="Draft", inputs=["feedback"], outputs=["draft"], done_criteria="ok", domain_tag="writing"),
                SubTask(id="Q", name="Review", inputs=["draft"], outputs=["feedback"], done_criteria="ok", domain_tag="review"),
            ],
            [DependencyEdge(producer="P", consumer="Q", artifact="draft")],
        )
        batch = [DependencyEdge(producer="Q", consumer="P", artifact="feedback")]

        fixes = resolve_cycle(store, ["P", "Q", "P"], batch)

        assert [f.strategy for f in fixes] == [RepairStrategy.STAGE]
        stage = fixes[0].add_subtasks[0]
        assert stage.id == "P~stage"
        assert stage.outputs == ["draft.partial"]
        assert fixes[0].replace_subtasks[0].inputs == ["draft.partial"]

        nodes, edges = fixes[0].transform(store.subtasks, store.edges + batch)
        assert detect_cycle(successor_map(nodes, edges)) is None

    def test_split_bundled_outputs(self) -> None:
        """Test a node with cycle-feeding and independent outputs is split."""
        store = make_store(
            [
                SubTask(id="N", name="Core", inputs=["feedback"], outputs=["core", "docs"], done_criteria="ok", domain_tag="backend"),
                SubTask(id="M", name="Client", inputs=["core"], outputs=["feedback"], done_criteria="ok", domain_tag="frontend"),
            ],
            [DependencyEdge(producer="N", consumer="M", artifact="core")],
        )
        batch = [DependencyEdge(producer="M", consumer="N", artifact="feedback")]

        fixes = resolve_cycle(store, ["N", "M", "N"], batch)

        assert [f.strategy for f in fixes] == [RepairStrategy.STAGE, RepairStrategy.SPLIT]
        split = fixes[1]
        assert [t.id for t in split.add_subtasks] == ["N.a", "N.b"]
        assert split.add_subtasks[0].outputs == ["core"]
        assert split.add_subtasks[1].outputs == ["docs"]
        assert {e.key for e in split.add_edges} == {("N.a", "M"), ("M", "N.b")}

    def test_does_not_mutate_graph(self) -> None:
        store = make_store(
            [
                SubTask(id="A", name="A", outputs=["a"], done_criteria="ok", domain_tag="x"),
                SubTask(id="B", name="B", inputs=["a"], done_criteria="ok", domain_tag="x"),
            ],
            [DependencyEdge(producer="A", consumer="B", artifact="a")],
        )
        before = store.to_dict()

        resolve_cycle(store, ["A", "B", "A"], [DependencyEdge(producer="B", consumer="A")])

        assert store.to_dict() == before

    def test_self_loop_has_no_fix(self) -> None:
        """Test a self-loop yields no proposals."""
        store = make_store(
            [SubTask(id="A", name="A", done_criteria="ok", domain_tag="x")],
            [],
        )

        assert resolve_cycle(store, ["A", "A"], [DependencyEdge(producer="A", consumer="A")]) == []

    @pytest.mark.parametrize("cycle", [["A", "Z", "A"], ["Z", "Z"]])
    def test_unknown_nodes_have_no_fix(self, cycle: list[str]) -> None:
        store = make_store([SubTask(id="A", name="A", done_criteria="ok")], [])

        assert resolve_cycle(store, cycle) == []

    def test_every_fix_is_acyclic(self, diamond_store: GraphStore) -> None:
        """Test every proposed fix leaves the whole graph acyclic."""
        batch = [DependencyEdge(producer="D", consumer="A")]
        cycle = diamond_store.add_edges(batch)
        assert cycle == ["A", "B", "D", "A"]

        fixes = resolve_cycle(diamond_store, cycle, batch)

        assert fixes
        for fix in fixes:
            nodes, edges = fix.transform(diamond_store.subtasks, diamond_store.edges + batch)
            assert detect_cycle(successor_map(nodes, edges)) is None
