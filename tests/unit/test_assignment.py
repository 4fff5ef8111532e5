"""Unit tests for worker assignment and granularity flags."""

from goalflow.decomposition.assignment import UNSPECIFIED_CAPABILITY, AssignmentResolver
from goalflow.decomposition.graph_store import GraphStore
from goalflow.decomposition.models import (
    DependencyEdge,
    Effort,
    ExecutionMode,
    FlagKind,
    SubTask,
    WorkerDescriptor,
)
from goalflow.decomposition.registry import InMemoryWorkerRegistry
from goalflow.decomposition.wave_planner import WavePlanner


def resolve(store: GraphStore, registry: InMemoryWorkerRegistry, **kwargs):
    return AssignmentResolver(registry).resolve(store, WavePlanner().plan(store), **kwargs)


class TestAssignmentResolver:
    """Tests for AssignmentResolver.resolve."""

    def test_diamond_assignment(
        self,
        diamond_store: GraphStore,
        registry: InMemoryWorkerRegistry,
    ) -> None:
        """Test bindings made earlier in the pass count as load."""
        report = resolve(diamond_store, registry)

        bound = {sid: a.worker_id for sid, a in report.assignments.items()}
        assert bound == {"A": "design-1", "B": "be-1", "C": "fe-1", "D": "be-2"}
        assert report.unassignable == {}

    def test_least_loaded_wins(
        self,
        diamond_store: GraphStore,
        registry: InMemoryWorkerRegistry,
    ) -> None:
        registry.set_load("be-1", 5)

        report = resolve(diamond_store, registry)

        assert report.assignments["B"].worker_id == "be-2"

    def test_missing_capability_is_reported(
        self,
        diamond_store: GraphStore,
        registry: InMemoryWorkerRegistry,
    ) -> None:
        """Test a sub-task nobody can take is UNASSIGNABLE, others still bind."""
        diamond_store.add_subtasks([
            SubTask(
                id="Q",
                name="Calibrate qubits",
                inputs=["release"],
                done_criteria="fidelity above 99%",
                domain_tag="quantum-hardware",
            )
        ])
        diamond_store.add_edges([DependencyEdge(producer="D", consumer="Q")])

        report = resolve(diamond_store, registry)

        assert list(report.unassignable) == ["Q"]
        assert report.unassignable["Q"].missing_capability == "quantum-hardware"
        assert set(report.assignments) == {"A", "B", "C", "D"}

    def test_multi_domain_needs_one_worker_covering_all(self, registry: InMemoryWorkerRegistry) -> None:
        """Test tags covered only by different workers are a gap."""
        store = GraphStore()
        store.add_subtasks([
            SubTask(id="F", name="Fullstack", done_criteria="done", domain_tags=["backend", "frontend"]),
        ])

        report = resolve(store, registry)

        assert report.unassignable["F"].missing_capability == "backend+frontend"

        registry.register(WorkerDescriptor(id="fs-1", domain_tags=["backend", "frontend"]))
        report = resolve(store, registry)
        assert report.assignments["F"].worker_id == "fs-1"

    def test_untagged_subtask(self, registry: InMemoryWorkerRegistry) -> None:
        store = GraphStore()
        store.add_subtasks([SubTask(id="U", name="Misc", done_criteria="done")])

        report = resolve(store, registry)

        assert report.unassignable["U"].missing_capability == UNSPECIFIED_CAPABILITY

    def test_execution_mode_must_match(self) -> None:
        """Test a sync sub-task is not given to an async-only worker."""
        registry = InMemoryWorkerRegistry([
            WorkerDescriptor(id="async-1", domain_tags=["ops"], execution_modes=[ExecutionMode.ASYNC]),
        ])
        store = GraphStore()
        store.add_subtasks([
            SubTask(id="S", name="Deploy", done_criteria="live", domain_tag="ops", execution_mode=ExecutionMode.SYNC),
        ])

        report = resolve(store, registry)

        assert report.unassignable["S"].missing_capability == "ops"
        assert "sync" in report.unassignable["S"].reason

    def test_excluded_workers(
        self,
        diamond_store: GraphStore,
        registry: InMemoryWorkerRegistry,
    ) -> None:
        report = resolve(
            diamond_store,
            registry,
            subtask_ids=["D"],
            exclude_workers={"D": ["be-1", "be-2"]},
        )

        assert list(report.assignments) == []
        assert report.unassignable["D"].missing_capability == "backend"

    def test_resolution_is_deterministic(
        self,
        diamond_store: GraphStore,
        registry: InMemoryWorkerRegistry,
    ) -> None:
        assert resolve(diamond_store, registry) == resolve(diamond_store, registry)


class TestGranularityFlags:
    """Tests for advisory merge/split flags."""

    def test_small_lone_subtask_flagged_for_merge(self, registry: InMemoryWorkerRegistry) -> None:
        store = GraphStore()
        store.add_subtasks([
            SubTask(id="a", name="a", done_criteria="done", domain_tag="backend"),
            SubTask(id="b", name="b", done_criteria="done", domain_tag="backend", effort=Effort.SMALL),
            SubTask(id="c", name="c", done_criteria="done", domain_tag="backend"),
        ])
        store.add_edges([
            DependencyEdge(producer="a", consumer="b"),
            DependencyEdge(producer="b", consumer="c"),
        ])

        report = resolve(store, registry)

        assert [(f.subtask_id, f.kind) for f in report.flags] == [("b", FlagKind.MERGE_UPWARD)]

    def test_small_subtask_sharing_wave_not_flagged(
        self,
        diamond_store: GraphStore,
        registry: InMemoryWorkerRegistry,
    ) -> None:
        diamond_store.replace_subtask(diamond_store.get("B").model_copy(update={"effort": Effort.SMALL}))

        report = resolve(diamond_store, registry)

        assert report.flags == []

    def test_multi_domain_flagged_for_split(self, registry: InMemoryWorkerRegistry) -> None:
        store = GraphStore()
        store.add_subtasks([
            SubTask(id="F", name="Fullstack", done_criteria="done", domain_tags=["backend", "frontend"]),
        ])

        report = resolve(store, registry)

        assert [f.kind for f in report.flags] == [FlagKind.SPLIT_DOWNWARD]

    def test_flags_do_not_change_assignments(
        self,
        diamond_store: GraphStore,
        registry: InMemoryWorkerRegistry,
    ) -> None:
        before = resolve(diamond_store, registry).assignments
        diamond_store.replace_subtask(diamond_store.get("D").model_copy(update={"effort": Effort.SMALL}))

        report = resolve(diamond_store, registry)

        assert [f.subtask_id for f in report.flags] == []
        assert report.assignments == before
