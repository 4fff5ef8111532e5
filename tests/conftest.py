"""Pytest configuration and shared fixtures."""

import os
from collections.abc import Generator

import pytest

# Set test environment
os.environ.setdefault("GOALFLOW_LOG_LEVEL", "DEBUG")

from goalflow.core.approval import AutoApprovalGate  # noqa: E402
from goalflow.core.config import Settings, clear_settings_cache  # noqa: E402
from goalflow.core.context import GoalContext  # noqa: E402
from goalflow.decomposition.assignment import AssignmentResolver  # noqa: E402
from goalflow.decomposition.graph_store import GraphStore  # noqa: E402
from goalflow.decomposition.models import (  # noqa: E402
    DependencyEdge,
    Plan,
    SubTask,
    WorkerDescriptor,
)
from goalflow.decomposition.registry import InMemoryWorkerRegistry  # noqa: E402
from goalflow.decomposition.wave_planner import WavePlanner  # noqa: E402


@pytest.fixture
def mock_settings() -> Generator[Settings, None, None]:
    """Provide fresh settings, clearing the cache around the test."""
    clear_settings_cache()

    yield Settings()

    clear_settings_cache()


@pytest.fixture
def diamond_subtasks() -> list[SubTask]:
    """A -> {B, C} -> D, all medium effort."""
    return [
        SubTask(
            id="A",
            name="Write design",
            outputs=["design.md"],
            done_criteria="design reviewed",
            domain_tag="design",
        ),
        SubTask(
            id="B",
            name="Build API",
            inputs=["design.md"],
            outputs=["api"],
            done_criteria="API tests pass",
            domain_tag="backend",
        ),
        SubTask(
            id="C",
            name="Build UI",
            inputs=["design.md"],
            outputs=["ui"],
            done_criteria="UI renders against mock API",
            domain_tag="frontend",
        ),
        SubTask(
            id="D",
            name="Release",
            inputs=["api", "ui"],
            outputs=["release"],
            done_criteria="release tagged",
            domain_tag="backend",
        ),
    ]


@pytest.fixture
def diamond_edges() -> list[DependencyEdge]:
    return [
        DependencyEdge(producer="A", consumer="B", artifact="design.md"),
        DependencyEdge(producer="A", consumer="C", artifact="design.md"),
        DependencyEdge(producer="B", consumer="D", artifact="api"),
        DependencyEdge(producer="C", consumer="D", artifact="ui"),
    ]


@pytest.fixture
def diamond_store(
    diamond_subtasks: list[SubTask],
    diamond_edges: list[DependencyEdge],
) -> GraphStore:
    """Graph store holding the committed diamond."""
    store = GraphStore(goal_id="goal-test")
    store.add_subtasks(diamond_subtasks)
    assert store.add_edges(diamond_edges) is None
    store.mark_root("A")
    return store


@pytest.fixture
def workers() -> list[WorkerDescriptor]:
    return [
        WorkerDescriptor(id="design-1", domain_tags=["design"]),
        WorkerDescriptor(id="be-1", domain_tags=["backend"]),
        WorkerDescriptor(id="be-2", domain_tags=["backend"]),
        WorkerDescriptor(id="fe-1", domain_tags=["frontend"]),
    ]


@pytest.fixture
def registry(workers: list[WorkerDescriptor]) -> InMemoryWorkerRegistry:
    return InMemoryWorkerRegistry(workers)


@pytest.fixture
def planned_context(
    diamond_subtasks: list[SubTask],
    diamond_edges: list[DependencyEdge],
    registry: InMemoryWorkerRegistry,
) -> GoalContext:
    """Goal context with the diamond planned, assigned and fully released."""
    ctx = GoalContext(goal="Ship the release", goal_id="goal-test")
    ctx.graph.add_subtasks(diamond_subtasks)
    ctx.graph.add_edges(diamond_edges)
    ctx.graph.mark_root("A")

    wave_plan = WavePlanner().plan(ctx.graph)
    report = AssignmentResolver(registry).resolve(ctx.graph, wave_plan)
    ctx.plan = Plan(
        goal_id=ctx.goal_id,
        goal=ctx.goal,
        subtasks=ctx.graph.subtasks,
        edges=ctx.graph.edges,
        root_id="A",
        wave_plan=wave_plan,
        assignments=report.assignments,
        unassignable=report.unassignable,
        flags=report.flags,
        approved_waves=[w.index for w in wave_plan.waves],
    )
    ctx.tracker.sync_with_graph()
    ctx.tracker.release(ctx.graph.subtasks)
    return ctx


@pytest.fixture
def approval_gate() -> AutoApprovalGate:
    return AutoApprovalGate()


# Markers
def pytest_configure(config: pytest.Config) -> None:
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: mark test as unit test")
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")
