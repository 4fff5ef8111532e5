"""Goal orchestrator - drives one goal from proposals to completion.

This module wires the planning components (graph store, cycle resolver,
wave planner, assignment resolver) to the execution components (lifecycle
tracker, dispatcher, replanning controller) behind the approval gate.
"""

import asyncio
from collections.abc import Iterable
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field

from goalflow.core.approval import ApprovalDecision, ApprovalGate, ApprovalScope
from goalflow.core.checkpoint import Checkpointer
from goalflow.core.config import Settings, get_settings
from goalflow.core.context import GoalContext
from goalflow.core.exceptions import (
    ApprovalDeniedError,
    AssignmentError,
    ConstructionError,
    CycleResolutionError,
    InvalidTransitionError,
)
from goalflow.core.state import GoalStatus, Outcome, SubTaskStatus, WorkerResult
from goalflow.decomposition.assignment import AssignmentResolver
from goalflow.decomposition.cycle_resolver import resolve_cycle
from goalflow.decomposition.models import (
    ApprovalStatus,
    Assignment,
    DependencyEdge,
    Plan,
)
from goalflow.decomposition.registry import WorkerRegistry
from goalflow.decomposition.strategy import DecompositionStrategy, Proposal
from goalflow.decomposition.wave_planner import WavePlanner
from goalflow.execution.dispatcher import WorkerDispatcher
from goalflow.execution.events import (
    CycleReported,
    EventStream,
    GoalCancelled,
    UnassignableReported,
    WaveCompleted,
)
from goalflow.execution.replanning import GoalChange, RecoveryProposal, ReplanningController


class GoalReport(BaseModel):
    """Summary of a goal after execution stops."""

    goal_id: str
    status: GoalStatus
    completed: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    cancelled: list[str] = Field(default_factory=list)
    held: list[str] = Field(default_factory=list)
    pending: list[str] = Field(default_factory=list)
    waves_completed: int = 0


class GoalOrchestrator:
    """
    Orchestrator for exactly one goal.

    Pipeline:
    1. Accept proposed sub-tasks and build the dependency graph
    2. Detect and, with confirmation, repair cycles
    3. Plan waves and the critical path
    4. Bind sub-tasks to workers
    5. Present the plan and release approved waves
    6. Dispatch wave by wave, ingesting worker results one at a time
    7. Route failures through the replanning controller

    Example:
        >>> orchestrator = GoalOrchestrator(registry, dispatcher, gate, goal="Ship v2")
        >>> plan = orchestrator.build_plan(proposals, root_id="A")
        >>> orchestrator.request_approval()
        >>> report = await orchestrator.execute()
        >>> report.status
        <GoalStatus.COMPLETED: 'completed'>
    """

    def __init__(
        self,
        registry: WorkerRegistry,
        dispatcher: WorkerDispatcher,
        approval: ApprovalGate,
        settings: Settings | None = None,
        checkpointer: Checkpointer | None = None,
        strategy: DecompositionStrategy | None = None,
        goal: str = "",
        goal_id: str | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            registry: External worker registry.
            dispatcher: Sends sub-tasks to workers.
            approval: Human approval gate.
            settings: Optional settings override. Uses default if not provided.
            checkpointer: Optional checkpoint hook.
            strategy: Decomposition strategy used when no proposals are given.
            goal: Goal statement.
            goal_id: Optional goal ID (generated if not provided).
        """
        self.settings = settings or get_settings()
        self.ctx = GoalContext(goal=goal, goal_id=goal_id)
        self.registry = registry
        self.dispatcher = dispatcher
        self.approval = approval
        self.checkpointer = checkpointer
        self.strategy = strategy

        self.planner = WavePlanner(self.settings.effort_weights)
        self.resolver = AssignmentResolver(registry)
        self.replanner = ReplanningController(
            self.planner,
            self.resolver,
            approval,
            max_retries=self.settings.max_retries,
        )

        self._results: asyncio.Queue[WorkerResult | None] = asyncio.Queue(
            maxsize=self.settings.result_queue_size
        )
        self._semaphore = asyncio.Semaphore(self.settings.max_concurrent_dispatch)
        self._cycles: list[list[str]] = []
        self._waves_completed = 0

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def goal_id(self) -> str:
        return self.ctx.goal_id

    @property
    def events(self) -> EventStream:
        return self.ctx.events

    @property
    def status(self) -> GoalStatus:
        return self.ctx.status

    @property
    def plan(self) -> Plan | None:
        return self.ctx.plan

    # =========================================================================
    # PLANNING
    # =========================================================================

    def build_plan(
        self,
        proposals: Iterable[Proposal] | None = None,
        edges: Iterable[DependencyEdge] = (),
        root_id: str | None = None,
        infer_edges: bool = True,
    ) -> Plan:
        """
        Build the plan presented to the approver.

        Args:
            proposals: Proposed sub-tasks. Uses the decomposition strategy
                if not provided.
            edges: Explicit dependency edges.
            root_id: The single goal root, exempt from the orphan check.
            infer_edges: Also derive edges from matching artifact names.

        Returns:
            Plan with waves, critical path, assignments, gaps and flags.

        Raises:
            ConstructionError: On invalid sub-tasks or orphans.
            CycleResolutionError: If a cycle cannot be repaired.
        """
        graph = self.ctx.graph
        if proposals is None:
            if self.strategy is None:
                raise ConstructionError("No proposals and no decomposition strategy")
            proposals = self.strategy.decompose(self.ctx.goal)

        accepted = graph.add_subtasks(proposals)
        if graph.rejected:
            details = "; ".join(f"{r.name}: {r.reason}" for r in graph.rejected)
            raise ConstructionError(f"{len(graph.rejected)} sub-task(s) rejected: {details}")
        if not accepted:
            raise ConstructionError("Decomposition produced no sub-tasks")

        if root_id is not None:
            graph.mark_root(root_id)

        batch = list(edges)
        if infer_edges:
            batch.extend(graph.infer_edges())
        if batch:
            self._commit_edges(batch)

        orphans = graph.orphans()
        if orphans:
            raise ConstructionError(f"Orphaned sub-tasks (decomposition gap): {orphans}")

        wave_plan = self.planner.plan(graph)
        report = self.resolver.resolve(graph, wave_plan)

        plan = Plan(
            goal_id=self.goal_id,
            goal=self.ctx.goal,
            subtasks=graph.subtasks,
            edges=graph.edges,
            root_id=graph.root_id,
            wave_plan=wave_plan,
            assignments=report.assignments,
            unassignable=report.unassignable,
            flags=report.flags,
            cycles_reported=list(self._cycles),
        )
        self.ctx.plan = plan
        self.ctx.tracker.sync_with_graph()

        for gap in report.unassignable.values():
            self.events.emit(
                UnassignableReported(
                    subtask_id=gap.subtask_id,
                    missing_capability=gap.missing_capability,
                )
            )

        self.ctx.status = GoalStatus.AWAITING_APPROVAL
        self._checkpoint("plan_built")
        logger.info(
            f"Plan for goal {self.goal_id}: {len(plan.subtasks)} sub-tasks, "
            f"{wave_plan.total_waves} waves, {len(plan.unassignable)} gaps"
        )
        return plan

    def _commit_edges(self, batch: list[DependencyEdge]) -> None:
        """Commit an edge batch, repairing a cycle with confirmation."""
        graph = self.ctx.graph
        cycle = graph.add_edges(batch)
        if cycle is None:
            return

        self._cycles.append(cycle)
        fixes = resolve_cycle(graph, cycle, batch)
        fix = self.approval.confirm_fix(cycle, fixes) if fixes else None
        self.events.emit(
            CycleReported(cycle=cycle, repaired_by=fix.strategy.value if fix else None)
        )

        if fix is None:
            reason = "no repair strategy applies" if not fixes else "no fix confirmed"
            logger.error(f"Hard planning error: cycle {' -> '.join(cycle)} ({reason})")
            raise CycleResolutionError(cycle, reason)

        graph.apply_fix(fix, batch)

    # =========================================================================
    # APPROVAL
    # =========================================================================

    def request_approval(self) -> ApprovalDecision:
        """
        Present the plan and release the approved waves.

        Returns:
            The normalized decision.

        Raises:
            ApprovalDeniedError: If the response is a denial or ambiguous.
            AssignmentError: If a manual assignment names an unknown worker.
        """
        plan = self.ctx.require_plan()
        decision = ApprovalDecision.normalize(self.approval.present_plan(plan))

        if not decision.approved:
            plan.approval_status = ApprovalStatus.DENIED
            self._checkpoint("approval_denied")
            raise ApprovalDeniedError(f"Plan for goal {self.goal_id} was not approved")

        self._apply_modifications(decision)
        self._release(decision)
        self._checkpoint("approved")
        return decision

    def _apply_modifications(self, decision: ApprovalDecision) -> None:
        plan = self.ctx.require_plan()
        overrides = decision.modifications.get("assignments", {}) or {}

        for subtask_id, worker_id in overrides.items():
            if subtask_id not in self.ctx.graph:
                raise AssignmentError(f"Manual assignment for unknown sub-task {subtask_id}")
            worker = self.registry.get(worker_id)
            if worker is None:
                raise AssignmentError(f"Manual assignment to unknown worker {worker_id}")
            plan.assignments[subtask_id] = Assignment(
                subtask_id=subtask_id,
                worker_id=worker.id,
                autonomy_level=worker.autonomy_level,
            )
            plan.unassignable.pop(subtask_id, None)
            logger.info(f"Approver bound {subtask_id} -> {worker_id}")

    def _release(self, decision: ApprovalDecision) -> None:
        plan = self.ctx.require_plan()
        released = [w.index for w in plan.waves if decision.approves_wave(w.index)]
        for index in released:
            self.ctx.tracker.release(plan.waves[index].subtask_ids)

        plan.approved_waves = sorted(set(plan.approved_waves) | set(released))
        all_released = len(plan.approved_waves) >= len(plan.waves)
        plan.approval_status = (
            ApprovalStatus.APPROVED
            if decision.scope == ApprovalScope.ALL or all_released
            else ApprovalStatus.PARTIAL
        )
        self.ctx.held.update(plan.unassignable)
        logger.info(f"Released waves {released} ({plan.approval_status.value})")

    # =========================================================================
    # EXECUTION
    # =========================================================================

    async def on_result(
        self,
        subtask_id: str,
        outcome: Outcome | str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Inbound worker callback.

        Results are queued and applied one at a time by the execution loop.
        """
        await self._results.put(
            WorkerResult(subtask_id=subtask_id, outcome=Outcome(outcome), details=details or {})
        )

    async def execute(self) -> GoalReport:
        """
        Run the approved plan wave by wave.

        Wave N+1 is not dispatched until every member of wave N is
        terminal or held after a recovery decision.

        Returns:
            GoalReport describing the final state.

        Raises:
            ApprovalDeniedError: If the plan has not been approved.
            CycleResolutionError: If a restructure hits an unrepairable cycle.
        """
        plan = self.ctx.require_plan()
        if plan.approval_status not in (ApprovalStatus.APPROVED, ApprovalStatus.PARTIAL):
            raise ApprovalDeniedError(f"Plan for goal {self.goal_id} is not approved")

        self.ctx.status = GoalStatus.EXECUTING
        index = 0

        try:
            while index < len(plan.waves) and not self.ctx.tracker.cancelled:
                if not self._wave_released(index) and not self._approve_wave(index):
                    self.ctx.status = GoalStatus.HALTED
                    break

                await self._run_wave(index)
                if self.ctx.tracker.cancelled:
                    break

                self._finish_wave(index)
                index += 1
        except CycleResolutionError:
            self.ctx.status = GoalStatus.HALTED
            self._checkpoint("halted")
            raise

        if self.ctx.tracker.cancelled:
            self.ctx.status = GoalStatus.CANCELLED
        elif self.ctx.status == GoalStatus.EXECUTING:
            done = all(
                s == SubTaskStatus.COMPLETED for s in self.ctx.tracker.statuses().values()
            )
            self.ctx.status = GoalStatus.COMPLETED if done else GoalStatus.HALTED

        self._checkpoint("execution_stopped")
        report = self.report()
        logger.info(
            f"Goal {self.goal_id} {report.status.value}: {len(report.completed)} completed, "
            f"{len(report.failed)} failed, {len(report.held)} held"
        )
        return report

    async def run(
        self,
        proposals: Iterable[Proposal] | None = None,
        edges: Iterable[DependencyEdge] = (),
        root_id: str | None = None,
        infer_edges: bool = True,
    ) -> GoalReport:
        """Build, approve and execute in one call."""
        self.build_plan(proposals, edges=edges, root_id=root_id, infer_edges=infer_edges)
        self.request_approval()
        return await self.execute()

    def _wave_released(self, index: int) -> bool:
        plan = self.ctx.require_plan()
        held = self._held_closure()
        return all(
            self.ctx.tracker.is_released(sid)
            for sid in plan.waves[index].subtask_ids
            if sid not in held
        )

    def _approve_wave(self, index: int) -> bool:
        """Suspend before an unreleased wave and re-present the plan."""
        plan = self.ctx.require_plan()
        self.ctx.status = GoalStatus.AWAITING_APPROVAL
        self._checkpoint(f"awaiting_wave_{index}")

        decision = ApprovalDecision.normalize(self.approval.present_plan(plan))
        if not decision.approves_wave(index):
            logger.warning(f"Wave {index} not approved; halting goal {self.goal_id}")
            return False

        self._apply_modifications(decision)
        self._release(decision)
        self.ctx.status = GoalStatus.EXECUTING
        return True

    def _held_closure(self) -> set[str]:
        closure = set(self.ctx.held)
        for sid in self.ctx.held:
            if sid in self.ctx.graph:
                closure |= self.ctx.graph.descendants(sid)
        return closure

    async def _run_wave(self, index: int) -> None:
        """Dispatch a wave and process results until it settles."""
        plan = self.ctx.require_plan()
        tracker = self.ctx.tracker

        while not tracker.cancelled:
            # Membership is re-read: a restructure may move sub-tasks.
            members = [sid for sid in plan.waves[index].subtask_ids if sid in self.ctx.graph]
            held = self._held_closure()

            ready = [sid for sid in members if sid not in held and tracker.is_eligible(sid)]
            if ready:
                await self._dispatch_all(ready)
                continue

            in_flight = [
                sid for sid in members
                if tracker.state(sid).status == SubTaskStatus.IN_PROGRESS
            ]
            if not in_flight:
                return

            result = await self._results.get()
            if result is None:
                continue
            tracker.ingest(result)
            if (
                result.subtask_id in self.ctx.graph
                and tracker.state(result.subtask_id).status == SubTaskStatus.FAILED
            ):
                self._recover(result.subtask_id)

    async def _dispatch_all(self, subtask_ids: list[str]) -> None:
        """Dispatch sub-tasks concurrently; handle transport failures after."""
        errors = await asyncio.gather(*(self._dispatch(sid) for sid in subtask_ids))

        for sid, error in zip(subtask_ids, errors, strict=True):
            if error is None:
                continue
            if self.ctx.tracker.state(sid).status == SubTaskStatus.IN_PROGRESS:
                self.ctx.tracker.fail(sid, error)
                self._recover(sid)

    async def _dispatch(self, subtask_id: str) -> str | None:
        plan = self.ctx.require_plan()
        assignment = plan.assignments.get(subtask_id)
        if assignment is None:
            logger.warning(f"{subtask_id} has no assignment; holding")
            self.ctx.held.add(subtask_id)
            return None

        async with self._semaphore:
            if not self.ctx.tracker.is_eligible(subtask_id):
                return None
            self.ctx.tracker.start(subtask_id, worker_id=assignment.worker_id)
            self.ctx.tried_workers[subtask_id].add(assignment.worker_id)

            payload = self.ctx.graph.get(subtask_id).to_payload()
            payload["goal_id"] = self.goal_id
            payload["autonomy_level"] = assignment.autonomy_level.value

            try:
                await self.dispatcher.dispatch(subtask_id, assignment.worker_id, payload)
            except Exception as e:
                logger.error(f"Dispatch of {subtask_id} to {assignment.worker_id} failed: {e}")
                return f"dispatch failed: {e}"
        return None

    def _recover(self, subtask_id: str) -> RecoveryProposal:
        """Propose, review and apply recovery for a failed sub-task."""
        proposal = self.replanner.propose_for_failure(self.ctx, subtask_id)
        if self.replanner.review(self.ctx, proposal):
            self.replanner.apply(self.ctx, proposal)
        else:
            self.ctx.held.add(subtask_id)
            logger.warning(
                f"Holding {subtask_id} and its {len(proposal.blast_radius) - 1} dependent(s)"
            )
        self._checkpoint(f"recovery_{subtask_id}")
        return proposal

    def _finish_wave(self, index: int) -> None:
        plan = self.ctx.require_plan()
        tracker = self.ctx.tracker
        members = [sid for sid in plan.waves[index].subtask_ids if sid in self.ctx.graph]
        held = self._held_closure()

        self.events.emit(
            WaveCompleted(
                wave_index=index,
                completed=[s for s in members if tracker.status(s) == SubTaskStatus.COMPLETED],
                failed=[s for s in members if tracker.status(s) == SubTaskStatus.FAILED],
                held=[s for s in members if s in held],
            )
        )
        self._waves_completed += 1
        self._checkpoint(f"wave_{index}")

    # =========================================================================
    # GOAL CHANGES, CANCELLATION, ARCHIVAL
    # =========================================================================

    def change_goal(self, change: GoalChange) -> RecoveryProposal:
        """
        Handle an external goal-change signal.

        Returns:
            The proposal, with ``approved`` reflecting the decision.
        """
        proposal = self.replanner.propose_for_goal_change(self.ctx, change)
        if self.replanner.review(self.ctx, proposal):
            self.replanner.apply(self.ctx, proposal)
        self._checkpoint(f"goal_change_{change.subtask_id}")
        return proposal

    async def cancel(self) -> list[str]:
        """
        Cancel the goal.

        PENDING and IN_PROGRESS sub-tasks become CANCELLED. Running workers
        get a best-effort cancel signal.

        Returns:
            IDs of cancelled sub-tasks.
        """
        tracker = self.ctx.tracker
        running = tracker.ids_with_status(SubTaskStatus.IN_PROGRESS)
        cancelled = tracker.cancel_all()

        for sid in running:
            try:
                await self.dispatcher.cancel(sid)
            except Exception as e:
                logger.warning(f"Cancel signal for {sid} failed: {e}")

        self.ctx.status = GoalStatus.CANCELLED
        self.events.emit(GoalCancelled(cancelled=cancelled))
        try:
            self._results.put_nowait(None)
        except asyncio.QueueFull:
            pass
        self._checkpoint("cancelled")
        return cancelled

    def archive(self) -> dict[str, Any]:
        """Archive a finished or abandoned goal and return its final snapshot."""
        if self.ctx.status not in (GoalStatus.COMPLETED, GoalStatus.CANCELLED, GoalStatus.HALTED):
            raise InvalidTransitionError(
                f"Goal {self.goal_id} is {self.ctx.status.value}; cannot archive"
            )
        self.ctx.status = GoalStatus.ARCHIVED
        snapshot = self.ctx.snapshot()
        self._checkpoint("archived")
        return snapshot

    # =========================================================================
    # REPORTING
    # =========================================================================

    def report(self) -> GoalReport:
        tracker = self.ctx.tracker
        return GoalReport(
            goal_id=self.goal_id,
            status=self.ctx.status,
            completed=tracker.ids_with_status(SubTaskStatus.COMPLETED),
            failed=tracker.ids_with_status(SubTaskStatus.FAILED),
            cancelled=tracker.ids_with_status(SubTaskStatus.CANCELLED),
            held=sorted(self._held_closure() & set(self.ctx.graph.subtasks)),
            pending=sorted(
                tracker.ids_with_status(SubTaskStatus.PENDING)
                + tracker.ids_with_status(SubTaskStatus.BLOCKED)
            ),
            waves_completed=self._waves_completed,
        )

    def _checkpoint(self, reason: str) -> None:
        if self.checkpointer is None:
            return
        snapshot = self.ctx.snapshot()
        snapshot["checkpoint_reason"] = reason
        self.checkpointer.save(self.goal_id, snapshot)
