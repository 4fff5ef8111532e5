"""Replanning controller - recovery from failures and goal changes.

Recovery follows a fixed protocol: compute the blast radius, split it into
still-valid and needs-rework sub-tasks, propose exactly one action, wait
for explicit approval, then re-derive only the affected part of the plan.
"""

from enum import Enum

from loguru import logger
from pydantic import BaseModel, Field

from goalflow.core.approval import ApprovalDecision, ApprovalGate, ApprovalScope
from goalflow.core.context import GoalContext
from goalflow.core.exceptions import (
    ApprovalDeniedError,
    CycleDetectedError,
    CycleResolutionError,
)
from goalflow.core.state import SubTaskStatus
from goalflow.decomposition.assignment import AssignmentResolver
from goalflow.decomposition.cycle_resolver import resolve_cycle
from goalflow.decomposition.models import Assignment, DependencyEdge, SubTask
from goalflow.decomposition.wave_planner import WavePlanner
from goalflow.execution.events import CycleReported, ReplanningDecision, UnassignableReported


class RecoveryAction(str, Enum):
    """Recovery actions, from least to most invasive."""

    RETRY = "retry"
    REASSIGN = "reassign"
    RESTRUCTURE = "restructure"


class RecoveryTrigger(str, Enum):
    FAILURE = "failure"
    GOAL_CHANGE = "goal_change"


class GoalChange(BaseModel):
    """External signal that part of the goal changed."""

    subtask_id: str
    updated: SubTask | None = Field(
        default=None,
        description="New definition for the sub-task (same ID)",
    )
    updated_dependents: list[SubTask] = Field(
        default_factory=list,
        description="New definitions for downstream sub-tasks",
    )
    new_edges: list[DependencyEdge] = Field(default_factory=list)
    reason: str = ""


class RecoveryProposal(BaseModel):
    """One proposed recovery, pending approval."""

    origin_id: str
    trigger: RecoveryTrigger
    action: RecoveryAction
    blast_radius: list[str]
    still_valid: list[str] = Field(default_factory=list)
    needs_rework: list[str] = Field(default_factory=list)
    assignment: Assignment | None = None
    change: GoalChange | None = None
    rationale: str = ""
    approved: bool = False


class ReplanningController:
    """
    Propose and apply recovery actions for one goal at a time.

    Example:
        >>> controller = ReplanningController(planner, resolver, gate)
        >>> proposal = controller.propose_for_failure(ctx, "D")
        >>> proposal.blast_radius
        ['D']
        >>> if controller.review(ctx, proposal):
        ...     controller.apply(ctx, proposal)
    """

    def __init__(
        self,
        planner: WavePlanner,
        resolver: AssignmentResolver,
        approval: ApprovalGate,
        max_retries: int = 1,
    ) -> None:
        self.planner = planner
        self.resolver = resolver
        self.approval = approval
        self.max_retries = max_retries

    # =========================================================================
    # ANALYSIS
    # =========================================================================

    def blast_radius(self, ctx: GoalContext, origin_id: str) -> list[str]:
        """
        The origin plus every sub-task transitively downstream of it.

        Returns:
            Sorted sub-task IDs.
        """
        return sorted({origin_id} | ctx.graph.descendants(origin_id))

    def partition(
        self,
        ctx: GoalContext,
        origin_id: str,
        radius: list[str],
        updated: dict[str, SubTask] | None = None,
    ) -> tuple[list[str], list[str]]:
        """
        Split the blast radius into still-valid and needs-rework.

        The origin always needs rework. Any other sub-task stays valid
        unless its done-criteria changed.

        Returns:
            Tuple of (still_valid, needs_rework).
        """
        updated = updated or {}
        still_valid: list[str] = []
        needs_rework: list[str] = []

        for sid in radius:
            current = ctx.graph.get(sid)
            replacement = updated.get(sid)
            changed = replacement is not None and replacement.done_criteria != current.done_criteria
            if sid == origin_id or changed:
                needs_rework.append(sid)
            else:
                still_valid.append(sid)

        return still_valid, needs_rework

    # =========================================================================
    # PROPOSALS
    # =========================================================================

    def propose_for_failure(self, ctx: GoalContext, subtask_id: str) -> RecoveryProposal:
        """
        Propose recovery for a FAILED sub-task.

        Retry while the attempt count allows it, then reassign to an
        untried capable worker, otherwise restructure the blast radius.
        """
        state = ctx.tracker.state(subtask_id)
        if state.status != SubTaskStatus.FAILED:
            raise ValueError(f"{subtask_id} is {state.status.value}, not failed")

        radius = self.blast_radius(ctx, subtask_id)
        still_valid, needs_rework = self.partition(ctx, subtask_id, radius)
        plan = ctx.require_plan()
        current = plan.assignments.get(subtask_id)

        proposal = RecoveryProposal(
            origin_id=subtask_id,
            trigger=RecoveryTrigger.FAILURE,
            action=RecoveryAction.RESTRUCTURE,
            blast_radius=radius,
            still_valid=still_valid,
            needs_rework=needs_rework,
        )

        if current is not None and state.attempts <= self.max_retries:
            proposal.action = RecoveryAction.RETRY
            proposal.assignment = current
            proposal.rationale = (
                f"attempt {state.attempts} failed ({state.last_error}); retry on {current.worker_id}"
            )
        else:
            task = ctx.graph.get(subtask_id)
            tried = ctx.tried_workers.get(subtask_id, set())
            candidates, _, reason = self.resolver.candidates(task, exclude=tried)
            if candidates:
                worker = min(candidates, key=lambda w: (w.current_load, w.id))
                proposal.action = RecoveryAction.REASSIGN
                proposal.assignment = Assignment(
                    subtask_id=subtask_id,
                    worker_id=worker.id,
                    autonomy_level=worker.autonomy_level,
                )
                proposal.rationale = f"retries exhausted; move to untried worker {worker.id}"
            else:
                proposal.rationale = (
                    f"no untried worker available ({reason or 'all capable workers tried'}); "
                    f"re-plan {len(radius)} sub-task(s)"
                )

        logger.info(
            f"Recovery proposal for {subtask_id}: {proposal.action.value} "
            f"(blast radius {radius})"
        )
        return proposal

    def propose_for_goal_change(self, ctx: GoalContext, change: GoalChange) -> RecoveryProposal:
        """Propose restructuring for an external goal change."""
        if change.subtask_id not in ctx.graph:
            raise ValueError(f"Unknown sub-task: {change.subtask_id}")

        updated = {t.id: t for t in change.updated_dependents}
        if change.updated is not None:
            updated[change.updated.id] = change.updated

        radius = self.blast_radius(ctx, change.subtask_id)
        still_valid, needs_rework = self.partition(ctx, change.subtask_id, radius, updated)

        proposal = RecoveryProposal(
            origin_id=change.subtask_id,
            trigger=RecoveryTrigger.GOAL_CHANGE,
            action=RecoveryAction.RESTRUCTURE,
            blast_radius=radius,
            still_valid=still_valid,
            needs_rework=needs_rework,
            change=change,
            rationale=change.reason or f"goal changed at {change.subtask_id}",
        )
        logger.info(f"Goal change at {change.subtask_id}: rework {needs_rework}")
        return proposal

    # =========================================================================
    # APPROVAL & APPLICATION
    # =========================================================================

    def review(self, ctx: GoalContext, proposal: RecoveryProposal) -> bool:
        """
        Ask the approver about a proposal and record the decision.

        Only an unambiguous ``all`` approves a recovery.

        Returns:
            True if approved.
        """
        decision = ApprovalDecision.normalize(self.approval.review_recovery(proposal))
        proposal.approved = decision.scope == ApprovalScope.ALL

        ctx.events.emit(
            ReplanningDecision(
                origin_id=proposal.origin_id,
                action=proposal.action.value,
                approved=proposal.approved,
                blast_radius=proposal.blast_radius,
            )
        )
        if not proposal.approved:
            logger.warning(f"Recovery for {proposal.origin_id} not approved")
        return proposal.approved

    def apply(self, ctx: GoalContext, proposal: RecoveryProposal) -> list[str]:
        """
        Apply an approved recovery.

        Returns:
            Sub-tasks re-entered at PENDING.

        Raises:
            ApprovalDeniedError: If the proposal was not approved.
            CycleResolutionError: If a restructure introduces a cycle no
                confirmed fix removes.
        """
        if not proposal.approved:
            raise ApprovalDeniedError(f"Recovery for {proposal.origin_id} is not approved")

        plan = ctx.require_plan()
        origin = proposal.origin_id

        if proposal.action == RecoveryAction.RETRY:
            pass
        elif proposal.action == RecoveryAction.REASSIGN:
            if proposal.assignment is None:
                raise ValueError(f"Reassign proposal for {origin} carries no assignment")
            plan.assignments[origin] = proposal.assignment
            plan.unassignable.pop(origin, None)
        else:
            self._restructure(ctx, proposal)

        rework = [sid for sid in proposal.needs_rework if sid in ctx.graph]
        reset = ctx.tracker.reenter_pending(rework, authorized_by=proposal)
        affected = [sid for sid in proposal.blast_radius if sid in ctx.graph]
        # Only waves the approver already released; later ones stay gated.
        ctx.tracker.release(
            sid for sid in affected
            if ctx.tracker.is_released(sid)
            or plan.wave_plan.wave_of(sid) in plan.approved_waves
        )
        ctx.held.difference_update(affected)
        ctx.held.update(sid for sid in affected if sid in plan.unassignable)

        logger.info(f"Applied {proposal.action.value} for {origin}; re-entered {reset}")
        return reset

    def _restructure(self, ctx: GoalContext, proposal: RecoveryProposal) -> None:
        """Re-plan waves and assignments over the blast radius only."""
        plan = ctx.require_plan()
        change = proposal.change
        before = set(ctx.graph.subtasks)

        if change is not None:
            previous: list[SubTask] = []
            for task in [change.updated, *change.updated_dependents]:
                if task is not None:
                    previous.append(ctx.graph.replace_subtask(task))
            if change.new_edges:
                try:
                    self._commit_edges(ctx, change.new_edges)
                except (CycleResolutionError, CycleDetectedError):
                    for task in reversed(previous):
                        ctx.graph.replace_subtask(task)
                    logger.warning(f"Restructure of {proposal.origin_id} rolled back")
                    raise
            ctx.tracker.sync_with_graph()

        added = set(ctx.graph.subtasks) - before
        if added:
            proposal.blast_radius = sorted(set(proposal.blast_radius) | added)
        affected = [sid for sid in proposal.blast_radius if sid in ctx.graph]

        plan.wave_plan = self.planner.replan_subgraph(ctx.graph, plan.wave_plan, affected)

        exclude = {}
        if proposal.trigger == RecoveryTrigger.FAILURE:
            exclude[proposal.origin_id] = ctx.tried_workers.get(proposal.origin_id, set())
        report = self.resolver.resolve(ctx.graph, plan.wave_plan, affected, exclude)

        gone = set(plan.assignments) - set(ctx.graph.subtasks)
        for sid in set(affected) | gone:
            plan.assignments.pop(sid, None)
            plan.unassignable.pop(sid, None)
        plan.assignments.update(report.assignments)
        plan.unassignable.update(report.unassignable)
        plan.flags = [f for f in plan.flags if f.subtask_id not in affected] + report.flags
        plan.subtasks = ctx.graph.subtasks
        plan.edges = ctx.graph.edges

        for gap in report.unassignable.values():
            ctx.events.emit(
                UnassignableReported(
                    subtask_id=gap.subtask_id,
                    missing_capability=gap.missing_capability,
                )
            )

    def _commit_edges(self, ctx: GoalContext, edges: list[DependencyEdge]) -> None:
        """Commit restructure edges, escalating cycles to the cycle resolver."""
        cycle = ctx.graph.add_edges(edges)
        if cycle is None:
            return

        plan = ctx.require_plan()
        fixes = resolve_cycle(ctx.graph, cycle, edges, plan.assignments)
        fix = self.approval.confirm_fix(cycle, fixes) if fixes else None
        ctx.events.emit(
            CycleReported(cycle=cycle, repaired_by=fix.strategy.value if fix else None)
        )
        plan.cycles_reported.append(cycle)
        if fix is None:
            reason = "no repair strategy applies" if not fixes else "no fix confirmed"
            raise CycleResolutionError(cycle, reason)
        ctx.graph.apply_fix(fix, edges)
