"""Lifecycle tracker - the per-sub-task state machine.

    PENDING -> IN_PROGRESS -> COMPLETED | FAILED
    PENDING | IN_PROGRESS -> CANCELLED

BLOCKED is derived, never stored. FAILED (and COMPLETED, when its
done-criteria changed) returns to PENDING only through an approved
recovery from the replanning controller.
"""

from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from loguru import logger

from goalflow.core.exceptions import GoalCancelledError, InvalidTransitionError
from goalflow.core.state import (
    TERMINAL_STATUSES,
    ExecutionState,
    Outcome,
    SubTaskStatus,
    WorkerResult,
    utcnow,
)
from goalflow.decomposition.graph_store import GraphStore
from goalflow.execution.events import EventStream, SubTaskFailed, SubTaskUnblocked

if TYPE_CHECKING:
    from goalflow.execution.replanning import RecoveryProposal


class LifecycleTracker:
    """
    Track execution state for every sub-task of one goal.

    The tracker is the only writer of ``ExecutionState``. Its side effects
    are visible outside only as ``SubTaskUnblocked`` and ``SubTaskFailed``
    events.

    Example:
        >>> tracker = LifecycleTracker(store, events)
        >>> tracker.release(["A"])
        >>> tracker.start("A")
        >>> tracker.complete("A")
        ['B', 'C']
    """

    def __init__(self, graph: GraphStore, events: EventStream) -> None:
        self.graph = graph
        self.events = events
        self._states: dict[str, ExecutionState] = {}
        self._released: set[str] = set()
        self._cancelled = False
        self.sync_with_graph()

    # =========================================================================
    # QUERIES
    # =========================================================================

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def state(self, subtask_id: str) -> ExecutionState:
        """Copy of the stored state of a sub-task."""
        return self._states[subtask_id].model_copy()

    def status(self, subtask_id: str) -> SubTaskStatus:
        """Status including the derived BLOCKED state."""
        stored = self._states[subtask_id].status
        if stored == SubTaskStatus.PENDING and not self._predecessors_done(subtask_id):
            return SubTaskStatus.BLOCKED
        return stored

    def statuses(self) -> dict[str, SubTaskStatus]:
        return {sid: self.status(sid) for sid in self._states}

    def ids_with_status(self, status: SubTaskStatus) -> list[str]:
        return sorted(sid for sid, s in self.statuses().items() if s == status)

    def is_terminal(self, subtask_id: str) -> bool:
        return self._states[subtask_id].status in TERMINAL_STATUSES

    def is_released(self, subtask_id: str) -> bool:
        return subtask_id in self._released

    def is_eligible(self, subtask_id: str) -> bool:
        """True when the sub-task may move to IN_PROGRESS."""
        return (
            not self._cancelled
            and self._states[subtask_id].status == SubTaskStatus.PENDING
            and subtask_id in self._released
            and self._predecessors_done(subtask_id)
        )

    def _predecessors_done(self, subtask_id: str) -> bool:
        return all(
            self._states[p].status == SubTaskStatus.COMPLETED
            for p in self.graph.predecessors(subtask_id)
            if p in self._states
        )

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    def sync_with_graph(self) -> None:
        """Track new sub-tasks as PENDING and forget removed ones."""
        current = set(self.graph.subtasks)
        for sid in current - set(self._states):
            self._states[sid] = ExecutionState()
        for sid in set(self._states) - current:
            del self._states[sid]
            self._released.discard(sid)

    def release(self, subtask_ids: Iterable[str]) -> None:
        """Mark sub-tasks as released by the approval gate."""
        ids = [sid for sid in subtask_ids if sid in self._states]
        self._released.update(ids)
        logger.debug(f"Released {len(ids)} sub-tasks")

    def start(self, subtask_id: str, worker_id: str | None = None) -> None:
        """
        Move a sub-task from PENDING to IN_PROGRESS.

        Raises:
            GoalCancelledError: If the goal was cancelled.
            InvalidTransitionError: If the sub-task is not released, not
                PENDING, or has incomplete predecessors.
        """
        if self._cancelled:
            raise GoalCancelledError(f"Goal cancelled; cannot start {subtask_id}")

        state = self._states[subtask_id]
        if state.status != SubTaskStatus.PENDING:
            raise InvalidTransitionError(
                f"{subtask_id}: cannot start from {state.status.value}"
            )
        if subtask_id not in self._released:
            raise InvalidTransitionError(f"{subtask_id}: wave not released by approval gate")
        if not self._predecessors_done(subtask_id):
            raise InvalidTransitionError(f"{subtask_id}: predecessors not completed")

        self._set(subtask_id, SubTaskStatus.IN_PROGRESS, worker_id=worker_id)
        state.attempts += 1
        logger.info(f"Sub-task {subtask_id} IN_PROGRESS (attempt {state.attempts})")

    def complete(self, subtask_id: str) -> list[str]:
        """
        Move a sub-task from IN_PROGRESS to COMPLETED.

        Returns:
            Dependents that became eligible, in ID order.
        """
        self._require(subtask_id, SubTaskStatus.IN_PROGRESS, "complete")
        self._set(subtask_id, SubTaskStatus.COMPLETED)
        logger.info(f"Sub-task {subtask_id} COMPLETED")

        unblocked = sorted(
            succ
            for succ in self.graph.successors(subtask_id)
            if succ in self._states
            and self._states[succ].status == SubTaskStatus.PENDING
            and self._predecessors_done(succ)
        )
        for succ in unblocked:
            self.events.emit(SubTaskUnblocked(subtask_id=succ))
        return unblocked

    def fail(self, subtask_id: str, reason: str) -> None:
        """
        Move a sub-task from IN_PROGRESS to FAILED.

        Dependents are left untouched; recovery is the replanner's call.
        """
        self._require(subtask_id, SubTaskStatus.IN_PROGRESS, "fail")
        self._set(subtask_id, SubTaskStatus.FAILED, last_error=reason)
        logger.warning(f"Sub-task {subtask_id} FAILED: {reason}")
        self.events.emit(SubTaskFailed(subtask_id=subtask_id, reason=reason))

    def ingest(self, result: WorkerResult) -> list[str]:
        """
        Apply a worker callback.

        Results for sub-tasks that are not IN_PROGRESS (e.g. cancelled
        while the worker was running) are ignored.

        Returns:
            Newly unblocked sub-tasks (empty on failure or ignored result).
        """
        sid = result.subtask_id
        if sid not in self._states:
            logger.warning(f"Result for unknown sub-task {sid} ignored")
            return []
        if self._states[sid].status != SubTaskStatus.IN_PROGRESS:
            logger.warning(
                f"Late result for {sid} ignored (status {self._states[sid].status.value})"
            )
            return []

        if result.outcome == Outcome.SUCCESS:
            return self.complete(sid)
        self.fail(sid, result.reason)
        return []

    def cancel_all(self) -> list[str]:
        """
        Cancel every non-terminal sub-task.

        Returns:
            IDs moved to CANCELLED; callers signal the IN_PROGRESS ones to
            their workers.
        """
        self._cancelled = True
        cancelled: list[str] = []
        for sid in sorted(self._states):
            if self._states[sid].status in (SubTaskStatus.PENDING, SubTaskStatus.IN_PROGRESS):
                self._set(sid, SubTaskStatus.CANCELLED)
                cancelled.append(sid)
        logger.warning(f"Cancelled {len(cancelled)} sub-tasks")
        return cancelled

    def reenter_pending(
        self,
        subtask_ids: Iterable[str],
        authorized_by: "RecoveryProposal",
    ) -> list[str]:
        """
        Return sub-tasks to PENDING under an approved recovery.

        Args:
            subtask_ids: Sub-tasks to re-enter.
            authorized_by: The approved recovery proposal covering them.

        Returns:
            IDs that were reset.

        Raises:
            InvalidTransitionError: If the proposal is not approved, does not
                cover a sub-task, or a sub-task is still IN_PROGRESS.
        """
        if self._cancelled:
            raise GoalCancelledError("Goal cancelled; cannot re-enter sub-tasks")
        if not authorized_by.approved:
            raise InvalidTransitionError("Re-entry requires an approved recovery proposal")

        scope = set(authorized_by.blast_radius)
        reset: list[str] = []
        for sid in subtask_ids:
            if sid not in scope:
                raise InvalidTransitionError(f"{sid} is outside the recovery blast radius")
            status = self._states[sid].status
            if status == SubTaskStatus.IN_PROGRESS:
                raise InvalidTransitionError(f"{sid} is still in progress")
            if status in (SubTaskStatus.FAILED, SubTaskStatus.COMPLETED):
                self._set(sid, SubTaskStatus.PENDING)
                reset.append(sid)

        logger.info(f"Re-entered {len(reset)} sub-tasks at PENDING: {reset}")
        return reset

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _require(self, subtask_id: str, expected: SubTaskStatus, action: str) -> None:
        actual = self._states[subtask_id].status
        if actual != expected:
            raise InvalidTransitionError(
                f"{subtask_id}: cannot {action} from {actual.value}"
            )

    def _set(self, subtask_id: str, status: SubTaskStatus, **fields: Any) -> None:
        state = self._states[subtask_id]
        state.status = status
        state.updated_at = utcnow()
        for name, value in fields.items():
            setattr(state, name, value)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "cancelled": self._cancelled,
            "released": sorted(self._released),
            "states": {k: v.model_dump(mode="json") for k, v in self._states.items()},
        }
