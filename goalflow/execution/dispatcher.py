"""Worker dispatch interface and a simulated dispatcher.

Dispatch is fire-and-forget: the worker reports back later through the
result callback of the goal's orchestrator.
"""

import asyncio
import random
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

from loguru import logger

from goalflow.core.state import Outcome

ResultCallback = Callable[[str, Outcome, dict[str, Any]], Awaitable[None]]


class WorkerDispatcher(ABC):
    """Sends sub-tasks to external workers."""

    @abstractmethod
    async def dispatch(self, subtask_id: str, worker_id: str, payload: dict[str, Any]) -> None:
        """
        Hand a sub-task to a worker and return without waiting for it.

        Args:
            subtask_id: Sub-task identifier.
            worker_id: Worker chosen by the assignment resolver.
            payload: Work description for the worker.
        """
        pass

    async def cancel(self, subtask_id: str) -> None:
        """Best-effort signal to stop a running sub-task."""
        logger.debug(f"Cancel requested for {subtask_id} (no-op dispatcher)")


class DryRunDispatcher(WorkerDispatcher):
    """
    Dispatcher that simulates workers without running anything.

    Useful for previewing a plan end to end and for tests.

    Example:
        >>> dispatcher = DryRunDispatcher(failures={"D": 1})
        >>> orchestrator = GoalOrchestrator(registry, dispatcher, gate)
        >>> dispatcher.bind(orchestrator.on_result)
    """

    def __init__(
        self,
        delay_per_task: float = 0.0,
        success_rate: float = 1.0,
        failures: dict[str, int] | None = None,
        seed: int | None = None,
    ) -> None:
        """
        Initialize dry run dispatcher.

        Args:
            delay_per_task: Simulated work time in seconds.
            success_rate: Probability of success for sub-tasks not listed
                in ``failures`` (0.0 to 1.0).
            failures: Sub-task ID -> number of attempts that should fail.
            seed: Seed for the success-rate random generator.
        """
        self.delay_per_task = delay_per_task
        self.success_rate = success_rate
        self.failures = dict(failures or {})
        self.dispatched: list[tuple[str, str]] = []
        self.cancelled: list[str] = []
        self._random = random.Random(seed)
        self._callback: ResultCallback | None = None
        self._running: dict[str, asyncio.Task[None]] = {}

    def bind(self, callback: ResultCallback) -> None:
        """Set the callback receiving simulated results."""
        self._callback = callback

    async def dispatch(self, subtask_id: str, worker_id: str, payload: dict[str, Any]) -> None:
        if self._callback is None:
            raise RuntimeError("DryRunDispatcher is not bound to a result callback")

        self.dispatched.append((subtask_id, worker_id))
        logger.info(f"[dry-run] dispatch {subtask_id} -> {worker_id}")
        self._running[subtask_id] = asyncio.create_task(
            self._work(subtask_id, worker_id, self._callback)
        )

    async def cancel(self, subtask_id: str) -> None:
        self.cancelled.append(subtask_id)
        task = self._running.pop(subtask_id, None)
        if task is not None and not task.done():
            task.cancel()

    async def _work(self, subtask_id: str, worker_id: str, callback: ResultCallback) -> None:
        await asyncio.sleep(self.delay_per_task)

        if self.failures.get(subtask_id, 0) > 0:
            self.failures[subtask_id] -= 1
            success = False
        else:
            success = self._random.random() < self.success_rate

        self._running.pop(subtask_id, None)
        if success:
            await callback(subtask_id, Outcome.SUCCESS, {"worker_id": worker_id})
        else:
            await callback(
                subtask_id,
                Outcome.FAILURE,
                {"worker_id": worker_id, "error": "Simulated failure"},
            )
