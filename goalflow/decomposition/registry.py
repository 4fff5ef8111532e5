"""Worker registry interface and an in-memory implementation."""

from abc import ABC, abstractmethod
from collections.abc import Iterable

from loguru import logger

from goalflow.decomposition.models import ExecutionMode, WorkerDescriptor


class WorkerRegistry(ABC):
    """External catalog of workers and their capabilities."""

    @abstractmethod
    def find_capable(
        self,
        domain_tag: str,
        execution_mode: ExecutionMode,
    ) -> list[WorkerDescriptor]:
        """
        Find workers advertising a domain tag.

        Args:
            domain_tag: Capability required.
            execution_mode: Execution mode the sub-task requires.

        Returns:
            Matching worker descriptors (possibly empty).
        """
        pass

    def get(self, worker_id: str) -> WorkerDescriptor | None:
        """Look up a worker by ID, if the registry supports it."""
        return None


class InMemoryWorkerRegistry(WorkerRegistry):
    """
    Registry backed by a dict of worker descriptors.

    Example:
        >>> registry = InMemoryWorkerRegistry([
        ...     WorkerDescriptor(id="db-1", domain_tags=["database"]),
        ... ])
        >>> [w.id for w in registry.find_capable("database", ExecutionMode.SYNC)]
        ['db-1']
    """

    def __init__(self, workers: Iterable[WorkerDescriptor] = ()) -> None:
        self._workers: dict[str, WorkerDescriptor] = {}
        for worker in workers:
            self.register(worker)

    def register(self, worker: WorkerDescriptor) -> None:
        self._workers[worker.id] = worker
        logger.debug(f"Registered worker {worker.id} with capabilities {worker.capabilities()}")

    def unregister(self, worker_id: str) -> None:
        self._workers.pop(worker_id, None)

    def set_load(self, worker_id: str, load: int) -> None:
        """Update the load counter of a worker."""
        worker = self._workers[worker_id]
        self._workers[worker_id] = worker.model_copy(update={"current_load": load})

    def get(self, worker_id: str) -> WorkerDescriptor | None:
        return self._workers.get(worker_id)

    def find_capable(
        self,
        domain_tag: str,
        execution_mode: ExecutionMode,
    ) -> list[WorkerDescriptor]:
        return [
            w for w in self._workers.values()
            if domain_tag in w.capabilities() and w.supports(execution_mode)
        ]

    @property
    def workers(self) -> list[WorkerDescriptor]:
        return list(self._workers.values())
