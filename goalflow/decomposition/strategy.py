"""Decomposition strategy interface.

Turning a goal statement into candidate sub-tasks happens upstream; the
engine only consumes the proposals.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Any

from goalflow.decomposition.models import SubTask

Proposal = SubTask | dict[str, Any]


class DecompositionStrategy(ABC):
    """Produces proposed sub-tasks for a goal."""

    @abstractmethod
    def decompose(self, goal: str) -> list[Proposal]:
        pass


class StaticDecomposition(DecompositionStrategy):
    """Strategy returning a fixed list of proposals, e.g. loaded from a file."""

    def __init__(self, proposals: Iterable[Proposal]) -> None:
        self.proposals = list(proposals)

    def decompose(self, goal: str) -> list[Proposal]:
        return list(self.proposals)
