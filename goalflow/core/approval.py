"""Approval gate interface and decision normalization.

Every approval is explicit: a response that is absent, malformed or
ambiguous normalizes to scope ``none``, which is a denial.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import TYPE_CHECKING, Any

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

if TYPE_CHECKING:
    from goalflow.decomposition.cycle_resolver import ProposedFix
    from goalflow.decomposition.models import Plan
    from goalflow.execution.replanning import RecoveryProposal


class ApprovalScope(str, Enum):
    """What an approval releases."""

    ALL = "all"
    WAVES = "waves"
    NONE = "none"


class ApprovalDecision(BaseModel):
    """Decision returned by a human approver.

    ``modifications`` may carry ``{"assignments": {subtask_id: worker_id}}``
    to bind sub-tasks by hand.
    """

    scope: ApprovalScope = ApprovalScope.NONE
    waves: list[int] = Field(default_factory=list)
    modifications: dict[str, Any] = Field(default_factory=dict)

    @property
    def approved(self) -> bool:
        return self.scope == ApprovalScope.ALL or (
            self.scope == ApprovalScope.WAVES and bool(self.waves)
        )

    def approves_wave(self, index: int) -> bool:
        if self.scope == ApprovalScope.ALL:
            return True
        return self.scope == ApprovalScope.WAVES and index in self.waves

    @classmethod
    def deny(cls) -> "ApprovalDecision":
        return cls(scope=ApprovalScope.NONE)

    @classmethod
    def approve_all(cls, modifications: dict[str, Any] | None = None) -> "ApprovalDecision":
        return cls(scope=ApprovalScope.ALL, modifications=modifications or {})

    @classmethod
    def normalize(cls, response: Any) -> "ApprovalDecision":
        """
        Turn an approver response into a decision.

        Accepts a decision, a dict, the strings ``"all"``/``"none"``, or a
        list of wave indices. Anything else is treated as denial.

        Example:
            >>> ApprovalDecision.normalize("all").approved
            True
            >>> ApprovalDecision.normalize("maybe").approved
            False
            >>> ApprovalDecision.normalize([0, 1]).waves
            [0, 1]
        """
        if isinstance(response, ApprovalDecision):
            decision = response
        elif isinstance(response, str):
            value = response.strip().lower()
            if value == ApprovalScope.ALL.value:
                decision = cls(scope=ApprovalScope.ALL)
            else:
                decision = cls.deny()
        elif isinstance(response, (list, tuple)) and response and all(
            isinstance(i, int) and not isinstance(i, bool) and i >= 0 for i in response
        ):
            decision = cls(scope=ApprovalScope.WAVES, waves=sorted(set(response)))
        elif isinstance(response, dict):
            try:
                decision = cls.model_validate(response)
            except ValidationError as e:
                logger.warning(f"Malformed approval response treated as denial: {e}")
                decision = cls.deny()
        else:
            decision = cls.deny()

        if decision.scope == ApprovalScope.WAVES and not decision.waves:
            return cls.deny()
        return decision


class ApprovalGate(ABC):
    """Human-in-the-loop approval interface."""

    @abstractmethod
    def present_plan(self, plan: "Plan") -> ApprovalDecision | Any:
        """Present a plan; the response is normalized by the caller."""
        pass

    @abstractmethod
    def review_recovery(self, proposal: "RecoveryProposal") -> ApprovalDecision | Any:
        """Review a recovery proposal; only scope ``all`` approves it."""
        pass

    @abstractmethod
    def confirm_fix(
        self,
        cycle: list[str],
        fixes: list["ProposedFix"],
    ) -> "ProposedFix | None":
        """Pick one cycle fix to apply, or None to reject all."""
        pass


class AutoApprovalGate(ApprovalGate):
    """Gate that approves everything; for dry runs and tests."""

    def __init__(self, approve_recovery: bool = True, accept_fixes: bool = True) -> None:
        self.approve_recovery = approve_recovery
        self.accept_fixes = accept_fixes
        self.presented: list["Plan"] = []

    def present_plan(self, plan: "Plan") -> ApprovalDecision:
        self.presented.append(plan)
        return ApprovalDecision.approve_all()

    def review_recovery(self, proposal: "RecoveryProposal") -> ApprovalDecision:
        return ApprovalDecision.approve_all() if self.approve_recovery else ApprovalDecision.deny()

    def confirm_fix(self, cycle: list[str], fixes: list["ProposedFix"]) -> "ProposedFix | None":
        if self.accept_fixes and fixes:
            return fixes[0]
        return None
