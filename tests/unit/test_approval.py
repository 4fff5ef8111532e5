"""Unit tests for approval decision normalization."""

from typing import Any

import pytest

from goalflow.core.approval import ApprovalDecision, ApprovalScope, AutoApprovalGate


class TestNormalize:
    """Tests for ApprovalDecision.normalize."""

    @pytest.mark.parametrize("response", ["all", "ALL", "  all "])
    def test_all(self, response: str) -> None:
        decision = ApprovalDecision.normalize(response)

        assert decision.scope == ApprovalScope.ALL
        assert decision.approved
        assert decision.approves_wave(7)

    def test_wave_indices(self) -> None:
        decision = ApprovalDecision.normalize([2, 0, 2])

        assert decision.scope == ApprovalScope.WAVES
        assert decision.waves == [0, 2]
        assert decision.approves_wave(0)
        assert not decision.approves_wave(1)

    @pytest.mark.parametrize(
        "response",
        [
            None,
            "",
            "none",
            "yes please",
            [],
            [True],
            [-1],
            ["0"],
            42,
            {"scope": "bogus"},
            {"scope": "waves", "waves": []},
        ],
    )
    def test_ambiguous_is_denial(self, response: Any) -> None:
        """Test anything not clearly an approval becomes scope none."""
        decision = ApprovalDecision.normalize(response)

        assert decision.scope == ApprovalScope.NONE
        assert not decision.approved
        assert not decision.approves_wave(0)

    def test_dict_response(self) -> None:
        decision = ApprovalDecision.normalize(
            {"scope": "all", "modifications": {"assignments": {"B": "be-2"}}}
        )

        assert decision.approved
        assert decision.modifications["assignments"] == {"B": "be-2"}

    def test_decision_passthrough(self) -> None:
        decision = ApprovalDecision(scope=ApprovalScope.WAVES, waves=[1])

        assert ApprovalDecision.normalize(decision) is decision


class TestAutoApprovalGate:
    """Tests for the non-interactive gate."""

    def test_records_presented_plans(self) -> None:
        gate = AutoApprovalGate()

        decision = gate.present_plan("plan")

        assert decision.approved
        assert gate.presented == ["plan"]

    def test_declines_when_configured(self) -> None:
        gate = AutoApprovalGate(approve_recovery=False, accept_fixes=False)

        assert not gate.review_recovery(None).approved
        assert gate.confirm_fix(["A", "B", "A"], ["fix"]) is None

    def test_picks_first_fix(self) -> None:
        assert AutoApprovalGate().confirm_fix(["A", "B", "A"], ["first", "second"]) == "first"
