"""Tests for the alternative settlement comparator."""

from decimal import Decimal

import pytest

from potsettle.errors import ProofIntegrityError, UnbalancedPositionsError
from potsettle.models.common import SettlementAlgorithm
from potsettle.models.positions import NetPosition, PaymentInstruction
from potsettle.services.comparator import SettlementComparator, compare_alternatives


def _positions(**nets) -> list[NetPosition]:
    return [
        NetPosition(player_id=pid, player_name=pid, net_amount=Decimal(str(amount)))
        for pid, amount in nets.items()
    ]


POSITIONS = _positions(A="60", B="40", C="-50", D="-30", E="-20")


class TestCompareAlternatives:

    def test_runs_every_algorithm(self):
        comparison = compare_alternatives(POSITIONS, session_id="s1")
        assert [a.option_id for a in comparison.alternatives] == [
            "greedy", "balanced_flow", "hub_based", "direct",
        ]
        assert all(a.is_valid for a in comparison.alternatives)
        assert comparison.session_id == "s1"

    def test_scores_are_on_zero_to_ten_scale(self):
        comparison = compare_alternatives(POSITIONS)
        for alternative in comparison.alternatives:
            scores = alternative.scores
            for value in (
                scores.simplicity, scores.fairness, scores.efficiency,
                scores.user_friendliness, scores.overall,
            ):
                assert 0 <= value <= 10
            assert alternative.pros
            assert alternative.cons

    def test_direct_has_most_payments(self):
        comparison = compare_alternatives(POSITIONS)
        by_id = {a.option_id: a for a in comparison.alternatives}
        assert by_id["direct"].transaction_count == 6
        assert by_id["greedy"].transaction_count <= 4
        assert by_id["direct"].optimization_percentage == 0.0
        assert by_id["greedy"].optimization_percentage > 0

    def test_deterministic(self):
        first = compare_alternatives(POSITIONS)
        second = compare_alternatives(POSITIONS)
        assert first.comparison_id == second.comparison_id
        assert [a.scores for a in first.alternatives] == [a.scores for a in second.alternatives]

    def test_recommendation_is_highest_score(self):
        comparison = compare_alternatives(POSITIONS)
        best = max(a.scores.overall for a in comparison.alternatives)
        assert comparison.recommendation.score == best
        assert comparison.recommendation.complexity in {"low", "medium", "high"}

    def test_matrix_has_a_row_per_metric(self):
        comparison = compare_alternatives(POSITIONS)
        metrics = [row.metric for row in comparison.comparison_matrix]
        assert metrics == [
            "transaction_count", "simplicity", "fairness",
            "efficiency", "user_friendliness", "overall",
        ]
        counts = comparison.comparison_matrix[0]
        assert counts.values["direct"] == 6.0

    def test_weights_shift_overall_score(self):
        only_simplicity = compare_alternatives(
            POSITIONS,
            weights={"simplicity": 1, "fairness": 0, "efficiency": 0, "user_friendliness": 0},
        )
        for alternative in only_simplicity.alternatives:
            assert alternative.scores.overall == alternative.scores.simplicity

    def test_unknown_weight_rejected(self):
        with pytest.raises(ValueError):
            SettlementComparator(weights={"speed": 1.0})

    def test_everyone_broke_even(self):
        comparison = compare_alternatives(_positions(A="0", B="0"))
        assert all(a.transaction_count == 0 for a in comparison.alternatives)
        assert "broke even" in comparison.summary

    def test_unbalanced_input_rejected(self):
        with pytest.raises(UnbalancedPositionsError):
            compare_alternatives(_positions(A="10", B="-5"))


class TestSelectAlternative:

    def test_selected_alternative_carries_valid_proof(self):
        comparator = SettlementComparator()
        comparison = comparator.compare(POSITIONS, session_id="s1")
        settlement = comparator.select_alternative(comparison, "hub_based", POSITIONS)
        assert settlement.algorithm == SettlementAlgorithm.HUB_BASED
        assert settlement.is_valid
        assert settlement.mathematical_proof.is_valid
        assert settlement.payment_plan == comparison.get_option("hub_based").payment_plan

    def test_unknown_option(self):
        comparator = SettlementComparator()
        comparison = comparator.compare(POSITIONS)
        with pytest.raises(LookupError):
            comparator.select_alternative(comparison, "coin_flip", POSITIONS)

    def test_tampered_alternative_rejected(self):
        comparator = SettlementComparator()
        comparison = comparator.compare(POSITIONS)
        option = comparison.get_option("greedy")
        option.payment_plan = option.payment_plan[:-1] + [
            PaymentInstruction(
                from_player_id="E", from_player_name="E",
                to_player_id="B", to_player_name="B", amount=Decimal("1.00"),
            )
        ]
        with pytest.raises(ProofIntegrityError):
            comparator.select_alternative(comparison, "greedy", POSITIONS)


class TestRoutedAlternatives:

    THREE_PLAYERS = _positions(A="50", B="-30", C="-20")

    def test_hub_plan_is_valid_option(self):
        comparison = compare_alternatives(self.THREE_PLAYERS)
        hub = comparison.get_option("hub_based")
        assert [p.describe() for p in hub.payment_plan] == [
            "B pays C 30.00", "C pays A 50.00",
        ]
        assert hub.is_valid

    def test_hub_can_be_selected(self):
        comparator = SettlementComparator()
        comparison = comparator.compare(self.THREE_PLAYERS)
        settlement = comparator.select_alternative(
            comparison, "hub_based", self.THREE_PLAYERS
        )
        assert settlement.is_valid
        assert settlement.metrics.total_amount_settled == Decimal("80.00")
