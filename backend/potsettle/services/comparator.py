"""Alternative settlement comparator.

Runs the same net positions through every settlement algorithm and
scores the resulting plans so an organizer can pick the one that is
easiest to explain at the table. Scores are deterministic and on a 0-10
scale:

* simplicity: ``10 - 9 * count / (debtors * creditors)``; fewer payments
  relative to the worst case score higher.
* fairness: ``10 / (1 + cv)`` where ``cv`` is the coefficient of variation
  of the payment amounts; evenly sized payments score higher.
* efficiency: ``10 * max(debtors, creditors) / count``; every debtor pays
  at least once and every creditor is paid at least once, so that lower
  bound scores 10.
* user_friendliness: average roundness of the amounts (10 for multiples
  of 5, 8 for whole units, 5 otherwise), minus 0.5 for every extra
  payment the busiest player has to make or receive.

The overall score is the weighted sum of the four (0.25 each by default).
The comparison is advisory; a selected alternative is only accepted once
its own proof verifies.
"""

import logging
import math
from collections import Counter
from typing import Mapping, Optional, Sequence

from potsettle.config import Settings, settings as default_settings
from potsettle.errors import ProofIntegrityError
from potsettle.models.common import SettlementAlgorithm
from potsettle.models.comparison import (
    AlternativeComparison,
    AlternativeScores,
    AlternativeSettlement,
    ComparisonMetric,
    SettlementRecommendation,
)
from potsettle.models.positions import NetPosition, PaymentInstruction
from potsettle.models.settlement import OptimizedSettlement
from potsettle.services import currency
from potsettle.services.canonical import canonical_hash
from potsettle.services.proof_engine import ProofEngine
from potsettle.services.settlement_algorithms import run_algorithm
from potsettle.services.settlement_optimizer import SettlementOptimizer
from potsettle.services.validation_engine import SettlementValidator

logger = logging.getLogger("potsettle.services.comparator")

DEFAULT_WEIGHTS: dict[str, float] = {
    "simplicity": 0.25,
    "fairness": 0.25,
    "efficiency": 0.25,
    "user_friendliness": 0.25,
}

# Evaluation order doubles as the tie-break order for the recommendation.
ALGORITHM_ORDER = [
    SettlementAlgorithm.GREEDY,
    SettlementAlgorithm.BALANCED_FLOW,
    SettlementAlgorithm.HUB_BASED,
    SettlementAlgorithm.DIRECT,
]

ALGORITHM_INFO: dict[SettlementAlgorithm, dict] = {
    SettlementAlgorithm.GREEDY: {
        "name": "Optimized (fewest payments)",
        "description": "Largest debtor pays largest creditor until everyone is settled.",
        "pros": [
            "Usually the fewest payments",
            "Same input always gives the same plan",
        ],
        "cons": ["A player may pay, or be paid by, someone they did not play against directly"],
    },
    SettlementAlgorithm.DIRECT: {
        "name": "Direct (proportional)",
        "description": "Every debtor pays every creditor a share proportional to what they are owed.",
        "pros": [
            "Easy to explain: each loser pays each winner their share",
            "No player passes money on for someone else",
        ],
        "cons": ["Most payments of any option"],
    },
    SettlementAlgorithm.HUB_BASED: {
        "name": "Hub (one banker)",
        "description": "Everyone settles with one hub player, who then pays out the winners.",
        "pros": [
            "Every other player makes or receives exactly one payment",
            "One person keeps track of all the money",
        ],
        "cons": [
            "The hub player handles large sums",
            "Everyone has to trust the hub",
        ],
    },
    SettlementAlgorithm.BALANCED_FLOW: {
        "name": "Balanced flow",
        "description": "Smallest debts are paid first, each to the largest remaining creditor.",
        "pros": ["Small losers settle in a single payment"],
        "cons": ["Large losers may have to split their payment"],
    },
}


def _clamp(value: float) -> float:
    return round(max(0.0, min(10.0, value)), 2)


def _roundness(cents: int) -> float:
    if cents % 500 == 0:
        return 10.0
    if cents % 100 == 0:
        return 8.0
    return 5.0


class SettlementComparator:
    """Scores alternative plans for the same net positions."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        weights: Optional[Mapping[str, float]] = None,
    ) -> None:
        self._settings = config or default_settings
        self._weights = dict(DEFAULT_WEIGHTS)
        if weights:
            unknown = set(weights) - set(DEFAULT_WEIGHTS)
            if unknown:
                raise ValueError(f"Unknown score weights: {sorted(unknown)}")
            self._weights.update(weights)
        total = sum(self._weights.values())
        if total <= 0:
            raise ValueError("Score weights must sum to a positive number")
        self._weights = {k: v / total for k, v in self._weights.items()}
        self._optimizer = SettlementOptimizer(self._settings)
        self._validator = SettlementValidator(self._settings)
        self._proof_engine = ProofEngine(self._settings)

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def score_plan(
        self,
        net_positions: Sequence[NetPosition],
        plan: Sequence[PaymentInstruction],
    ) -> AlternativeScores:
        debtors = sum(1 for p in net_positions if p.net_amount < 0)
        creditors = sum(1 for p in net_positions if p.net_amount > 0)
        count = len(plan)

        if count == 0:
            sub = {key: 10.0 for key in DEFAULT_WEIGHTS}
        else:
            cents = [currency.to_minor_units(i.amount) for i in plan]
            worst_case = max(debtors * creditors, 1)
            lower_bound = max(debtors, creditors, 1)

            mean = sum(cents) / count
            variance = sum((c - mean) ** 2 for c in cents) / count
            cv = math.sqrt(variance) / mean if mean else 0.0

            involvement = Counter()
            for instruction in plan:
                involvement[instruction.from_player_id] += 1
                involvement[instruction.to_player_id] += 1
            busiest = max(involvement.values())

            sub = {
                "simplicity": _clamp(10 - 9 * count / worst_case),
                "fairness": _clamp(10 / (1 + cv)),
                "efficiency": _clamp(10 * lower_bound / count),
                "user_friendliness": _clamp(
                    sum(_roundness(c) for c in cents) / count - 0.5 * (busiest - 1)
                ),
            }
        overall = _clamp(sum(sub[key] * self._weights[key] for key in sub))
        return AlternativeScores(overall=overall, **sub)

    # ------------------------------------------------------------------
    # Comparison
    # ------------------------------------------------------------------

    def compare(
        self,
        net_positions: Sequence[NetPosition],
        session_id: Optional[str] = None,
    ) -> AlternativeComparison:
        """Build and score every alternative plan.

        Raises:
            InvariantViolationError: Malformed input positions.
            UnbalancedPositionsError: Positions that cannot be settled.
        """
        self._optimizer.check_positions(net_positions)
        positions = list(net_positions)
        plans = {algorithm: run_algorithm(algorithm, positions) for algorithm in ALGORITHM_ORDER}
        direct_count = len(plans[SettlementAlgorithm.DIRECT])
        minimum = min(len(plan) for plan in plans.values())

        alternatives: list[AlternativeSettlement] = []
        for algorithm in ALGORITHM_ORDER:
            plan = plans[algorithm]
            info = ALGORITHM_INFO[algorithm]
            optimization = (
                max(0.0, (direct_count - len(plan)) / direct_count * 100)
                if direct_count
                else 0.0
            )
            pros = list(info["pros"])
            cons = list(info["cons"])
            if plan and len(plan) == minimum:
                pros.insert(0, f"Fewest payments of the options ({len(plan)})")
            elif len(plan) > minimum:
                cons.append(f"{len(plan) - minimum} more payment(s) than the best option")

            alternatives.append(
                AlternativeSettlement(
                    option_id=str(algorithm),
                    name=info["name"],
                    algorithm=algorithm,
                    description=info["description"],
                    payment_plan=plan,
                    transaction_count=len(plan),
                    total_amount=currency.sum_amounts(i.amount for i in plan),
                    optimization_percentage=round(optimization, 2),
                    scores=self.score_plan(positions, plan),
                    pros=pros,
                    cons=cons,
                    is_valid=self._validator.validate(positions, plan).is_valid,
                )
            )

        matrix = self._matrix(alternatives)
        recommendation = self._recommend(alternatives, len(positions))
        comparison_id = "cmp_" + canonical_hash(
            {
                "session_id": session_id,
                "positions": sorted(
                    [p.player_id, format(p.net_amount, "f")] for p in positions
                ),
            }
        )[:24]
        summary = (
            "Everyone broke even; there is nothing to compare."
            if minimum == 0 or recommendation is None
            else f"{len(alternatives)} options from {minimum} to "
            f"{max(a.transaction_count for a in alternatives)} payments. "
            f"Recommended: {recommendation.option_id} ({recommendation.reason})."
        )
        logger.info(
            "Compared %d alternatives for %d players; recommended %s",
            len(alternatives),
            len(positions),
            recommendation.option_id if recommendation else None,
        )
        return AlternativeComparison(
            comparison_id=comparison_id,
            session_id=session_id,
            alternatives=alternatives,
            comparison_matrix=matrix,
            recommendation=recommendation,
            summary=summary,
        )

    @staticmethod
    def _matrix(alternatives: Sequence[AlternativeSettlement]) -> list[ComparisonMetric]:
        rows: list[ComparisonMetric] = []
        counts = {a.option_id: float(a.transaction_count) for a in alternatives}
        rows.append(
            ComparisonMetric(
                metric="transaction_count",
                values=counts,
                best_option_id=min(counts, key=lambda k: (counts[k], ALGORITHM_ORDER.index(k))),
            )
        )
        for metric in ("simplicity", "fairness", "efficiency", "user_friendliness", "overall"):
            values = {a.option_id: getattr(a.scores, metric) for a in alternatives}
            rows.append(
                ComparisonMetric(
                    metric=metric,
                    values=values,
                    best_option_id=min(values, key=lambda k: (-values[k], ALGORITHM_ORDER.index(k))),
                )
            )
        return rows

    @staticmethod
    def _recommend(
        alternatives: Sequence[AlternativeSettlement], player_count: int
    ) -> Optional[SettlementRecommendation]:
        candidates = [a for a in alternatives if a.is_valid]
        if not candidates:
            return None
        best = min(
            candidates,
            key=lambda a: (-a.scores.overall, ALGORITHM_ORDER.index(a.algorithm)),
        )
        simple_limit = max(player_count - 1, 1)
        if best.transaction_count <= simple_limit:
            complexity = "low"
        elif best.transaction_count <= 2 * simple_limit:
            complexity = "medium"
        else:
            complexity = "high"
        if best.scores.fairness < 3:
            dispute_risk = "high"
        elif best.algorithm == SettlementAlgorithm.HUB_BASED or best.scores.fairness < 5:
            dispute_risk = "medium"
        else:
            dispute_risk = "low"
        return SettlementRecommendation(
            option_id=best.option_id,
            algorithm=best.algorithm,
            score=best.scores.overall,
            reason=f"highest overall score {best.scores.overall:.2f}",
            complexity=complexity,
            dispute_risk=dispute_risk,
        )

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select_alternative(
        self,
        comparison: AlternativeComparison,
        option_id: str,
        net_positions: Sequence[NetPosition],
    ) -> OptimizedSettlement:
        """Turn a chosen alternative into a settlement, accepted only if proven.

        Raises:
            LookupError: ``option_id`` is not part of ``comparison``.
            ProofIntegrityError: The alternative's proof does not verify.
        """
        option = comparison.get_option(option_id)
        if option is None:
            raise LookupError(f"Unknown settlement option: {option_id}")

        settlement = self._optimizer.build_settlement(
            net_positions,
            option.payment_plan,
            option.algorithm,
            comparison.session_id,
        )
        self._proof_engine.ensure_valid_proof(settlement.mathematical_proof)
        if not settlement.is_valid:
            raise ProofIntegrityError(
                f"Alternative {option_id} does not settle the positions",
                details={"settlement_id": settlement.settlement_id},
            )
        logger.info(
            "Selected alternative %s as settlement %s",
            option_id,
            settlement.settlement_id,
        )
        return settlement


def compare_alternatives(
    net_positions: Sequence[NetPosition],
    session_id: Optional[str] = None,
    weights: Optional[Mapping[str, float]] = None,
    config: Optional[Settings] = None,
) -> AlternativeComparison:
    return SettlementComparator(config, weights).compare(net_positions, session_id)
