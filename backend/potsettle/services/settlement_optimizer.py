"""Settlement optimizer.

Turns a session's net positions into an authoritative payment plan
(greedy debt reduction), a direct baseline for comparison, optimization
metrics and an attached mathematical proof. Pure and synchronous; the
result is a new frozen ``OptimizedSettlement`` on every call.
"""

import logging
from collections import Counter
from typing import Mapping, Optional, Sequence

from potsettle.config import Settings, settings as default_settings
from potsettle.errors import InvariantViolationError, UnbalancedPositionsError
from potsettle.models.common import SettlementAlgorithm
from potsettle.models.player import PlayerLedgerEntry
from potsettle.models.positions import NetPosition, PaymentInstruction
from potsettle.models.settlement import OptimizationMetrics, OptimizedSettlement
from potsettle.services import currency
from potsettle.services.canonical import canonical_hash
from potsettle.services.proof_engine import ProofEngine
from potsettle.services.settlement_algorithms import direct_settlement, run_algorithm
from potsettle.services.validation_engine import SettlementValidator

logger = logging.getLogger("potsettle.services.optimizer")


def settlement_id_for(
    net_positions: Sequence[NetPosition],
    algorithm: SettlementAlgorithm,
    session_id: Optional[str] = None,
) -> str:
    """Content-derived id: the same positions and algorithm give the same id."""
    content = {
        "algorithm": str(algorithm),
        "session_id": session_id,
        "positions": sorted(
            (
                {
                    "player_id": p.player_id,
                    "net_amount": format(currency.round_amount(p.net_amount), "f"),
                }
                for p in net_positions
            ),
            key=lambda item: item["player_id"],
        ),
    }
    return f"stl_{canonical_hash(content)[:24]}"


def net_positions_from_ledger(
    players: Sequence[PlayerLedgerEntry],
    final_chip_values: Optional[Mapping[str, object]] = None,
) -> list[NetPosition]:
    """Derive net positions as ``cash_outs + final_chips - buy_ins``.

    Cashed-out players hold no chips. Every player still active must have
    an entry in ``final_chip_values``.

    Raises:
        InvariantViolationError: An active player has no final chip value.
    """
    final_chip_values = final_chip_values or {}
    positions: list[NetPosition] = []
    for player in players:
        if player.is_active:
            if player.id not in final_chip_values:
                raise InvariantViolationError(
                    f"No final chip count for active player {player.name}",
                    details={"player_id": player.id},
                )
            raw = final_chip_values[player.id]
            try:
                final_chips = currency.round_amount(raw)
            except ValueError:
                raise InvariantViolationError(
                    f"Final chip count for {player.name} is not a valid amount",
                    details={"player_id": player.id, "value": str(raw)},
                )
            if final_chips < 0 or final_chips > currency.MAX_AMOUNT:
                raise InvariantViolationError(
                    f"Final chip count for {player.name} is out of range",
                    details={"player_id": player.id, "value": str(final_chips)},
                )
        else:
            final_chips = currency.ZERO
        net = currency.subtract(
            currency.add(player.total_cash_outs, final_chips),
            player.total_buy_ins,
        )
        positions.append(
            NetPosition(
                player_id=player.id,
                player_name=player.name,
                net_amount=net,
                total_buy_ins=player.total_buy_ins,
                total_cash_outs=player.total_cash_outs,
                final_chip_value=final_chips,
            )
        )
    return positions


class SettlementOptimizer:
    """Computes optimized settlements. Holds configuration only."""

    def __init__(self, config: Optional[Settings] = None) -> None:
        self._settings = config or default_settings
        self._validator = SettlementValidator(self._settings)
        self._proof_engine = ProofEngine(self._settings)

    # ------------------------------------------------------------------
    # Input invariants
    # ------------------------------------------------------------------

    def check_positions(self, net_positions: Sequence[NetPosition]) -> int:
        """Enforce input invariants and return the net sum in cents.

        Raises:
            InvariantViolationError: Duplicate player ids or fractional cents.
            UnbalancedPositionsError: The positions do not sum to zero, or
                exactly one position is non-zero.
        """
        duplicates = [
            pid for pid, count in Counter(p.player_id for p in net_positions).items()
            if count > 1
        ]
        if duplicates:
            raise InvariantViolationError(
                "Duplicate player ids in net positions",
                details={"player_ids": sorted(duplicates)},
            )

        fractional = [
            p.player_id for p in net_positions if not currency.is_valid_amount(p.net_amount)
        ]
        if fractional:
            raise InvariantViolationError(
                "Net positions contain fractions of a cent",
                details={"player_ids": fractional},
            )

        non_zero = [p for p in net_positions if p.net_amount != 0]
        if len(non_zero) == 1:
            raise UnbalancedPositionsError(
                f"Only {non_zero[0].player_name} has a non-zero position; "
                "nobody can settle with them",
                details={
                    "player_id": non_zero[0].player_id,
                    "net_amount": str(non_zero[0].net_amount),
                },
            )

        net_sum = sum(currency.to_minor_units(p.net_amount) for p in net_positions)
        tolerance = currency.to_minor_units(self._settings.SETTLEMENT_TOLERANCE)
        if abs(net_sum) > tolerance:
            raise UnbalancedPositionsError(
                f"Net positions sum to {currency.from_minor_units(net_sum)}, not zero",
                details={"net_sum": str(currency.from_minor_units(net_sum))},
            )
        return net_sum

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def optimize(
        self,
        net_positions: Sequence[NetPosition],
        session_id: Optional[str] = None,
    ) -> OptimizedSettlement:
        """Settle ``net_positions`` with greedy debt reduction.

        Args:
            net_positions: Every player's net result for the session.
            session_id: Optional session the positions belong to.

        Returns:
            A frozen OptimizedSettlement with its proof attached.

        Raises:
            InvariantViolationError: Malformed input positions.
            UnbalancedPositionsError: Positions that cannot be settled.
        """
        self.check_positions(net_positions)
        plan = run_algorithm(SettlementAlgorithm.GREEDY, net_positions)
        return self.build_settlement(
            net_positions, plan, SettlementAlgorithm.GREEDY, session_id
        )

    def build_settlement(
        self,
        net_positions: Sequence[NetPosition],
        payment_plan: Sequence[PaymentInstruction],
        algorithm: SettlementAlgorithm,
        session_id: Optional[str] = None,
    ) -> OptimizedSettlement:
        """Wrap a plan produced by any algorithm in a validated, proven settlement."""
        net_sum = self.check_positions(net_positions)
        positions = list(net_positions)
        plan = list(payment_plan)
        direct_plan = direct_settlement(positions)

        notes: list[str] = []
        if net_sum:
            notes.append(
                f"Positions carried a rounding residual of "
                f"{currency.from_minor_units(net_sum)} (within tolerance)"
            )
        original_count = len(direct_plan)
        if original_count < len(plan):
            notes.append(
                "Direct plan collapsed sub-cent shares; baseline count raised "
                "to the optimized count"
            )
            original_count = len(plan)

        reduction = (
            (original_count - len(plan)) / original_count * 100
            if original_count
            else 0.0
        )
        metrics = OptimizationMetrics(
            original_payment_count=original_count,
            optimized_payment_count=len(plan),
            reduction_percentage=round(reduction, 2),
            total_amount_settled=currency.sum_amounts(i.amount for i in plan),
            unsettled_remainder=currency.from_minor_units(net_sum),
        )

        validation = self._validator.validate(positions, plan)
        settlement = OptimizedSettlement(
            settlement_id=settlement_id_for(positions, algorithm, session_id),
            session_id=session_id,
            algorithm=algorithm,
            net_positions=positions,
            payment_plan=plan,
            direct_plan=direct_plan,
            metrics=metrics,
            validation=validation,
            summary=self._summary(positions, plan, metrics),
            notes=notes,
        )
        proof = self._proof_engine.generate_proof(settlement)
        settlement = settlement.model_copy(
            update={
                "mathematical_proof": proof,
                "is_valid": validation.is_valid and proof.is_valid,
            }
        )
        logger.info(
            "Settlement %s (%s): %d payment(s) for %d player(s), valid=%s",
            settlement.settlement_id,
            algorithm,
            len(plan),
            len(positions),
            settlement.is_valid,
        )
        return settlement

    @staticmethod
    def _summary(
        positions: Sequence[NetPosition],
        plan: Sequence[PaymentInstruction],
        metrics: OptimizationMetrics,
    ) -> str:
        if not positions:
            return "No players to settle."
        if not plan:
            return "Everyone broke even; no payments are needed."
        payments = "payment" if len(plan) == 1 else "payments"
        text = (
            f"{len(plan)} {payments} settle "
            f"{currency.format_currency(metrics.total_amount_settled)} "
            f"across {len(positions)} players"
        )
        if metrics.original_payment_count > len(plan):
            text += (
                f" ({metrics.original_payment_count} with direct settlement, "
                f"{metrics.reduction_percentage:g}% fewer)"
            )
        return text + "."


def optimize_settlement(
    net_positions: Sequence[NetPosition],
    session_id: Optional[str] = None,
    config: Optional[Settings] = None,
) -> OptimizedSettlement:
    return SettlementOptimizer(config).optimize(net_positions, session_id)
