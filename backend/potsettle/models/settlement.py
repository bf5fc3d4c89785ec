"""Optimized settlement model."""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from potsettle.models.common import Money, SettlementAlgorithm
from potsettle.models.positions import NetPosition, PaymentInstruction
from potsettle.models.proof import MathematicalProof
from potsettle.models.validation import ValidationResult


class OptimizationMetrics(BaseModel):
    model_config = {"frozen": True}

    original_payment_count: int
    optimized_payment_count: int
    reduction_percentage: float
    total_amount_settled: Money
    unsettled_remainder: Money = Decimal("0.00")


class OptimizedSettlement(BaseModel):
    """Immutable result of settling a set of net positions.

    ``settlement_id`` is derived from the input positions and algorithm, so
    settling the same positions again yields the same id and plan.
    """

    model_config = {"frozen": True}

    settlement_id: str
    session_id: Optional[str] = None
    algorithm: SettlementAlgorithm = SettlementAlgorithm.GREEDY
    net_positions: list[NetPosition]
    payment_plan: list[PaymentInstruction]
    direct_plan: list[PaymentInstruction]
    metrics: OptimizationMetrics
    validation: Optional[ValidationResult] = None
    mathematical_proof: Optional[MathematicalProof] = None
    is_valid: bool = False
    summary: str = ""
    notes: list[str] = Field(default_factory=list)

    def describe_plan(self) -> list[str]:
        return [instruction.describe() for instruction in self.payment_plan]
