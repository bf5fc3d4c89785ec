"""Mathematical proof models.

A proof embeds the inputs it was computed from (net positions and payment
plan) so that it can be re-verified on its own, long after the session.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field, field_serializer

from potsettle.models.common import Money, SettlementAlgorithm
from potsettle.models.positions import NetPosition, PaymentInstruction


class CalculationStep(BaseModel):
    """A single recomputed fact about the settlement."""

    model_config = {"frozen": True}

    step_number: int
    operation: str
    description: str
    formula: str
    inputs: dict[str, str] = Field(default_factory=dict)
    result: str
    expected: Optional[str] = None
    tolerance: str = "0.01"
    passed: bool


class BalanceVerification(BaseModel):
    model_config = {"frozen": True}

    total_debits: Money
    total_credits: Money
    net_balance: Money
    total_payments: Money
    tolerance: Money
    is_balanced: bool


class RoundingOperation(BaseModel):
    model_config = {"frozen": True}

    subject: str
    original_value: str
    rounded_value: Money
    precision_loss: Money


class PrecisionAnalysis(BaseModel):
    model_config = {"frozen": True}

    decimal_precision: int
    rounding_operations: list[RoundingOperation] = Field(default_factory=list)
    cumulative_precision_loss: Money
    max_allowed_loss: Money
    is_within_tolerance: bool


class AlgorithmVerification(BaseModel):
    """Agreement between the primary plan and an independently computed one."""

    model_config = {"frozen": True}

    algorithm: SettlementAlgorithm
    transaction_count: int
    total_amount: Money
    final_balances_match: bool
    max_discrepancy: Money


class MathematicalProof(BaseModel):
    """Verifiable record that a settlement is balanced and exact."""

    model_config = {"frozen": True}

    proof_id: str
    settlement_id: str
    session_id: Optional[str] = None
    algorithm: SettlementAlgorithm
    generated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    net_positions: list[NetPosition]
    payment_plan: list[PaymentInstruction]
    calculation_steps: list[CalculationStep]
    balance_verification: BalanceVerification
    precision_analysis: PrecisionAnalysis
    algorithm_verifications: list[AlgorithmVerification] = Field(
        default_factory=list
    )
    human_readable_summary: str
    checksum: str = ""
    signature: str = ""
    is_valid: bool = False

    @field_serializer("generated_at")
    def serialize_datetime(self, value: datetime, _info) -> str:
        return value.isoformat()

    def content_dict(self) -> dict[str, Any]:
        """JSON-compatible content covered by the checksum."""
        return self.model_dump(
            mode="json", exclude={"checksum", "signature", "is_valid"}
        )


class VerificationResult(BaseModel):
    """Outcome of independently re-verifying a proof."""

    proof_id: Optional[str] = None
    checksum_valid: bool = False
    signature_valid: bool = False
    steps_valid: bool = False
    balance_valid: bool = False
    consensus_valid: bool = False
    precision_valid: bool = False
    is_valid: bool = False
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
