"""Alternative settlement comparison models."""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field, field_serializer

from potsettle.models.common import Money, SettlementAlgorithm
from potsettle.models.positions import PaymentInstruction


class AlternativeScores(BaseModel):
    """Sub-scores and weighted overall score, each on a 0-10 scale."""
    simplicity: float
    fairness: float
    efficiency: float
    user_friendliness: float
    overall: float


class AlternativeSettlement(BaseModel):
    option_id: str
    name: str
    algorithm: SettlementAlgorithm
    description: str
    payment_plan: list[PaymentInstruction]
    transaction_count: int
    total_amount: Money
    optimization_percentage: float
    scores: AlternativeScores
    pros: list[str] = Field(default_factory=list)
    cons: list[str] = Field(default_factory=list)
    is_valid: bool


class ComparisonMetric(BaseModel):
    """One row of the comparison matrix: a metric across every option."""
    metric: str
    values: dict[str, float]
    best_option_id: str


class SettlementRecommendation(BaseModel):
    option_id: str
    algorithm: SettlementAlgorithm
    score: float
    reason: str
    complexity: str
    dispute_risk: str


class AlternativeComparison(BaseModel):
    comparison_id: str
    session_id: Optional[str] = None
    generated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    alternatives: list[AlternativeSettlement]
    comparison_matrix: list[ComparisonMetric]
    recommendation: Optional[SettlementRecommendation] = None
    summary: str

    @field_serializer("generated_at")
    def serialize_datetime(self, value: datetime, _info) -> str:
        return value.isoformat()

    def get_option(self, option_id: str) -> Optional[AlternativeSettlement]:
        for option in self.alternatives:
            if option.option_id == option_id:
                return option
        return None
