"""Pydantic models for PotSettle."""

from potsettle.models.common import (
    Money,
    PlayerStatus,
    PyObjectId,
    SessionStatus,
    SettlementAlgorithm,
    TransactionType,
    ValidationCode,
)
from potsettle.models.session import Session
from potsettle.models.player import PlayerLedgerEntry
from potsettle.models.transaction import Transaction
from potsettle.models.bank import BankBalance, CashOutDirection, EarlyCashOutQuote
from potsettle.models.validation import AuditCheck, ValidationResult
from potsettle.models.positions import NetPosition, PaymentInstruction
from potsettle.models.proof import (
    AlgorithmVerification,
    BalanceVerification,
    CalculationStep,
    MathematicalProof,
    PrecisionAnalysis,
    RoundingOperation,
    VerificationResult,
)
from potsettle.models.settlement import OptimizationMetrics, OptimizedSettlement
from potsettle.models.comparison import (
    AlternativeComparison,
    AlternativeScores,
    AlternativeSettlement,
    ComparisonMetric,
    SettlementRecommendation,
)

__all__ = [
    # Enums and types
    "Money",
    "PlayerStatus",
    "PyObjectId",
    "SessionStatus",
    "SettlementAlgorithm",
    "TransactionType",
    "ValidationCode",
    # Ledger models
    "Session",
    "PlayerLedgerEntry",
    "Transaction",
    "BankBalance",
    "CashOutDirection",
    "EarlyCashOutQuote",
    # Validation
    "AuditCheck",
    "ValidationResult",
    # Settlement
    "NetPosition",
    "PaymentInstruction",
    "OptimizationMetrics",
    "OptimizedSettlement",
    # Proof
    "AlgorithmVerification",
    "BalanceVerification",
    "CalculationStep",
    "MathematicalProof",
    "PrecisionAnalysis",
    "RoundingOperation",
    "VerificationResult",
    # Comparison
    "AlternativeComparison",
    "AlternativeScores",
    "AlternativeSettlement",
    "ComparisonMetric",
    "SettlementRecommendation",
]
