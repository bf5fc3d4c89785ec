"""System and invariant errors.

Business-rule rejections are returned as ``ValidationResult`` data; the
exceptions here signal that an invariant was broken or an integrity
check failed, and are never retried.
"""

from enum import StrEnum
from typing import Any, Optional


class ErrorCode(StrEnum):
    """Closed set of system error codes."""
    UNBALANCED_POSITIONS = "UNBALANCED_POSITIONS"
    INVARIANT_VIOLATION = "INVARIANT_VIOLATION"
    SESSION_POT_WOULD_GO_NEGATIVE = "SESSION_POT_WOULD_GO_NEGATIVE"
    INTEGRITY_CHECK_FAILED = "INTEGRITY_CHECK_FAILED"
    SNAPSHOT_UNAVAILABLE = "SNAPSHOT_UNAVAILABLE"


class SettlementSystemError(Exception):
    """Base class for errors that abort a settlement operation."""

    code: ErrorCode = ErrorCode.INVARIANT_VIOLATION

    def __init__(
        self, message: str, details: Optional[dict[str, Any]] = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": str(self.code),
            "message": self.message,
            "details": self.details,
        }


class InvariantViolationError(SettlementSystemError):
    """Input or output broke a structural invariant (duplicate ids, bad amounts)."""
    code = ErrorCode.INVARIANT_VIOLATION


class UnbalancedPositionsError(InvariantViolationError):
    """Net positions do not sum to zero, or only one party is non-zero."""
    code = ErrorCode.UNBALANCED_POSITIONS


class NegativePotError(SettlementSystemError):
    """A pot mutation would have driven the session pot below zero."""
    code = ErrorCode.SESSION_POT_WOULD_GO_NEGATIVE


class ProofIntegrityError(SettlementSystemError):
    """A mathematical proof failed verification."""
    code = ErrorCode.INTEGRITY_CHECK_FAILED


class SnapshotUnavailableError(SettlementSystemError):
    """The persistence collaborator could not provide a consistent snapshot."""
    code = ErrorCode.SNAPSHOT_UNAVAILABLE
