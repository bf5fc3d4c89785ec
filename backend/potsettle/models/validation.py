"""Validation result shared by transaction and settlement rule sets."""

from typing import Any, Optional

from pydantic import BaseModel, Field

from potsettle.models.common import ValidationCode


class AuditCheck(BaseModel):
    """One rule evaluated during validation, in evaluation order."""
    check: str
    passed: bool
    detail: Optional[str] = None


class ValidationResult(BaseModel):
    """Outcome of a validation pass.

    On failure ``code`` names the first failing rule and ``message`` is a
    human-readable explanation. On success ``data`` holds the normalised
    request (session_id, player_id, amount) for the persistence layer.
    """

    is_valid: bool
    code: ValidationCode = ValidationCode.OK
    title: Optional[str] = None
    message: Optional[str] = None
    suggested_action: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    data: Optional[dict[str, Any]] = None
    audit_trail: list[AuditCheck] = Field(default_factory=list)

    @classmethod
    def success(
        cls,
        data: Optional[dict[str, Any]] = None,
        audit_trail: Optional[list[AuditCheck]] = None,
    ) -> "ValidationResult":
        return cls(
            is_valid=True,
            code=ValidationCode.OK,
            data=data,
            audit_trail=audit_trail or [],
        )

    @classmethod
    def failure(
        cls,
        code: ValidationCode,
        title: str,
        message: str,
        suggested_action: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        audit_trail: Optional[list[AuditCheck]] = None,
    ) -> "ValidationResult":
        return cls(
            is_valid=False,
            code=code,
            title=title,
            message=message,
            suggested_action=suggested_action,
            details=details or {},
            audit_trail=audit_trail or [],
        )
