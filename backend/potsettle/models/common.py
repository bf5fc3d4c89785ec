"""Common enums, shared types, and utilities for PotSettle models."""

from decimal import Decimal
from enum import StrEnum
from typing import Annotated, Any

from bson import ObjectId
from pydantic import BeforeValidator, PlainSerializer

from potsettle.services.currency import MAX_AMOUNT, to_decimal


def _validate_object_id(value: Any) -> str:
    """Validate and convert ObjectId or string to string representation."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, str):
        return value
    raise ValueError(f"Invalid ObjectId value: {value}")


def _validate_money(value: Any) -> Decimal:
    """Accept Decimal, int, float or numeric string; keep the exact value."""
    amount = to_decimal(value)
    if abs(amount) > MAX_AMOUNT:
        raise ValueError(f"Amount {amount} exceeds the supported magnitude {MAX_AMOUNT}")
    return amount


# Annotated type for MongoDB ObjectId fields.
# Accepts ObjectId or string on input, always serializes as string.
PyObjectId = Annotated[
    str,
    BeforeValidator(_validate_object_id),
    PlainSerializer(lambda v: str(v), return_type=str),
]

# Money values travel as strings in JSON ("12.50") so no client
# ever round-trips an amount through a binary float.
Money = Annotated[
    Decimal,
    BeforeValidator(_validate_money),
    PlainSerializer(lambda v: format(v, "f"), return_type=str, when_used="json"),
]


class SessionStatus(StrEnum):
    """Session lifecycle states."""
    CREATED = "created"
    ACTIVE = "active"
    COMPLETED = "completed"


class PlayerStatus(StrEnum):
    """Player participation states."""
    ACTIVE = "active"
    CASHED_OUT = "cashed_out"


class TransactionType(StrEnum):
    """Ledger transaction kinds."""
    BUY_IN = "buy_in"
    CASH_OUT = "cash_out"


class ValidationCode(StrEnum):
    """Closed set of business-rule outcomes shared by every validator."""
    OK = "OK"
    # Amount rules
    INVALID_AMOUNT = "INVALID_AMOUNT"
    AMOUNT_TOO_LOW = "AMOUNT_TOO_LOW"
    AMOUNT_TOO_HIGH = "AMOUNT_TOO_HIGH"
    # Session rules
    INVALID_SESSION_STATE = "INVALID_SESSION_STATE"
    SESSION_ALREADY_STARTED = "SESSION_ALREADY_STARTED"
    SESSION_ALREADY_COMPLETED = "SESSION_ALREADY_COMPLETED"
    INVALID_PLAYER_COUNT = "INVALID_PLAYER_COUNT"
    DUPLICATE_PLAYER_NAME = "DUPLICATE_PLAYER_NAME"
    # Player rules
    PLAYER_NOT_FOUND = "PLAYER_NOT_FOUND"
    INVALID_PLAYER_STATE = "INVALID_PLAYER_STATE"
    PLAYER_ALREADY_CASHED_OUT = "PLAYER_ALREADY_CASHED_OUT"
    # Pot rules
    INSUFFICIENT_SESSION_POT = "INSUFFICIENT_SESSION_POT"
    LAST_PLAYER_EXACT_AMOUNT_REQUIRED = "LAST_PLAYER_EXACT_AMOUNT_REQUIRED"
    # Undo rules
    TRANSACTION_NOT_FOUND = "TRANSACTION_NOT_FOUND"
    TRANSACTION_ALREADY_VOIDED = "TRANSACTION_ALREADY_VOIDED"
    UNDO_WINDOW_EXPIRED = "UNDO_WINDOW_EXPIRED"
    # Settlement rules
    UNBALANCED_SETTLEMENT = "UNBALANCED_SETTLEMENT"
    PLAYER_POSITION_MISMATCH = "PLAYER_POSITION_MISMATCH"
    FRACTIONAL_CENT_AMOUNT = "FRACTIONAL_CENT_AMOUNT"
    INVALID_PAYMENT_INSTRUCTION = "INVALID_PAYMENT_INSTRUCTION"


class SettlementAlgorithm(StrEnum):
    """Settlement plan generators."""
    GREEDY = "greedy"
    DIRECT = "direct"
    HUB_BASED = "hub_based"
    BALANCED_FLOW = "balanced_flow"
