"""Ledger transaction model (``transactions`` collection)."""

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field, field_serializer

from potsettle.models.common import Money, PyObjectId, TransactionType
from potsettle.services.currency import from_minor_units, to_minor_units


class Transaction(BaseModel):
    """An accepted buy-in or cash-out. Rejected requests are never stored.

    An undone transaction stays in the ledger with ``is_voided`` set.
    """

    model_config = {"populate_by_name": True, "arbitrary_types_allowed": True}

    id: Optional[PyObjectId] = Field(default=None, validation_alias="_id")
    session_id: str
    player_id: str
    type: TransactionType
    amount: Money
    pot_after: Money
    created_by: str = "organizer"
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    is_voided: bool = False
    voided_at: Optional[datetime] = None
    void_reason: Optional[str] = None

    @field_serializer("id")
    def serialize_id(self, value: Optional[str], _info) -> Optional[str]:
        if value is not None:
            return str(value)
        return value

    @field_serializer("created_at", "voided_at")
    def serialize_datetime(
        self, value: Optional[datetime], _info
    ) -> Optional[str]:
        if value is None:
            return None
        return value.isoformat()

    def to_mongo_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "player_id": self.player_id,
            "type": str(self.type),
            "amount_cents": to_minor_units(self.amount),
            "pot_after_cents": to_minor_units(self.pot_after),
            "created_by": self.created_by,
            "created_at": self.created_at,
            "is_voided": self.is_voided,
            "voided_at": self.voided_at,
            "void_reason": self.void_reason,
        }

    @classmethod
    def from_mongo(cls, doc: dict[str, Any]) -> "Transaction":
        data = dict(doc)
        data["_id"] = str(data["_id"])
        data["amount"] = from_minor_units(data.pop("amount_cents"))
        data["pot_after"] = from_minor_units(data.pop("pot_after_cents"))
        return cls(**data)
