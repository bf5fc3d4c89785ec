"""Session domain model for PotSettle.

One document per session in the ``sessions`` collection. The pot is kept
as integer cents in MongoDB and exposed as a two-place Decimal.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field, field_serializer, field_validator

from potsettle.models.common import Money, PyObjectId, SessionStatus
from potsettle.services.currency import (
    from_minor_units,
    is_valid_amount,
    round_amount,
    to_minor_units,
)


class Session(BaseModel):
    """A single cash-game session and its pot."""

    model_config = {"populate_by_name": True, "arbitrary_types_allowed": True}

    id: Optional[PyObjectId] = Field(default=None, validation_alias="_id")
    name: str
    status: SessionStatus = SessionStatus.CREATED
    total_pot: Money = Decimal("0.00")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator("total_pot")
    @classmethod
    def pot_whole_cents(cls, value: Decimal) -> Decimal:
        """The pot is kept in integer cents: never negative, never a fraction of a cent."""
        if value < 0:
            raise ValueError("total_pot cannot be negative")
        if not is_valid_amount(value):
            raise ValueError(f"total_pot {value} has fractions of a cent")
        return round_amount(value)

    @field_serializer("id")
    def serialize_id(self, value: Optional[str], _info) -> Optional[str]:
        if value is not None:
            return str(value)
        return value

    @field_serializer("created_at", "started_at", "completed_at")
    def serialize_datetime(
        self, value: Optional[datetime], _info
    ) -> Optional[str]:
        if value is None:
            return None
        return value.isoformat()

    @property
    def accepts_transactions(self) -> bool:
        return self.status in (SessionStatus.CREATED, SessionStatus.ACTIVE)

    def to_mongo_dict(self) -> dict:
        """Convert model to a MongoDB-insertable dict, excluding None id."""
        return {
            "name": self.name,
            "status": str(self.status),
            "total_pot_cents": to_minor_units(self.total_pot),
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_mongo(cls, doc: dict[str, Any]) -> "Session":
        data = dict(doc)
        data["_id"] = str(data["_id"])
        data["total_pot"] = from_minor_units(data.pop("total_pot_cents", 0))
        return cls(**data)
