"""Player ledger model for PotSettle.

One document per player per session in the ``players`` collection.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field, field_serializer, model_validator

from potsettle.models.common import Money, PlayerStatus, PyObjectId
from potsettle.services.currency import (
    from_minor_units,
    subtract,
    to_minor_units,
)


class PlayerLedgerEntry(BaseModel):
    """A player's running totals within one session.

    ``current_chip_balance`` always equals buy-ins minus cash-outs. It goes
    negative for a player who cashed out more than they bought in.
    """

    model_config = {"populate_by_name": True, "arbitrary_types_allowed": True}

    id: Optional[PyObjectId] = Field(default=None, validation_alias="_id")
    session_id: str
    name: str
    total_buy_ins: Money = Decimal("0.00")
    total_cash_outs: Money = Decimal("0.00")
    current_chip_balance: Optional[Money] = None
    status: PlayerStatus = PlayerStatus.ACTIVE
    joined_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    cashed_out_at: Optional[datetime] = None

    @model_validator(mode="after")
    def check_balance_invariant(self) -> "PlayerLedgerEntry":
        expected = subtract(self.total_buy_ins, self.total_cash_outs)
        if self.current_chip_balance is None:
            self.current_chip_balance = expected
        elif to_minor_units(self.current_chip_balance) != to_minor_units(expected):
            raise ValueError(
                f"current_chip_balance {self.current_chip_balance} does not "
                f"equal buy-ins minus cash-outs ({expected})"
            )
        return self

    @field_serializer("id")
    def serialize_id(self, value: Optional[str], _info) -> Optional[str]:
        if value is not None:
            return str(value)
        return value

    @field_serializer("joined_at", "cashed_out_at")
    def serialize_datetime(
        self, value: Optional[datetime], _info
    ) -> Optional[str]:
        if value is None:
            return None
        return value.isoformat()

    @property
    def is_active(self) -> bool:
        return self.status == PlayerStatus.ACTIVE

    def to_mongo_dict(self) -> dict:
        """Convert model to a MongoDB-insertable dict, excluding None id."""
        return {
            "session_id": self.session_id,
            "name": self.name,
            "total_buy_ins_cents": to_minor_units(self.total_buy_ins),
            "total_cash_outs_cents": to_minor_units(self.total_cash_outs),
            "status": str(self.status),
            "joined_at": self.joined_at,
            "cashed_out_at": self.cashed_out_at,
        }

    @classmethod
    def from_mongo(cls, doc: dict[str, Any]) -> "PlayerLedgerEntry":
        data = dict(doc)
        data["_id"] = str(data["_id"])
        data["total_buy_ins"] = from_minor_units(
            data.pop("total_buy_ins_cents", 0)
        )
        data["total_cash_outs"] = from_minor_units(
            data.pop("total_cash_outs_cents", 0)
        )
        return cls(**data)
