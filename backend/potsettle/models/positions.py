"""Settlement inputs and outputs: net positions and payment instructions."""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, field_validator

from potsettle.models.common import Money
from potsettle.services.currency import is_valid_amount


class NetPosition(BaseModel):
    """A player's end-of-session net result.

    Positive ``net_amount`` means the player is owed money, negative means
    they owe. The ledger figures are optional and, when present, let the
    proof engine reconcile ``net = cash_outs + final_chips - buy_ins``.
    """

    model_config = {"frozen": True}

    player_id: str
    player_name: str
    net_amount: Money
    total_buy_ins: Optional[Money] = None
    total_cash_outs: Optional[Money] = None
    final_chip_value: Optional[Money] = None

    @property
    def has_ledger(self) -> bool:
        return self.total_buy_ins is not None and self.total_cash_outs is not None


class PaymentInstruction(BaseModel):
    """One transfer of money from a debtor to a creditor."""

    model_config = {"frozen": True}

    from_player_id: str
    from_player_name: str
    to_player_id: str
    to_player_name: str
    amount: Money

    @field_validator("amount")
    @classmethod
    def amount_positive_whole_cents(cls, value: Decimal) -> Decimal:
        if value <= 0:
            raise ValueError("payment amount must be positive")
        if not is_valid_amount(value):
            raise ValueError("payment amount must be whole cents")
        return value

    def describe(self) -> str:
        return f"{self.from_player_name} pays {self.to_player_name} {self.amount:.2f}"
