"""Bank balance and mid-game cash-out quote models."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, Field

from potsettle.models.common import Money


class CashOutDirection(StrEnum):
    """Which way money flows for a player at final settlement."""
    PAYMENT_TO_PLAYER = "payment_to_player"
    PAYMENT_FROM_PLAYER = "payment_from_player"
    EVEN = "even"


class BankBalance(BaseModel):
    """Cash the session holds, cross-checked three ways.

    ``available_for_cash_out`` comes from the transaction ledger (voided
    entries excluded). ``discrepancy`` is the stored pot minus that figure.
    The bank is balanced when the discrepancy is within tolerance and the
    player totals agree with the ledger to the cent.
    """

    model_config = {"frozen": True}

    session_id: str
    total_buy_ins: Money
    total_cash_outs: Money
    total_chips_in_play: Money
    available_for_cash_out: Money
    session_pot: Money
    discrepancy: Money = Decimal("0.00")
    player_totals_match: bool = True
    is_balanced: bool


class EarlyCashOutQuote(BaseModel):
    """What a player leaving mid-game can take from the bank right now.

    ``cash_out_amount`` is the chip value capped by the bank. Any
    ``shortfall`` stays owed to the player through final settlement. A
    quote changes nothing; recording the cash-out is a separate call.
    """

    model_config = {"frozen": True}

    session_id: str
    player_id: str
    player_name: str
    current_chip_value: Money
    total_buy_ins: Money
    total_cash_outs: Money
    net_position: Money
    cash_out_amount: Money
    shortfall: Money = Decimal("0.00")
    direction: CashOutDirection
    is_capped: bool = False
    bank_balance_before: Money
    bank_balance_after: Money
    is_valid: bool
    messages: list[str] = Field(default_factory=list)
    calculated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
