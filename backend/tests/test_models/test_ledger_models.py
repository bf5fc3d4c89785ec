"""Tests for ledger and settlement models."""

from decimal import Decimal

import pytest
from bson import ObjectId
from pydantic import ValidationError

from potsettle.models.common import PlayerStatus, SessionStatus
from potsettle.models.player import PlayerLedgerEntry
from potsettle.models.positions import NetPosition, PaymentInstruction
from potsettle.models.session import Session


class TestSession:

    def test_defaults(self):
        session = Session(name="Friday game")
        assert session.status == SessionStatus.CREATED
        assert session.total_pot == Decimal("0.00")
        assert session.accepts_transactions

    def test_negative_pot_rejected(self):
        with pytest.raises(ValidationError):
            Session(name="Friday game", total_pot="-0.01")

    def test_fractional_cent_pot_rejected(self):
        with pytest.raises(ValidationError):
            Session(name="Friday game", total_pot="75.005")

    def test_pot_normalised_to_cents(self):
        assert str(Session(name="Friday game", total_pot="75").total_pot) == "75.00"

    def test_completed_session_closed(self):
        session = Session(name="Friday game", status=SessionStatus.COMPLETED)
        assert not session.accepts_transactions

    def test_mongo_round_trip_uses_cents(self):
        session = Session(name="Friday game", total_pot="123.45")
        doc = session.to_mongo_dict()
        assert doc["total_pot_cents"] == 12345
        assert "total_pot" not in doc

        doc["_id"] = ObjectId()
        loaded = Session.from_mongo(doc)
        assert loaded.id == str(doc["_id"])
        assert loaded.total_pot == Decimal("123.45")

    def test_json_uses_id_and_string_money(self):
        session = Session(_id="abc", name="Friday game", total_pot=10)
        data = session.model_dump(mode="json")
        assert data["id"] == "abc"
        assert data["total_pot"] == "10.00"


class TestPlayerLedgerEntry:

    def test_balance_derived(self):
        player = PlayerLedgerEntry(
            session_id="s1", name="Alice", total_buy_ins="50", total_cash_outs="80"
        )
        assert player.current_chip_balance == Decimal("-30.00")
        assert player.is_active

    def test_inconsistent_balance_rejected(self):
        with pytest.raises(ValidationError):
            PlayerLedgerEntry(
                session_id="s1",
                name="Alice",
                total_buy_ins="50",
                total_cash_outs="20",
                current_chip_balance="25",
            )

    def test_cashed_out_not_active(self):
        player = PlayerLedgerEntry(
            session_id="s1", name="Alice", status=PlayerStatus.CASHED_OUT
        )
        assert not player.is_active

    def test_mongo_round_trip(self):
        player = PlayerLedgerEntry(
            session_id="s1", name="Alice", total_buy_ins="50.10", total_cash_outs="0.10"
        )
        doc = player.to_mongo_dict()
        assert doc["total_buy_ins_cents"] == 5010
        assert doc["total_cash_outs_cents"] == 10

        doc["_id"] = ObjectId()
        loaded = PlayerLedgerEntry.from_mongo(doc)
        assert loaded.current_chip_balance == Decimal("50.00")


class TestPositions:

    def test_net_position_ledger_flag(self):
        bare = NetPosition(player_id="A", player_name="A", net_amount="10")
        full = NetPosition(
            player_id="A",
            player_name="A",
            net_amount="10",
            total_buy_ins="20",
            total_cash_outs="30",
            final_chip_value="0",
        )
        assert not bare.has_ledger
        assert full.has_ledger

    @pytest.mark.parametrize("amount", ["0", "-5", "1.005"])
    def test_payment_amount_rules(self, amount):
        with pytest.raises(ValidationError):
            PaymentInstruction(
                from_player_id="B",
                from_player_name="Bob",
                to_player_id="A",
                to_player_name="Alice",
                amount=amount,
            )

    def test_describe(self):
        instruction = PaymentInstruction(
            from_player_id="B",
            from_player_name="Bob",
            to_player_id="A",
            to_player_name="Alice",
            amount="30",
        )
        assert instruction.describe() == "Bob pays Alice 30.00"
