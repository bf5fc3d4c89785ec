"""Tests for LedgerService against an in-memory MongoDB."""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from bson import ObjectId
from fastapi import HTTPException

from potsettle.dal.players_dal import PlayerDAL
from potsettle.dal.sessions_dal import SessionDAL
from potsettle.dal.transactions_dal import TransactionDAL
from potsettle.errors import InvariantViolationError
from potsettle.models.common import (
    PlayerStatus,
    SessionStatus,
    TransactionType,
    ValidationCode,
)
from potsettle.models.bank import CashOutDirection
from potsettle.services import ledger_service
from potsettle.services.ledger_service import LedgerService, session_lock


@pytest.fixture
def service(test_db):
    return LedgerService(
        SessionDAL(test_db), PlayerDAL(test_db), TransactionDAL(test_db)
    )


async def _session_with_players(service, *names):
    session = await service.create_session("Friday game")
    players = []
    for name in names:
        result, player = await service.add_player(session.id, name)
        assert result.is_valid
        players.append(player)
    return session, players


@pytest.mark.asyncio
class TestSessionLifecycle:

    async def test_create_session(self, service):
        session = await service.create_session("  Friday game ")
        assert session.id is not None
        assert session.name == "Friday game"
        assert session.status == SessionStatus.CREATED
        assert session.total_pot == Decimal("0.00")

    async def test_unknown_session_is_404(self, service):
        with pytest.raises(HTTPException) as exc:
            await service.get_session_detail("000000000000000000000000")
        assert exc.value.status_code == 404

    async def test_duplicate_player_name_rejected(self, service):
        session, _ = await _session_with_players(service, "Alice")
        result, player = await service.add_player(session.id, "alice")
        assert not result.is_valid
        assert result.code == ValidationCode.DUPLICATE_PLAYER_NAME
        assert player is None

    async def test_start_needs_two_players(self, service):
        session, _ = await _session_with_players(service, "Alice")
        result, stored = await service.start_session(session.id)
        assert not result.is_valid
        assert result.code == ValidationCode.INVALID_PLAYER_COUNT
        assert stored.status == SessionStatus.CREATED

    async def test_start_session(self, service):
        session, _ = await _session_with_players(service, "Alice", "Bob")
        result, stored = await service.start_session(session.id)
        assert result.is_valid
        assert stored.status == SessionStatus.ACTIVE
        assert stored.started_at is not None


@pytest.mark.asyncio
class TestTransactions:

    async def test_buy_in_updates_pot_and_player(self, service):
        session, (alice, _) = await _session_with_players(service, "Alice", "Bob")

        result, transaction = await service.record_buy_in(session.id, alice.id, "50")

        assert result.is_valid
        assert transaction.type == TransactionType.BUY_IN
        assert transaction.amount == Decimal("50.00")
        assert transaction.pot_after == Decimal("50.00")

        detail = await service.get_session_detail(session.id)
        assert detail["session"].total_pot == Decimal("50.00")
        assert detail["session"].status == SessionStatus.ACTIVE
        stored = detail["players"][0]
        assert stored.total_buy_ins == Decimal("50.00")
        assert stored.current_chip_balance == Decimal("50.00")

    async def test_float_amounts_do_not_drift(self, service):
        session, (alice, _) = await _session_with_players(service, "Alice", "Bob")
        for _ in range(3):
            await service.record_buy_in(session.id, alice.id, 10.1)
        detail = await service.get_session_detail(session.id)
        assert detail["session"].total_pot == Decimal("30.30")

    async def test_rejected_buy_in_changes_nothing(self, service):
        session, (alice, _) = await _session_with_players(service, "Alice", "Bob")
        result, transaction = await service.record_buy_in(session.id, alice.id, "1.00")
        assert result.code == ValidationCode.AMOUNT_TOO_LOW
        assert transaction is None
        detail = await service.get_session_detail(session.id)
        assert detail["session"].total_pot == Decimal("0.00")
        assert await service.list_transactions(session.id) == []

    async def test_cash_out_reduces_pot(self, service):
        session, (alice, bob) = await _session_with_players(service, "Alice", "Bob")
        await service.record_buy_in(session.id, alice.id, "50")
        await service.record_buy_in(session.id, bob.id, "50")

        result, transaction = await service.record_cash_out(session.id, alice.id, "30")

        assert result.is_valid
        assert transaction.pot_after == Decimal("70.00")
        detail = await service.get_session_detail(session.id)
        assert detail["session"].total_pot == Decimal("70.00")
        stored = detail["players"][0]
        assert stored.total_cash_outs == Decimal("30.00")
        assert stored.current_chip_balance == Decimal("20.00")
        assert stored.status == PlayerStatus.ACTIVE

    async def test_cash_out_completely_marks_player(self, service):
        session, (alice, bob) = await _session_with_players(service, "Alice", "Bob")
        await service.record_buy_in(session.id, alice.id, "50")
        await service.record_buy_in(session.id, bob.id, "50")

        await service.record_cash_out(
            session.id, alice.id, "30", cash_out_completely=True
        )
        result, _ = await service.record_cash_out(session.id, alice.id, "10")

        assert result.code == ValidationCode.PLAYER_ALREADY_CASHED_OUT
        detail = await service.get_session_detail(session.id)
        assert detail["players"][0].status == PlayerStatus.CASHED_OUT

    async def test_cash_out_beyond_pot_rejected(self, service):
        session, (alice, bob) = await _session_with_players(service, "Alice", "Bob")
        await service.record_buy_in(session.id, alice.id, "50")
        await service.record_buy_in(session.id, bob.id, "50")

        result, transaction = await service.record_cash_out(session.id, alice.id, "150")

        assert result.code == ValidationCode.INSUFFICIENT_SESSION_POT
        assert result.details["available_amount"] == "100.00"
        assert transaction is None

    async def test_last_player_must_take_whole_pot(self, service):
        session, (alice, bob) = await _session_with_players(service, "Alice", "Bob")
        await service.record_buy_in(session.id, alice.id, "50")
        await service.record_buy_in(session.id, bob.id, "50")
        await service.record_cash_out(session.id, alice.id, "80")

        short, _ = await service.record_cash_out(session.id, bob.id, "15")
        assert short.code == ValidationCode.LAST_PLAYER_EXACT_AMOUNT_REQUIRED
        assert short.details["required_amount"] == "20.00"

        exact, _ = await service.record_cash_out(session.id, bob.id, "20")
        assert exact.is_valid
        detail = await service.get_session_detail(session.id)
        assert detail["session"].total_pot == Decimal("0.00")
        assert detail["players"][1].status == PlayerStatus.CASHED_OUT

    async def test_concurrent_cash_outs_never_overdraw(self, service):
        session, (alice, bob, carol) = await _session_with_players(
            service, "Alice", "Bob", "Carol"
        )
        for player in (alice, bob, carol):
            await service.record_buy_in(session.id, player.id, "50")

        results = await asyncio.gather(
            service.record_cash_out(session.id, alice.id, "100"),
            service.record_cash_out(session.id, bob.id, "100"),
        )

        accepted = [r for r, _ in results if r.is_valid]
        rejected = [r for r, _ in results if not r.is_valid]
        assert len(accepted) == 1
        assert rejected[0].code == ValidationCode.INSUFFICIENT_SESSION_POT
        detail = await service.get_session_detail(session.id)
        assert detail["session"].total_pot == Decimal("50.00")

    async def test_transactions_listed_in_order(self, service):
        session, (alice, bob) = await _session_with_players(service, "Alice", "Bob")
        await service.record_buy_in(session.id, alice.id, "50")
        await service.record_buy_in(session.id, bob.id, "25")
        await service.record_cash_out(session.id, alice.id, "40")

        transactions = await service.list_transactions(session.id)

        assert [t.type for t in transactions] == [
            TransactionType.BUY_IN, TransactionType.BUY_IN, TransactionType.CASH_OUT,
        ]
        assert [t.pot_after for t in transactions] == [
            Decimal("50.00"), Decimal("75.00"), Decimal("35.00"),
        ]


@pytest.mark.asyncio
class TestSettlement:

    async def _played_session(self, service):
        session, players = await _session_with_players(service, "Alice", "Bob", "Carol")
        alice, bob, carol = players
        for player in players:
            await service.record_buy_in(session.id, player.id, "50")
        await service.record_cash_out(session.id, alice.id, "90", cash_out_completely=True)
        return session, alice, bob, carol

    async def test_net_positions_need_final_chips(self, service):
        session, *_ = await self._played_session(service)
        with pytest.raises(InvariantViolationError):
            await service.get_net_positions(session.id)

    async def test_settle_session(self, service):
        session, alice, bob, carol = await self._played_session(service)

        settlement = await service.settle_session(
            session.id, {bob.id: "60", carol.id: "0"}
        )

        nets = {p.player_name: p.net_amount for p in settlement.net_positions}
        assert nets == {
            "Alice": Decimal("40.00"),
            "Bob": Decimal("10.00"),
            "Carol": Decimal("-50.00"),
        }
        assert settlement.is_valid
        assert settlement.mathematical_proof.is_valid
        assert len(settlement.payment_plan) == 2
        assert all(i.from_player_name == "Carol" for i in settlement.payment_plan)

        detail = await service.get_session_detail(session.id)
        assert detail["session"].status == SessionStatus.COMPLETED
        assert detail["session"].completed_at is not None

    async def test_completed_session_rejects_transactions(self, service):
        session, alice, bob, carol = await self._played_session(service)
        await service.settle_session(session.id, {bob.id: "60", carol.id: "0"})

        result, _ = await service.record_buy_in(session.id, bob.id, "20")

        assert result.code == ValidationCode.SESSION_ALREADY_COMPLETED

    async def test_compare_and_select_alternative(self, service):
        session, alice, bob, carol = await self._played_session(service)
        finals = {bob.id: "60", carol.id: "0"}

        comparison = await service.compare_session_alternatives(session.id, finals)
        assert comparison.session_id == session.id
        assert comparison.recommendation is not None

        settlement = await service.select_session_alternative(
            session.id, "hub_based", finals
        )
        assert settlement.is_valid
        assert str(settlement.algorithm) == "hub_based"


@pytest.mark.asyncio
class TestUndo:

    async def test_undo_buy_in_restores_pot_and_player(self, service):
        session, (alice, bob) = await _session_with_players(service, "Alice", "Bob")
        _, mistake = await service.record_buy_in(session.id, alice.id, "50")
        await service.record_buy_in(session.id, bob.id, "20")

        result, voided = await service.undo_transaction(
            session.id, mistake.id, "wrong player"
        )

        assert result.is_valid
        assert voided.is_voided
        assert voided.void_reason == "wrong player"
        detail = await service.get_session_detail(session.id)
        assert detail["session"].total_pot == Decimal("20.00")
        assert detail["players"][0].total_buy_ins == Decimal("0.00")
        transactions = await service.list_transactions(session.id)
        assert [t.is_voided for t in transactions] == [True, False]

    async def test_undo_cash_out_reactivates_player(self, service):
        session, (alice, bob) = await _session_with_players(service, "Alice", "Bob")
        await service.record_buy_in(session.id, alice.id, "50")
        await service.record_buy_in(session.id, bob.id, "50")
        _, cash_out = await service.record_cash_out(
            session.id, alice.id, "30", cash_out_completely=True
        )

        result, _ = await service.undo_transaction(session.id, cash_out.id)

        assert result.is_valid
        detail = await service.get_session_detail(session.id)
        assert detail["session"].total_pot == Decimal("100.00")
        restored = detail["players"][0]
        assert restored.status == PlayerStatus.ACTIVE
        assert restored.total_cash_outs == Decimal("0.00")
        assert restored.cashed_out_at is None

    async def test_undo_twice_rejected(self, service):
        session, (alice, _) = await _session_with_players(service, "Alice", "Bob")
        _, buy_in = await service.record_buy_in(session.id, alice.id, "50")
        await service.undo_transaction(session.id, buy_in.id)

        result, transaction = await service.undo_transaction(session.id, buy_in.id)

        assert result.code == ValidationCode.TRANSACTION_ALREADY_VOIDED
        assert transaction is None
        detail = await service.get_session_detail(session.id)
        assert detail["session"].total_pot == Decimal("0.00")

    async def test_undo_window_expired(self, service, test_db):
        session, (alice, _) = await _session_with_players(service, "Alice", "Bob")
        _, buy_in = await service.record_buy_in(session.id, alice.id, "50")
        await test_db["transactions"].update_one(
            {"_id": ObjectId(buy_in.id)},
            {"$set": {"created_at": datetime.now(timezone.utc) - timedelta(seconds=31)}},
        )

        result, _ = await service.undo_transaction(session.id, buy_in.id)

        assert result.code == ValidationCode.UNDO_WINDOW_EXPIRED
        assert result.details["window_seconds"] == 30
        detail = await service.get_session_detail(session.id)
        assert detail["session"].total_pot == Decimal("50.00")

    async def test_undo_unknown_transaction(self, service):
        session, _ = await _session_with_players(service, "Alice", "Bob")
        result, _ = await service.undo_transaction(
            session.id, "000000000000000000000000"
        )
        assert result.code == ValidationCode.TRANSACTION_NOT_FOUND

    async def test_undo_buy_in_already_cashed_out_rejected(self, service):
        session, (alice, bob) = await _session_with_players(service, "Alice", "Bob")
        _, buy_in = await service.record_buy_in(session.id, alice.id, "50")
        await service.record_buy_in(session.id, bob.id, "50")
        await service.record_cash_out(session.id, alice.id, "80")

        result, _ = await service.undo_transaction(session.id, buy_in.id)

        assert result.code == ValidationCode.INVALID_PLAYER_STATE
        detail = await service.get_session_detail(session.id)
        assert detail["session"].total_pot == Decimal("20.00")

    async def test_undo_after_settlement_rejected(self, service):
        session, (alice, bob) = await _session_with_players(service, "Alice", "Bob")
        _, buy_in = await service.record_buy_in(session.id, alice.id, "50")
        await service.record_buy_in(session.id, bob.id, "50")
        await service.settle_session(session.id, {alice.id: "70", bob.id: "30"})

        result, _ = await service.undo_transaction(session.id, buy_in.id)

        assert result.code == ValidationCode.SESSION_ALREADY_COMPLETED


@pytest.mark.asyncio
class TestBank:

    async def _game(self, service):
        session, (alice, bob) = await _session_with_players(service, "Alice", "Bob")
        await service.record_buy_in(session.id, alice.id, "50")
        await service.record_buy_in(session.id, bob.id, "50")
        return session, alice, bob

    async def test_bank_balance(self, service):
        session, alice, _ = await self._game(service)
        await service.record_cash_out(session.id, alice.id, "30")

        bank = await service.calculate_bank_balance(session.id)

        assert bank.total_buy_ins == Decimal("100.00")
        assert bank.total_cash_outs == Decimal("30.00")
        assert bank.available_for_cash_out == Decimal("70.00")
        assert bank.session_pot == Decimal("70.00")
        assert bank.total_chips_in_play == Decimal("70.00")
        assert bank.discrepancy == Decimal("0.00")
        assert bank.is_balanced

    async def test_voided_transactions_leave_the_bank(self, service):
        session, alice, _ = await self._game(service)
        _, extra = await service.record_buy_in(session.id, alice.id, "25")
        await service.undo_transaction(session.id, extra.id)

        bank = await service.calculate_bank_balance(session.id)

        assert bank.total_buy_ins == Decimal("100.00")
        assert bank.is_balanced

    async def test_pot_out_of_step_with_ledger(self, service, test_db):
        session, *_ = await self._game(service)
        await test_db["sessions"].update_one(
            {"_id": ObjectId(session.id)}, {"$inc": {"total_pot_cents": 500}}
        )

        bank = await service.calculate_bank_balance(session.id)

        assert bank.discrepancy == Decimal("5.00")
        assert not bank.is_balanced

    async def test_early_cash_out_winner(self, service):
        session, alice, _ = await self._game(service)

        quote = await service.calculate_early_cash_out(session.id, alice.id, "80")

        assert quote.cash_out_amount == Decimal("80.00")
        assert quote.net_position == Decimal("30.00")
        assert quote.direction == CashOutDirection.PAYMENT_TO_PLAYER
        assert not quote.is_capped
        assert quote.bank_balance_before == Decimal("100.00")
        assert quote.bank_balance_after == Decimal("20.00")
        assert quote.is_valid
        detail = await service.get_session_detail(session.id)
        assert detail["session"].total_pot == Decimal("100.00")

    async def test_early_cash_out_capped_by_bank(self, service):
        session, alice, bob = await self._game(service)
        await service.record_cash_out(session.id, bob.id, "60")

        quote = await service.calculate_early_cash_out(session.id, alice.id, "70")

        assert quote.is_capped
        assert quote.cash_out_amount == Decimal("40.00")
        assert quote.shortfall == Decimal("30.00")
        assert quote.bank_balance_after == Decimal("0.00")
        assert quote.net_position == Decimal("20.00")
        assert "$30.00 stays owed to Alice" in quote.messages[0]

    async def test_early_cash_out_loser(self, service):
        session, alice, _ = await self._game(service)
        quote = await service.calculate_early_cash_out(session.id, alice.id, "20")
        assert quote.direction == CashOutDirection.PAYMENT_FROM_PLAYER
        assert quote.net_position == Decimal("-30.00")
        assert quote.cash_out_amount == Decimal("20.00")

    async def test_early_cash_out_flags_unbalanced_bank(self, service, test_db):
        session, alice, _ = await self._game(service)
        await test_db["sessions"].update_one(
            {"_id": ObjectId(session.id)}, {"$inc": {"total_pot_cents": -500}}
        )

        quote = await service.calculate_early_cash_out(session.id, alice.id, "50")

        assert not quote.is_valid
        assert quote.bank_balance_before == Decimal("95.00")
        assert "out of balance" in quote.messages[-1]

    @pytest.mark.parametrize("chips", ["-1", "lots"])
    async def test_early_cash_out_bad_chip_value(self, service, chips):
        session, alice, _ = await self._game(service)
        with pytest.raises(InvariantViolationError):
            await service.calculate_early_cash_out(session.id, alice.id, chips)

    async def test_early_cash_out_for_cashed_out_player(self, service):
        session, alice, _ = await self._game(service)
        await service.record_cash_out(
            session.id, alice.id, "10", cash_out_completely=True
        )
        with pytest.raises(InvariantViolationError):
            await service.calculate_early_cash_out(session.id, alice.id, "10")

    async def test_early_cash_out_unknown_player_404(self, service):
        session, *_ = await self._game(service)
        with pytest.raises(HTTPException) as exc:
            await service.calculate_early_cash_out(
                session.id, "000000000000000000000000", "10"
            )
        assert exc.value.status_code == 404


@pytest.mark.asyncio
class TestSessionLocks:

    async def test_lock_dropped_once_released(self, service):
        session, (alice, _) = await _session_with_players(service, "Alice", "Bob")
        await service.record_buy_in(session.id, alice.id, "50")
        assert session.id not in ledger_service._session_locks

    async def test_concurrent_callers_share_a_lock(self):
        held = session_lock("s1")
        async with held:
            assert session_lock("s1") is held
            assert "s1" in ledger_service._session_locks
        del held
        assert "s1" not in ledger_service._session_locks
