"""Session ledger business logic service.

Owns the session lifecycle (created -> active -> completed), records
buy-ins and cash-outs (undoable for a short window), quotes early
cash-outs against the bank, and produces the end-of-session settlement.
Every transaction is validated and committed inside one per-session
critical section, so two concurrent cash-outs can never both pass the
pot check against the same stale pot.
"""

import asyncio
import logging
import weakref
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from fastapi import HTTPException, status

from potsettle.config import Settings, settings as default_settings
from potsettle.dal.players_dal import PlayerDAL
from potsettle.dal.sessions_dal import SessionDAL
from potsettle.dal.transactions_dal import TransactionDAL
from potsettle.errors import (
    InvariantViolationError,
    NegativePotError,
    SnapshotUnavailableError,
)
from potsettle.models.bank import BankBalance, CashOutDirection, EarlyCashOutQuote
from potsettle.models.common import SessionStatus, TransactionType
from potsettle.models.comparison import AlternativeComparison
from potsettle.models.player import PlayerLedgerEntry
from potsettle.models.positions import NetPosition
from potsettle.models.session import Session
from potsettle.models.settlement import OptimizedSettlement
from potsettle.models.transaction import Transaction
from potsettle.models.validation import ValidationResult
from potsettle.services import currency
from potsettle.services.comparator import SettlementComparator
from potsettle.services.settlement_optimizer import (
    SettlementOptimizer,
    net_positions_from_ledger,
)
from potsettle.services.validation_engine import TransactionValidator

logger = logging.getLogger("potsettle.services.ledger")

# One lock per session id, shared by every service instance in the process.
# An entry lives only while some coroutine holds or waits on the lock.
_session_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
    weakref.WeakValueDictionary()
)


def session_lock(session_id: str) -> asyncio.Lock:
    lock = _session_locks.get(session_id)
    if lock is None:
        lock = asyncio.Lock()
        _session_locks[session_id] = lock
    return lock


class LedgerService:
    """Service layer for session ledgers and settlement."""

    def __init__(
        self,
        session_dal: SessionDAL,
        player_dal: PlayerDAL,
        transaction_dal: TransactionDAL,
        config: Optional[Settings] = None,
    ) -> None:
        self._session_dal = session_dal
        self._player_dal = player_dal
        self._transaction_dal = transaction_dal
        self._settings = config or default_settings
        self._validator = TransactionValidator(self._settings)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _get_session_or_404(self, session_id: str) -> Session:
        """Fetch a session by ID, raising 404 if not found."""
        session = await self._session_dal.get_by_id(session_id)
        if session is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Session not found",
            )
        return session

    @staticmethod
    def _find_player(
        roster: list[PlayerLedgerEntry], player_id: str
    ) -> Optional[PlayerLedgerEntry]:
        for player in roster:
            if player.id == player_id:
                return player
        return None

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def create_session(self, name: str) -> Session:
        session = Session(name=name.strip())
        return await self._session_dal.create(session)

    async def get_session_detail(self, session_id: str) -> dict[str, Any]:
        """Return a session together with its player ledger."""
        session = await self._get_session_or_404(session_id)
        players = await self._player_dal.get_by_session(session_id)
        return {"session": session, "players": players}

    async def add_player(
        self, session_id: str, name: str
    ) -> tuple[ValidationResult, Optional[PlayerLedgerEntry]]:
        """Add a player to a session if the roster rules allow it."""
        async with session_lock(session_id):
            session = await self._get_session_or_404(session_id)
            roster = await self._player_dal.get_by_session(session_id)
            result = self._validator.validate_new_player(session, roster, name)
            if not result.is_valid:
                return result, None
            player = await self._player_dal.create(
                PlayerLedgerEntry(session_id=session_id, name=result.data["name"])
            )
            return result, player

    async def start_session(
        self, session_id: str
    ) -> tuple[ValidationResult, Session]:
        """Move a session from created to active."""
        async with session_lock(session_id):
            session = await self._get_session_or_404(session_id)
            roster = await self._player_dal.get_by_session(session_id)
            result = self._validator.validate_session_start(session, roster)
            if result.is_valid:
                now = datetime.now(timezone.utc)
                await self._session_dal.update_status(
                    session_id, SessionStatus.ACTIVE, "started_at", now
                )
                session = await self._get_session_or_404(session_id)
            return result, session

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def record_buy_in(
        self, session_id: str, player_id: str, amount: Any
    ) -> tuple[ValidationResult, Optional[Transaction]]:
        """Validate and commit a buy-in as one critical section.

        Returns:
            The validation result and, when accepted, the stored Transaction.

        Raises:
            HTTPException 404: Session not found.
            SnapshotUnavailableError: The player changed under the lock.
        """
        async with session_lock(session_id):
            session = await self._get_session_or_404(session_id)
            roster = await self._player_dal.get_by_session(session_id)
            player = self._find_player(roster, player_id)

            result = self._validator.validate_buy_in(session, player, amount)
            if not result.is_valid:
                return result, None

            cents = currency.to_minor_units(result.data["amount"])
            await self._session_dal.increment_pot(session_id, cents)
            if not await self._player_dal.record_buy_in(player_id, cents):
                await self._session_dal.increment_pot(session_id, -cents)
                raise SnapshotUnavailableError(
                    "Player ledger changed while recording buy-in",
                    details={"player_id": player_id},
                )
            if session.status == SessionStatus.CREATED:
                await self._session_dal.update_status(
                    session_id,
                    SessionStatus.ACTIVE,
                    "started_at",
                    datetime.now(timezone.utc),
                )

            transaction = await self._transaction_dal.create(
                Transaction(
                    session_id=session_id,
                    player_id=player_id,
                    type=TransactionType.BUY_IN,
                    amount=result.data["amount"],
                    pot_after=currency.add(session.total_pot, result.data["amount"]),
                )
            )
            return result, transaction

    async def record_cash_out(
        self,
        session_id: str,
        player_id: str,
        amount: Any,
        cash_out_completely: bool = False,
    ) -> tuple[ValidationResult, Optional[Transaction]]:
        """Validate and commit a cash-out as one critical section.

        The player is marked cashed out when ``cash_out_completely`` is set
        when they are the last active player, or when the cash-out uses up
        everything they bought in.

        Raises:
            HTTPException 404: Session not found.
            NegativePotError: The pot guard refused the update.
            SnapshotUnavailableError: The player changed under the lock.
        """
        async with session_lock(session_id):
            session = await self._get_session_or_404(session_id)
            roster = await self._player_dal.get_by_session(session_id)
            player = self._find_player(roster, player_id)

            result = self._validator.validate_cash_out(session, player, amount, roster)
            if not result.is_valid:
                return result, None

            normalised = result.data["amount"]
            cents = currency.to_minor_units(normalised)
            remaining = currency.subtract(player.current_chip_balance, normalised)
            last_player = not any(
                p.is_active and p.id != player_id for p in roster
            )
            completes = cash_out_completely or last_player or remaining <= 0

            if not await self._session_dal.increment_pot(session_id, -cents):
                logger.error(
                    "Pot guard refused cash-out of %s in session %s (pot %s)",
                    normalised,
                    session_id,
                    session.total_pot,
                )
                raise NegativePotError(
                    "Cash-out would drive the session pot below zero",
                    details={
                        "session_id": session_id,
                        "amount": str(normalised),
                        "total_pot": str(session.total_pot),
                    },
                )
            recorded = await self._player_dal.record_cash_out(
                player_id, cents, completes, datetime.now(timezone.utc)
            )
            if not recorded:
                await self._session_dal.increment_pot(session_id, cents)
                raise SnapshotUnavailableError(
                    "Player ledger changed while recording cash-out",
                    details={"player_id": player_id},
                )

            transaction = await self._transaction_dal.create(
                Transaction(
                    session_id=session_id,
                    player_id=player_id,
                    type=TransactionType.CASH_OUT,
                    amount=normalised,
                    pot_after=currency.subtract(session.total_pot, normalised),
                )
            )
            return result, transaction

    async def list_transactions(self, session_id: str) -> list[Transaction]:
        await self._get_session_or_404(session_id)
        return await self._transaction_dal.get_by_session(session_id)

    async def undo_transaction(
        self,
        session_id: str,
        transaction_id: str,
        reason: Optional[str] = None,
    ) -> tuple[ValidationResult, Optional[Transaction]]:
        """Void a recent transaction and reverse its effect on the ledger.

        An undone buy-in leaves the pot and the player's buy-ins. An undone
        cash-out returns to the pot and puts the player back in the game.

        Raises:
            HTTPException 404: Session not found.
            NegativePotError: The pot guard refused the reversal.
            SnapshotUnavailableError: The ledger changed under the lock.
        """
        async with session_lock(session_id):
            session = await self._get_session_or_404(session_id)
            transaction = await self._transaction_dal.get_by_id(transaction_id)
            player = None
            if transaction is not None:
                roster = await self._player_dal.get_by_session(session_id)
                player = self._find_player(roster, transaction.player_id)

            now = datetime.now(timezone.utc)
            result = self._validator.validate_undo(session, transaction, player, now)
            if not result.is_valid:
                return result, None

            if not await self._transaction_dal.void(transaction_id, reason, now):
                raise SnapshotUnavailableError(
                    "Transaction was voided while undoing it",
                    details={"transaction_id": transaction_id},
                )
            cents = currency.to_minor_units(result.data["amount"])
            player_id = result.data["player_id"]
            try:
                if transaction.type == TransactionType.BUY_IN:
                    await self._reverse_buy_in(session, player_id, cents)
                else:
                    await self._reverse_cash_out(session_id, player_id, cents)
            except Exception:
                await self._transaction_dal.restore(transaction_id)
                raise

            logger.info(
                "Undid %s of %s for player %s in session %s",
                transaction.type,
                transaction.amount,
                player_id,
                session_id,
            )
            return result, await self._transaction_dal.get_by_id(transaction_id)

    async def _reverse_buy_in(
        self, session: Session, player_id: str, cents: int
    ) -> None:
        if not await self._session_dal.increment_pot(session.id, -cents):
            raise NegativePotError(
                "Undoing the buy-in would drive the session pot below zero",
                details={
                    "session_id": session.id,
                    "amount": str(currency.from_minor_units(cents)),
                    "total_pot": str(session.total_pot),
                },
            )
        if not await self._player_dal.reverse_buy_in(player_id, cents):
            await self._session_dal.increment_pot(session.id, cents)
            raise SnapshotUnavailableError(
                "Player ledger changed while undoing buy-in",
                details={"player_id": player_id},
            )

    async def _reverse_cash_out(
        self, session_id: str, player_id: str, cents: int
    ) -> None:
        await self._session_dal.increment_pot(session_id, cents)
        if not await self._player_dal.reverse_cash_out(player_id, cents):
            await self._session_dal.increment_pot(session_id, -cents)
            raise SnapshotUnavailableError(
                "Player ledger changed while undoing cash-out",
                details={"player_id": player_id},
            )

    # ------------------------------------------------------------------
    # Bank
    # ------------------------------------------------------------------

    def _bank_balance(
        self,
        session: Session,
        players: list[PlayerLedgerEntry],
        transactions: list[Transaction],
    ) -> BankBalance:
        buy_ins = cash_outs = 0
        for txn in transactions:
            if txn.is_voided:
                continue
            if txn.type == TransactionType.BUY_IN:
                buy_ins += currency.to_minor_units(txn.amount)
            else:
                cash_outs += currency.to_minor_units(txn.amount)

        chips_in_play = sum(
            currency.to_minor_units(p.current_chip_balance)
            for p in players
            if p.is_active
        )
        totals_match = (
            sum(currency.to_minor_units(p.total_buy_ins) for p in players) == buy_ins
            and sum(currency.to_minor_units(p.total_cash_outs) for p in players)
            == cash_outs
        )
        available = buy_ins - cash_outs
        pot = currency.to_minor_units(session.total_pot)
        discrepancy = pot - available
        tolerance = currency.to_minor_units(self._settings.SETTLEMENT_TOLERANCE)
        is_balanced = abs(discrepancy) <= tolerance and totals_match
        if not is_balanced:
            logger.warning(
                "Bank for session %s out of balance: pot %s, ledger %s, "
                "player totals match=%s",
                session.id,
                currency.from_minor_units(pot),
                currency.from_minor_units(available),
                totals_match,
            )

        return BankBalance(
            session_id=session.id,
            total_buy_ins=currency.from_minor_units(buy_ins),
            total_cash_outs=currency.from_minor_units(cash_outs),
            total_chips_in_play=currency.from_minor_units(chips_in_play),
            available_for_cash_out=currency.from_minor_units(available),
            session_pot=currency.from_minor_units(pot),
            discrepancy=currency.from_minor_units(discrepancy),
            player_totals_match=totals_match,
            is_balanced=is_balanced,
        )

    async def calculate_bank_balance(self, session_id: str) -> BankBalance:
        """Cross-check the stored pot against the ledger and player totals."""
        session = await self._get_session_or_404(session_id)
        players = await self._player_dal.get_by_session(session_id)
        transactions = await self._transaction_dal.get_by_session(session_id)
        return self._bank_balance(session, players, transactions)

    async def calculate_early_cash_out(
        self, session_id: str, player_id: str, chip_value: Any
    ) -> EarlyCashOutQuote:
        """Quote a mid-game cash-out without recording it.

        The player takes their chip value from the bank, capped by what the
        bank holds. The net position shows which way they stand overall.

        Raises:
            HTTPException 404: Session or player not found.
            InvariantViolationError: The player has cashed out, or the chip
                value is not a valid amount.
        """
        session = await self._get_session_or_404(session_id)
        players = await self._player_dal.get_by_session(session_id)
        player = self._find_player(players, player_id)
        if player is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Player not found",
            )
        if not player.is_active:
            raise InvariantViolationError(
                f"{player.name} has already cashed out",
                details={"player_id": player_id, "player_status": str(player.status)},
            )
        position = net_positions_from_ledger([player], {player_id: chip_value})[0]
        transactions = await self._transaction_dal.get_by_session(session_id)
        bank = self._bank_balance(session, players, transactions)

        chips = currency.to_minor_units(position.final_chip_value)
        available = max(
            min(
                currency.to_minor_units(bank.available_for_cash_out),
                currency.to_minor_units(bank.session_pot),
            ),
            0,
        )
        paid = min(chips, available)
        net = currency.to_minor_units(position.net_amount)
        if net > 0:
            direction = CashOutDirection.PAYMENT_TO_PLAYER
        elif net < 0:
            direction = CashOutDirection.PAYMENT_FROM_PLAYER
        else:
            direction = CashOutDirection.EVEN

        messages: list[str] = []
        if paid < chips:
            held = currency.format_currency(currency.from_minor_units(available))
            owed = currency.format_currency(currency.from_minor_units(chips - paid))
            messages.append(
                f"The bank holds only {held}; {owed} "
                f"stays owed to {player.name} until final settlement."
            )
        if not bank.is_balanced:
            messages.append(
                f"The bank is out of balance by "
                f"{currency.format_currency(bank.discrepancy)}; check the ledger "
                "before paying out."
            )

        return EarlyCashOutQuote(
            session_id=session_id,
            player_id=player_id,
            player_name=player.name,
            current_chip_value=position.final_chip_value,
            total_buy_ins=player.total_buy_ins,
            total_cash_outs=player.total_cash_outs,
            net_position=position.net_amount,
            cash_out_amount=currency.from_minor_units(paid),
            shortfall=currency.from_minor_units(chips - paid),
            direction=direction,
            is_capped=paid < chips,
            bank_balance_before=currency.from_minor_units(available),
            bank_balance_after=currency.from_minor_units(available - paid),
            is_valid=bank.is_balanced,
            messages=messages,
        )

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def get_net_positions(
        self,
        session_id: str,
        final_chip_values: Optional[Mapping[str, Any]] = None,
    ) -> list[NetPosition]:
        await self._get_session_or_404(session_id)
        players = await self._player_dal.get_by_session(session_id)
        return net_positions_from_ledger(players, final_chip_values)

    async def settle_session(
        self,
        session_id: str,
        final_chip_values: Optional[Mapping[str, Any]] = None,
    ) -> OptimizedSettlement:
        """Complete the session and compute its settlement.

        Args:
            session_id: The session's string ObjectId.
            final_chip_values: Chip value still held by each active player,
                keyed by player id.

        Returns:
            The authoritative OptimizedSettlement with its proof.

        Raises:
            HTTPException 404: Session not found.
            InvariantViolationError: An active player has no final chip value.
            UnbalancedPositionsError: Ledger does not net to zero.
        """
        async with session_lock(session_id):
            positions = await self.get_net_positions(session_id, final_chip_values)
            settlement = SettlementOptimizer(self._settings).optimize(
                positions, session_id=session_id
            )
            session = await self._get_session_or_404(session_id)
            if session.status != SessionStatus.COMPLETED:
                await self._session_dal.update_status(
                    session_id,
                    SessionStatus.COMPLETED,
                    "completed_at",
                    datetime.now(timezone.utc),
                )
                logger.info(
                    "Session %s completed with settlement %s",
                    session_id,
                    settlement.settlement_id,
                )
            return settlement

    async def select_session_alternative(
        self,
        session_id: str,
        option_id: str,
        final_chip_values: Optional[Mapping[str, Any]] = None,
    ) -> OptimizedSettlement:
        """Complete the session with an organizer-chosen alternative plan.

        Raises:
            LookupError: Unknown option id.
            ProofIntegrityError: The alternative failed proof verification.
        """
        async with session_lock(session_id):
            positions = await self.get_net_positions(session_id, final_chip_values)
            comparator = SettlementComparator(self._settings)
            comparison = comparator.compare(positions, session_id=session_id)
            settlement = comparator.select_alternative(comparison, option_id, positions)
            session = await self._get_session_or_404(session_id)
            if session.status != SessionStatus.COMPLETED:
                await self._session_dal.update_status(
                    session_id,
                    SessionStatus.COMPLETED,
                    "completed_at",
                    datetime.now(timezone.utc),
                )
            return settlement

    async def compare_session_alternatives(
        self,
        session_id: str,
        final_chip_values: Optional[Mapping[str, Any]] = None,
    ) -> AlternativeComparison:
        positions = await self.get_net_positions(session_id, final_chip_values)
        return SettlementComparator(self._settings).compare(
            positions, session_id=session_id
        )
