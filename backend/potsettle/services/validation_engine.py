"""Transaction and settlement validation rules.

Pure decision functions over snapshots supplied by the caller. Nothing
here reads or writes the database, and business-rule violations are
returned as a ``ValidationResult`` rather than raised. Rules are checked
in a fixed order and the first failure wins.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Sequence

from potsettle.config import Settings, settings as default_settings
from potsettle.models.common import TransactionType, ValidationCode
from potsettle.models.player import PlayerLedgerEntry
from potsettle.models.positions import NetPosition, PaymentInstruction
from potsettle.models.session import Session
from potsettle.models.transaction import Transaction
from potsettle.models.validation import AuditCheck, ValidationResult
from potsettle.services import currency

logger = logging.getLogger("potsettle.services.validation")


class _Rejected(Exception):
    """Internal short-circuit carrying the first failing rule."""

    def __init__(self, result: ValidationResult) -> None:
        super().__init__(result.message)
        self.result = result


class _RuleRunner:
    """Collects audit entries and turns the first failed rule into a result."""

    def __init__(self) -> None:
        self.trail: list[AuditCheck] = []

    def passed(self, check: str, detail: Optional[str] = None) -> None:
        self.trail.append(AuditCheck(check=check, passed=True, detail=detail))

    def fail(
        self,
        check: str,
        code: ValidationCode,
        title: str,
        message: str,
        suggested_action: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.trail.append(AuditCheck(check=check, passed=False, detail=message))
        raise _Rejected(
            ValidationResult.failure(
                code=code,
                title=title,
                message=message,
                suggested_action=suggested_action,
                details=details,
                audit_trail=self.trail,
            )
        )


class TransactionValidator:
    """Buy-in, cash-out and roster rules for a single session."""

    def __init__(self, config: Optional[Settings] = None) -> None:
        self._settings = config or default_settings

    # ------------------------------------------------------------------
    # Shared rules
    # ------------------------------------------------------------------

    def _check_amount(
        self,
        runner: _RuleRunner,
        raw_amount: Any,
        minimum: Decimal,
        maximum: Decimal,
        label: str,
    ) -> Decimal:
        try:
            amount = currency.to_decimal(raw_amount)
        except ValueError:
            runner.fail(
                "amount_format",
                ValidationCode.INVALID_AMOUNT,
                "Invalid Amount",
                f"{raw_amount!r} is not a valid amount.",
                "Enter a number such as 20 or 20.50.",
            )
        if amount <= 0:
            runner.fail(
                "amount_positive",
                ValidationCode.INVALID_AMOUNT,
                "Invalid Amount",
                f"{label} amount must be greater than zero.",
                "Enter a positive amount.",
                {"amount": str(amount)},
            )
        if not currency.is_valid_amount(amount):
            runner.fail(
                "amount_precision",
                ValidationCode.INVALID_AMOUNT,
                "Invalid Amount",
                f"{label} amount {amount} has fractions of a cent.",
                "Use at most two decimal places.",
                {"amount": str(amount)},
            )
        runner.passed("amount_format", str(amount))

        if amount < minimum:
            runner.fail(
                "amount_minimum",
                ValidationCode.AMOUNT_TOO_LOW,
                "Amount Too Low",
                f"Minimum {label.lower()} is {currency.format_currency(minimum)}.",
                f"Enter at least {currency.format_currency(minimum)}.",
                {"amount": str(amount), "minimum": str(minimum)},
            )
        if amount > maximum:
            runner.fail(
                "amount_maximum",
                ValidationCode.AMOUNT_TOO_HIGH,
                "Amount Too High",
                f"Maximum {label.lower()} is {currency.format_currency(maximum)}.",
                f"Enter at most {currency.format_currency(maximum)}.",
                {"amount": str(amount), "maximum": str(maximum)},
            )
        runner.passed("amount_limits", f"{minimum}..{maximum}")
        return currency.round_amount(amount)

    @staticmethod
    def _check_session_open(runner: _RuleRunner, session: Session) -> None:
        if session.accepts_transactions:
            runner.passed("session_status", str(session.status))
            return
        if session.status == "completed":
            runner.fail(
                "session_status",
                ValidationCode.SESSION_ALREADY_COMPLETED,
                "Session Completed",
                f"Session '{session.name}' is already completed.",
                "Start a new session to record more transactions.",
                {"session_status": str(session.status)},
            )
        runner.fail(
            "session_status",
            ValidationCode.INVALID_SESSION_STATE,
            "Invalid Session State",
            f"Session '{session.name}' does not accept transactions "
            f"in status {session.status}.",
            details={"session_status": str(session.status)},
        )

    @staticmethod
    def _check_player_exists(
        runner: _RuleRunner,
        session: Session,
        player: Optional[PlayerLedgerEntry],
    ) -> PlayerLedgerEntry:
        if player is None or (
            session.id is not None and player.session_id != session.id
        ):
            runner.fail(
                "player_exists",
                ValidationCode.PLAYER_NOT_FOUND,
                "Player Not Found",
                "The selected player is not part of this session.",
                "Add the player to the session first.",
            )
        runner.passed("player_exists", player.name)
        return player

    # ------------------------------------------------------------------
    # Buy-in
    # ------------------------------------------------------------------

    def validate_buy_in(
        self,
        session: Session,
        player: Optional[PlayerLedgerEntry],
        amount: Any,
    ) -> ValidationResult:
        """Check a proposed buy-in against the current session snapshot.

        Args:
            session: Current session state.
            player: The target player's ledger entry, or None if unknown.
            amount: Proposed buy-in amount.

        Returns:
            ValidationResult; on success ``data`` carries the normalised
            session_id, player_id and amount.
        """
        runner = _RuleRunner()
        try:
            normalised = self._check_amount(
                runner,
                amount,
                self._settings.MIN_BUY_IN,
                self._settings.MAX_BUY_IN,
                "Buy-in",
            )
            self._check_session_open(runner, session)
            target = self._check_player_exists(runner, session, player)
            if not target.is_active:
                runner.fail(
                    "player_status",
                    ValidationCode.INVALID_PLAYER_STATE,
                    "Player Cashed Out",
                    f"{target.name} has already cashed out and cannot buy in again.",
                    "Add a new player entry if they rejoin the game.",
                    {"player_status": str(target.status)},
                )
            runner.passed("player_status", str(target.status))
        except _Rejected as rejected:
            logger.warning(
                "Buy-in rejected (%s): %s",
                rejected.result.code,
                rejected.result.message,
            )
            return rejected.result

        return ValidationResult.success(
            data={
                "session_id": session.id,
                "player_id": target.id,
                "amount": normalised,
            },
            audit_trail=runner.trail,
        )

    # ------------------------------------------------------------------
    # Cash-out
    # ------------------------------------------------------------------

    def validate_cash_out(
        self,
        session: Session,
        player: Optional[PlayerLedgerEntry],
        amount: Any,
        roster: Sequence[PlayerLedgerEntry],
    ) -> ValidationResult:
        """Check a proposed cash-out against the current session snapshot.

        The pot ceiling is checked before the last-player rule, so a
        last player asking for more than the pot is told the pot is
        insufficient rather than asked for the exact amount.

        Args:
            session: Current session state.
            player: The target player's ledger entry, or None if unknown.
            amount: Proposed cash-out amount.
            roster: Every player of the session (any status).

        Returns:
            ValidationResult; on success ``data`` carries the normalised
            session_id, player_id and amount.
        """
        runner = _RuleRunner()
        try:
            normalised = self._check_amount(
                runner,
                amount,
                self._settings.MIN_CASH_OUT,
                self._settings.MAX_CASH_OUT,
                "Cash-out",
            )
            self._check_session_open(runner, session)
            target = self._check_player_exists(runner, session, player)

            if target.status == "cashed_out":
                runner.fail(
                    "player_not_cashed_out",
                    ValidationCode.PLAYER_ALREADY_CASHED_OUT,
                    "Already Cashed Out",
                    f"{target.name} has already cashed out.",
                    "Each player can only cash out once.",
                    {"player_status": str(target.status)},
                )
            runner.passed("player_not_cashed_out")

            if not target.is_active:
                runner.fail(
                    "player_status",
                    ValidationCode.INVALID_PLAYER_STATE,
                    "Invalid Player State",
                    f"{target.name} is not active in this session.",
                    details={"player_status": str(target.status)},
                )
            runner.passed("player_status", str(target.status))

            pot = currency.round_amount(session.total_pot)
            if currency.to_minor_units(normalised) > currency.to_minor_units(pot):
                runner.fail(
                    "pot_sufficient",
                    ValidationCode.INSUFFICIENT_SESSION_POT,
                    "Insufficient Pot",
                    f"Cannot cash out {currency.format_currency(normalised)} "
                    f"for {target.name}. Only {currency.format_currency(pot)} "
                    f"remaining in pot.",
                    f"Enter an amount up to {currency.format_currency(pot)}.",
                    {
                        "requested_amount": str(normalised),
                        "available_amount": str(pot),
                    },
                )
            runner.passed("pot_sufficient", str(pot))

            others_active = [
                p for p in roster if p.id != target.id and p.is_active
            ]
            if not others_active:
                # The last player closes the pot to the cent.
                if currency.to_minor_units(normalised) != currency.to_minor_units(pot):
                    runner.fail(
                        "last_player_exact",
                        ValidationCode.LAST_PLAYER_EXACT_AMOUNT_REQUIRED,
                        "Exact Amount Required",
                        f"As the last player, {target.name} must cash out "
                        f"exactly {currency.format_currency(pot)} (the remaining "
                        f"pot). You entered {currency.format_currency(normalised)}.",
                        f"Enter {currency.format_currency(pot)} to close out the pot.",
                        {
                            "required_amount": str(pot),
                            "entered_amount": str(normalised),
                        },
                    )
                runner.passed("last_player_exact", str(pot))
            else:
                runner.passed(
                    "last_player_exact", f"{len(others_active)} other active"
                )
        except _Rejected as rejected:
            logger.warning(
                "Cash-out rejected (%s): %s",
                rejected.result.code,
                rejected.result.message,
            )
            return rejected.result

        return ValidationResult.success(
            data={
                "session_id": session.id,
                "player_id": target.id,
                "amount": normalised,
            },
            audit_trail=runner.trail,
        )

    # ------------------------------------------------------------------
    # Undo
    # ------------------------------------------------------------------

    def validate_undo(
        self,
        session: Session,
        transaction: Optional[Transaction],
        player: Optional[PlayerLedgerEntry],
        now: datetime,
    ) -> ValidationResult:
        """Check whether a recorded transaction may still be undone.

        A transaction can be undone once, within UNDO_WINDOW_SECONDS of
        being recorded, while the session is open. Undoing a buy-in
        takes the chips back out, so the player must still hold them and
        the pot must still contain them.

        Returns:
            ValidationResult; on success ``data`` carries the
            transaction_id, player_id, type and amount to reverse.
        """
        runner = _RuleRunner()
        try:
            if transaction is None or transaction.session_id != session.id:
                runner.fail(
                    "transaction_exists",
                    ValidationCode.TRANSACTION_NOT_FOUND,
                    "Transaction Not Found",
                    "The selected transaction is not part of this session.",
                )
            runner.passed("transaction_exists", transaction.id)

            self._check_session_open(runner, session)

            if transaction.is_voided:
                runner.fail(
                    "transaction_not_voided",
                    ValidationCode.TRANSACTION_ALREADY_VOIDED,
                    "Already Undone",
                    "This transaction has already been undone.",
                    details={"voided_at": str(transaction.voided_at)},
                )
            runner.passed("transaction_not_voided")

            created_at = transaction.created_at
            if created_at.tzinfo is None:
                created_at = created_at.replace(tzinfo=timezone.utc)
            window = self._settings.UNDO_WINDOW_SECONDS
            age = (now - created_at).total_seconds()
            if age > window:
                runner.fail(
                    "undo_window",
                    ValidationCode.UNDO_WINDOW_EXPIRED,
                    "Undo Window Expired",
                    f"Transactions can only be undone within {window} seconds.",
                    "Record a correcting transaction instead.",
                    {"age_seconds": int(age), "window_seconds": window},
                )
            runner.passed("undo_window", f"{int(age)}s of {window}s")

            target = self._check_player_exists(runner, session, player)
            amount = currency.round_amount(transaction.amount)

            if transaction.type == TransactionType.BUY_IN:
                if not target.is_active or target.current_chip_balance < amount:
                    runner.fail(
                        "chips_returnable",
                        ValidationCode.INVALID_PLAYER_STATE,
                        "Chips Already Cashed Out",
                        f"{target.name} no longer holds the "
                        f"{currency.format_currency(amount)} from this buy-in.",
                        "Undo the later cash-out first.",
                        {
                            "player_status": str(target.status),
                            "chip_balance": str(target.current_chip_balance),
                        },
                    )
                runner.passed("chips_returnable", str(target.current_chip_balance))

                pot = currency.round_amount(session.total_pot)
                if currency.to_minor_units(amount) > currency.to_minor_units(pot):
                    runner.fail(
                        "pot_sufficient",
                        ValidationCode.INSUFFICIENT_SESSION_POT,
                        "Insufficient Pot",
                        f"The pot holds only {currency.format_currency(pot)}.",
                        details={
                            "requested_amount": str(amount),
                            "available_amount": str(pot),
                        },
                    )
                runner.passed("pot_sufficient", str(pot))
        except _Rejected as rejected:
            logger.warning(
                "Undo rejected (%s): %s",
                rejected.result.code,
                rejected.result.message,
            )
            return rejected.result

        return ValidationResult.success(
            data={
                "session_id": session.id,
                "transaction_id": transaction.id,
                "player_id": target.id,
                "type": transaction.type,
                "amount": amount,
            },
            audit_trail=runner.trail,
        )

    # ------------------------------------------------------------------
    # Roster
    # ------------------------------------------------------------------

    def validate_new_player(
        self,
        session: Session,
        roster: Sequence[PlayerLedgerEntry],
        name: str,
    ) -> ValidationResult:
        """Check that a player named ``name`` can join the session."""
        runner = _RuleRunner()
        clean_name = (name or "").strip()
        try:
            self._check_session_open(runner, session)
            if not clean_name:
                runner.fail(
                    "player_name",
                    ValidationCode.INVALID_PLAYER_STATE,
                    "Invalid Name",
                    "Player name cannot be empty.",
                )
            if any(p.name.strip().lower() == clean_name.lower() for p in roster):
                runner.fail(
                    "unique_name",
                    ValidationCode.DUPLICATE_PLAYER_NAME,
                    "Duplicate Name",
                    f"A player named '{clean_name}' is already in this session.",
                    "Use a different name, e.g. add an initial.",
                    {"name": clean_name},
                )
            runner.passed("unique_name", clean_name)
            limit = self._settings.MAX_PLAYERS_PER_SESSION
            if len(roster) >= limit:
                runner.fail(
                    "player_count",
                    ValidationCode.INVALID_PLAYER_COUNT,
                    "Session Full",
                    f"Sessions are limited to {limit} players.",
                    details={"player_count": len(roster), "maximum": limit},
                )
            runner.passed("player_count", str(len(roster) + 1))
        except _Rejected as rejected:
            return rejected.result
        return ValidationResult.success(
            data={"session_id": session.id, "name": clean_name},
            audit_trail=runner.trail,
        )

    def validate_session_start(
        self,
        session: Session,
        roster: Sequence[PlayerLedgerEntry],
    ) -> ValidationResult:
        """Check that a created session may become active."""
        runner = _RuleRunner()
        try:
            if session.status != "created":
                code = (
                    ValidationCode.SESSION_ALREADY_COMPLETED
                    if session.status == "completed"
                    else ValidationCode.SESSION_ALREADY_STARTED
                )
                runner.fail(
                    "session_status",
                    code,
                    "Cannot Start Session",
                    f"Session '{session.name}' is already {session.status}.",
                    details={"session_status": str(session.status)},
                )
            runner.passed("session_status", str(session.status))
            minimum = self._settings.MIN_PLAYERS_PER_SESSION
            if len(roster) < minimum:
                runner.fail(
                    "player_count",
                    ValidationCode.INVALID_PLAYER_COUNT,
                    "Not Enough Players",
                    f"At least {minimum} players are needed to start.",
                    details={"player_count": len(roster), "minimum": minimum},
                )
            runner.passed("player_count", str(len(roster)))
        except _Rejected as rejected:
            return rejected.result
        return ValidationResult.success(
            data={"session_id": session.id}, audit_trail=runner.trail
        )


class SettlementValidator:
    """Rules a payment plan must satisfy against its net positions."""

    def __init__(self, config: Optional[Settings] = None) -> None:
        self._settings = config or default_settings

    def validate(
        self,
        net_positions: Sequence[NetPosition],
        payment_plan: Sequence[PaymentInstruction],
    ) -> ValidationResult:
        """Validate that ``payment_plan`` settles ``net_positions``.

        Returns:
            ValidationResult whose ``details`` include residual balances
            on failure.
        """
        runner = _RuleRunner()
        tolerance_cents = currency.to_minor_units(
            self._settings.SETTLEMENT_TOLERANCE
        )
        try:
            positions = {p.player_id: p for p in net_positions}

            for index, instruction in enumerate(payment_plan):
                label = f"payment[{index}]"
                if not currency.is_valid_amount(instruction.amount):
                    runner.fail(
                        "whole_cents",
                        ValidationCode.FRACTIONAL_CENT_AMOUNT,
                        "Fractional Cents",
                        f"{label} amount {instruction.amount} has fractions of a cent.",
                        details={"index": index},
                    )
                if instruction.amount <= 0:
                    runner.fail(
                        "payment_instruction",
                        ValidationCode.INVALID_PAYMENT_INSTRUCTION,
                        "Invalid Payment",
                        f"{label} has a non-positive amount.",
                        details={"index": index},
                    )
                if instruction.from_player_id == instruction.to_player_id:
                    runner.fail(
                        "payment_instruction",
                        ValidationCode.INVALID_PAYMENT_INSTRUCTION,
                        "Invalid Payment",
                        f"{label} pays a player to themselves.",
                        details={"index": index},
                    )
                unknown = [
                    pid
                    for pid in (instruction.from_player_id, instruction.to_player_id)
                    if pid not in positions
                ]
                if unknown:
                    runner.fail(
                        "payment_instruction",
                        ValidationCode.INVALID_PAYMENT_INSTRUCTION,
                        "Invalid Payment",
                        f"{label} references unknown player(s): {', '.join(unknown)}.",
                        details={"index": index, "unknown": unknown},
                    )
            runner.passed("payment_instructions", f"{len(payment_plan)} checked")

            net_sum = sum(currency.to_minor_units(p.net_amount) for p in net_positions)
            if abs(net_sum) > tolerance_cents:
                runner.fail(
                    "net_sum_zero",
                    ValidationCode.UNBALANCED_SETTLEMENT,
                    "Unbalanced Positions",
                    f"Net positions sum to {currency.from_minor_units(net_sum)}, "
                    "not zero.",
                    details={"net_sum": str(currency.from_minor_units(net_sum))},
                )
            runner.passed("net_sum_zero", str(currency.from_minor_units(net_sum)))

            paid = sum(currency.to_minor_units(i.amount) for i in payment_plan)
            owed = sum(
                currency.to_minor_units(p.net_amount)
                for p in net_positions
                if p.net_amount > 0
            )
            # Money routed through an intermediary counts twice, so a plan
            # may move more than is owed but never less.
            if paid < owed - tolerance_cents:
                runner.fail(
                    "payments_cover_credits",
                    ValidationCode.UNBALANCED_SETTLEMENT,
                    "Unbalanced Settlement",
                    f"Payments total {currency.from_minor_units(paid)} but "
                    f"creditors are owed {currency.from_minor_units(owed)}.",
                    details={
                        "total_payments": str(currency.from_minor_units(paid)),
                        "total_owed": str(currency.from_minor_units(owed)),
                    },
                )
            runner.passed("payments_cover_credits", str(currency.from_minor_units(paid)))

            residuals = residual_balances(net_positions, payment_plan)
            mismatched = {
                pid: str(currency.from_minor_units(cents))
                for pid, cents in residuals.items()
                if abs(cents) > tolerance_cents
            }
            if mismatched:
                runner.fail(
                    "player_positions_zeroed",
                    ValidationCode.PLAYER_POSITION_MISMATCH,
                    "Position Mismatch",
                    f"{len(mismatched)} player(s) are not settled by the plan.",
                    details={"residuals": mismatched},
                )
            runner.passed("player_positions_zeroed")
        except _Rejected as rejected:
            logger.warning(
                "Settlement validation failed (%s): %s",
                rejected.result.code,
                rejected.result.message,
            )
            return rejected.result

        return ValidationResult.success(audit_trail=runner.trail)


def residual_balances(
    net_positions: Sequence[NetPosition],
    payment_plan: Sequence[PaymentInstruction],
) -> dict[str, int]:
    """Apply a plan to the positions and return what each player still has, in cents.

    A payer's balance rises by the amount paid, a payee's falls, so a
    fully settled plan leaves every entry at zero.
    """
    balances = {
        p.player_id: currency.to_minor_units(p.net_amount) for p in net_positions
    }
    for instruction in payment_plan:
        cents = currency.to_minor_units(instruction.amount)
        balances[instruction.from_player_id] = (
            balances.get(instruction.from_player_id, 0) + cents
        )
        balances[instruction.to_player_id] = (
            balances.get(instruction.to_player_id, 0) - cents
        )
    return balances


# ----------------------------------------------------------------------
# Module-level entry points
# ----------------------------------------------------------------------

def validate_buy_in(
    session: Session,
    player: Optional[PlayerLedgerEntry],
    amount: Any,
    config: Optional[Settings] = None,
) -> ValidationResult:
    return TransactionValidator(config).validate_buy_in(session, player, amount)


def validate_cash_out(
    session: Session,
    player: Optional[PlayerLedgerEntry],
    amount: Any,
    roster: Sequence[PlayerLedgerEntry],
    config: Optional[Settings] = None,
) -> ValidationResult:
    return TransactionValidator(config).validate_cash_out(
        session, player, amount, roster
    )
