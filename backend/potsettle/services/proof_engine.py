"""Mathematical proof generation and verification.

The proof engine re-derives every figure of a settlement from its inputs
(net positions and payment plan) without calling into the optimizer, and
records the result as a signed, self-contained ``MathematicalProof``.
Verification repeats the derivation from the embedded inputs and never
relies on the embedded ``is_valid`` flag.
"""

import json
import logging
import uuid
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional, Sequence, Union

from jose import JWSError, jws
from pydantic import ValidationError

from potsettle.config import Settings, settings as default_settings
from potsettle.errors import ProofIntegrityError
from potsettle.models.common import SettlementAlgorithm
from potsettle.models.positions import NetPosition, PaymentInstruction
from potsettle.models.proof import (
    AlgorithmVerification,
    BalanceVerification,
    CalculationStep,
    MathematicalProof,
    PrecisionAnalysis,
    RoundingOperation,
    VerificationResult,
)
from potsettle.models.settlement import OptimizedSettlement
from potsettle.services import currency
from potsettle.services.canonical import canonical_hash
from potsettle.services.settlement_algorithms import (
    balanced_flow_settlement,
    direct_settlement,
    direct_share_roundings,
)
from potsettle.services.validation_engine import residual_balances

logger = logging.getLogger("potsettle.services.proof")

SIGNING_ALGORITHM = "HS256"

# Exact proportional shares are recorded to a millionth of a unit.
EXACT_SHARE_PLACES = Decimal("0.000001")

# Independent algorithms used for the consensus check.
CONSENSUS_ALGORITHMS = {
    SettlementAlgorithm.BALANCED_FLOW: balanced_flow_settlement,
    SettlementAlgorithm.DIRECT: direct_settlement,
}


def _fmt(value: Union[Decimal, int, str]) -> str:
    return format(currency.round_amount(value), "f")


def _cents_str(cents: int) -> str:
    return format(currency.from_minor_units(cents), "f")


class ProofEngine:
    """Builds and checks settlement proofs."""

    def __init__(self, config: Optional[Settings] = None) -> None:
        self._settings = config or default_settings
        self._tolerance_cents = currency.to_minor_units(
            self._settings.SETTLEMENT_TOLERANCE
        )

    # ------------------------------------------------------------------
    # Derivations (shared by generation and verification)
    # ------------------------------------------------------------------

    def _within(self, cents: int) -> bool:
        return abs(cents) <= self._tolerance_cents

    def balance_verification(
        self,
        net_positions: Sequence[NetPosition],
        payment_plan: Sequence[PaymentInstruction],
    ) -> BalanceVerification:
        """Re-sum money in against money out.

        When every position carries ledger figures the totals come from
        the ledger (buy-ins against cash-outs plus final chips); otherwise
        from the net amounts themselves.
        """
        if net_positions and all(p.has_ledger for p in net_positions):
            debits = sum(currency.to_minor_units(p.total_buy_ins) for p in net_positions)
            credits = sum(
                currency.to_minor_units(p.total_cash_outs)
                + currency.to_minor_units(p.final_chip_value or 0)
                for p in net_positions
            )
        else:
            debits = sum(
                -currency.to_minor_units(p.net_amount)
                for p in net_positions
                if p.net_amount < 0
            )
            credits = sum(
                currency.to_minor_units(p.net_amount)
                for p in net_positions
                if p.net_amount > 0
            )
        paid = sum(currency.to_minor_units(i.amount) for i in payment_plan)
        net_balance = credits - debits
        return BalanceVerification(
            total_debits=currency.from_minor_units(debits),
            total_credits=currency.from_minor_units(credits),
            net_balance=currency.from_minor_units(net_balance),
            total_payments=currency.from_minor_units(paid),
            tolerance=self._settings.SETTLEMENT_TOLERANCE,
            is_balanced=self._within(net_balance),
        )

    def calculation_steps(
        self,
        net_positions: Sequence[NetPosition],
        payment_plan: Sequence[PaymentInstruction],
    ) -> list[CalculationStep]:
        """Recompute the settlement one fact at a time."""
        tolerance = _fmt(self._settings.SETTLEMENT_TOLERANCE)
        steps: list[CalculationStep] = []

        def add(**kwargs: Any) -> None:
            steps.append(
                CalculationStep(step_number=len(steps) + 1, tolerance=tolerance, **kwargs)
            )

        names = {p.player_id: p.player_name for p in net_positions}

        # Net positions must sum to zero.
        net_cents = [currency.to_minor_units(p.net_amount) for p in net_positions]
        total = sum(net_cents)
        add(
            operation="net_position_sum",
            description="All net positions sum to zero",
            formula="Σ net = " + (" + ".join(_fmt(p.net_amount) for p in net_positions) or "0"),
            inputs={p.player_id: _fmt(p.net_amount) for p in net_positions},
            result=_cents_str(total),
            expected="0.00",
            passed=self._within(total),
        )

        # Ledger reconciliation per player.
        for position in net_positions:
            if not position.has_ledger:
                continue
            buy_ins = currency.to_minor_units(position.total_buy_ins)
            cash_outs = currency.to_minor_units(position.total_cash_outs)
            final_chips = currency.to_minor_units(position.final_chip_value or 0)
            derived = cash_outs + final_chips - buy_ins
            add(
                operation="ledger_reconciliation",
                description=f"{position.player_name}: net equals cash-outs plus final chips minus buy-ins",
                formula=(
                    f"{_cents_str(cash_outs)} + {_cents_str(final_chips)} "
                    f"- {_cents_str(buy_ins)} = {_cents_str(derived)}"
                ),
                inputs={"player_id": position.player_id},
                result=_cents_str(derived),
                expected=_fmt(position.net_amount),
                passed=derived == currency.to_minor_units(position.net_amount),
            )

        # Walk the payment plan, tracking every running balance.
        balances = {p.player_id: currency.to_minor_units(p.net_amount) for p in net_positions}
        for instruction in payment_plan:
            cents = currency.to_minor_units(instruction.amount)
            payer, payee = instruction.from_player_id, instruction.to_player_id
            known = payer in balances and payee in balances and payer != payee
            payer_before = balances.get(payer, 0)
            payee_before = balances.get(payee, 0)
            payer_after = payer_before + cents
            payee_after = payee_before - cents
            balances[payer] = payer_after
            balances[payee] = payee_after
            add(
                operation="apply_payment",
                description=instruction.describe(),
                formula=(
                    f"{names.get(payer, payer)}: {_cents_str(payer_before)} + {_cents_str(cents)} "
                    f"= {_cents_str(payer_after)}; "
                    f"{names.get(payee, payee)}: {_cents_str(payee_before)} - {_cents_str(cents)} "
                    f"= {_cents_str(payee_after)}"
                ),
                inputs={"from": payer, "to": payee, "amount": _cents_str(cents)},
                result=f"{_cents_str(payer_after)}|{_cents_str(payee_after)}",
                # Intermediate balances may swing either way when money is
                # routed through a third player; only the final state must be zero.
                passed=(
                    known
                    and cents > 0
                    and currency.is_valid_amount(instruction.amount)
                    and sum(balances.values()) == total
                ),
            )

        # Every player ends at zero.
        worst = max((abs(v) for v in balances.values()), default=0)
        add(
            operation="final_balances",
            description="Every player's balance is zero after all payments",
            formula="max |balance| after plan",
            inputs={pid: _cents_str(v) for pid, v in sorted(balances.items())},
            result=_cents_str(worst),
            expected="0.00",
            passed=self._within(worst),
        )

        # Payments cover what creditors are owed; any excess is pass-through.
        paid = sum(currency.to_minor_units(i.amount) for i in payment_plan)
        owed = sum(c for c in net_cents if c > 0)
        add(
            operation="payment_total",
            description="Total paid covers the total owed to creditors",
            formula=f"Σ payments {_cents_str(paid)} - Σ credits {_cents_str(owed)}",
            result=_cents_str(paid - owed),
            expected=">= 0.00",
            passed=paid >= owed - self._tolerance_cents,
        )

        # Every amount is whole cents.
        fractional = [
            format(value, "f")
            for value in [p.net_amount for p in net_positions]
            + [i.amount for i in payment_plan]
            if not currency.is_valid_amount(value)
        ]
        add(
            operation="decimal_precision",
            description=f"All amounts use at most {self._settings.DECIMAL_PRECISION} decimal places",
            formula="amount × 100 is an integer",
            inputs={"fractional_amounts": ", ".join(fractional)},
            result=str(len(fractional)),
            expected="0",
            passed=not fractional,
        )

        # Independent algorithms must reach the same final balances.
        verifications = self.algorithm_verifications(net_positions, balances)
        add(
            operation="algorithm_consensus",
            description="Alternative algorithms reach the same final balances",
            formula="max |primary final - alternative final|",
            inputs={str(v.algorithm): _fmt(v.max_discrepancy) for v in verifications},
            result=_fmt(max((v.max_discrepancy for v in verifications), default=Decimal("0"))),
            expected="0.00",
            passed=all(v.final_balances_match for v in verifications),
        )
        return steps

    def algorithm_verifications(
        self,
        net_positions: Sequence[NetPosition],
        primary_final: dict[str, int],
    ) -> list[AlgorithmVerification]:
        """Settle the same positions with other algorithms and compare outcomes."""
        results: list[AlgorithmVerification] = []
        for algorithm, generate in CONSENSUS_ALGORITHMS.items():
            plan = generate(net_positions)
            final = residual_balances(net_positions, plan)
            players = set(final) | set(primary_final)
            discrepancy = max(
                (abs(final.get(pid, 0) - primary_final.get(pid, 0)) for pid in players),
                default=0,
            )
            results.append(
                AlgorithmVerification(
                    algorithm=algorithm,
                    transaction_count=len(plan),
                    total_amount=currency.sum_amounts(i.amount for i in plan),
                    final_balances_match=self._within(discrepancy),
                    max_discrepancy=currency.from_minor_units(discrepancy),
                )
            )
        return results

    def precision_analysis(
        self,
        net_positions: Sequence[NetPosition],
        payment_plan: Sequence[PaymentInstruction],
    ) -> PrecisionAnalysis:
        """Record every rounding to the minor unit behind the settlement.

        Three sources are covered: amounts that are not whole cents, the
        proportional shares of the direct baseline rounded by largest
        remainder, and a net-sum residual accepted within tolerance. Each
        share may move by at most one cent.
        """
        operations: list[RoundingOperation] = []
        limits: list[Decimal] = []

        subjects = [(f"net:{p.player_id}", p.net_amount) for p in net_positions]
        subjects += [
            (f"payment:{index}", i.amount) for index, i in enumerate(payment_plan)
        ]
        for subject, value in subjects:
            rounded = currency.round_amount(value)
            delta = abs(value - rounded)
            if delta:
                operations.append(
                    RoundingOperation(
                        subject=subject,
                        original_value=format(value, "f"),
                        rounded_value=rounded,
                        precision_loss=delta,
                    )
                )
                limits.append(currency.CENT / 2)

        for share in direct_share_roundings(net_positions):
            exact = (
                Decimal(share.exact_cents.numerator)
                / Decimal(share.exact_cents.denominator)
                / currency.MINOR_UNITS
            ).quantize(EXACT_SHARE_PLACES, rounding=ROUND_HALF_UP)
            rounded = currency.from_minor_units(share.allocated_cents)
            operations.append(
                RoundingOperation(
                    subject=f"direct:{share.debtor_id}->{share.creditor_id}",
                    original_value=format(exact, "f"),
                    rounded_value=rounded,
                    precision_loss=abs(exact - rounded),
                )
            )
            limits.append(currency.CENT)

        residual = sum(currency.to_minor_units(p.net_amount) for p in net_positions)
        if residual and self._within(residual):
            operations.append(
                RoundingOperation(
                    subject="net_sum_residual",
                    original_value=_cents_str(residual),
                    rounded_value=currency.ZERO,
                    precision_loss=abs(currency.from_minor_units(residual)),
                )
            )
            limits.append(self._settings.SETTLEMENT_TOLERANCE)

        loss = sum((op.precision_loss for op in operations), Decimal("0"))
        bound = sum(limits, Decimal("0")) or currency.CENT
        return PrecisionAnalysis(
            decimal_precision=self._settings.DECIMAL_PRECISION,
            rounding_operations=operations,
            cumulative_precision_loss=loss,
            max_allowed_loss=bound,
            is_within_tolerance=all(
                op.precision_loss <= limit for op, limit in zip(operations, limits)
            ),
        )

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    def sign(self, checksum: str) -> str:
        return jws.sign(
            checksum.encode("utf-8"),
            self._settings.PROOF_SIGNING_SECRET,
            algorithm=SIGNING_ALGORITHM,
        )

    def signature_matches(self, signature: str, checksum: str) -> bool:
        try:
            payload = jws.verify(
                signature,
                self._settings.PROOF_SIGNING_SECRET,
                algorithms=[SIGNING_ALGORITHM],
            )
        except JWSError:
            return False
        return payload == checksum.encode("utf-8")

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def generate_proof(self, settlement: OptimizedSettlement) -> MathematicalProof:
        """Produce a signed proof for ``settlement``.

        Args:
            settlement: The settlement to prove. Only its positions, plan
                and identifiers are read.

        Returns:
            A frozen MathematicalProof with checksum and signature set.
        """
        positions = list(settlement.net_positions)
        plan = list(settlement.payment_plan)

        steps = self.calculation_steps(positions, plan)
        balance = self.balance_verification(positions, plan)
        precision = self.precision_analysis(positions, plan)
        final = residual_balances(positions, plan)
        verifications = self.algorithm_verifications(positions, final)

        is_valid = (
            balance.is_balanced
            and all(step.passed for step in steps)
            and precision.is_within_tolerance
        )

        proof = MathematicalProof(
            proof_id=f"prf_{uuid.uuid4().hex}",
            settlement_id=settlement.settlement_id,
            session_id=settlement.session_id,
            algorithm=settlement.algorithm,
            net_positions=positions,
            payment_plan=plan,
            calculation_steps=steps,
            balance_verification=balance,
            precision_analysis=precision,
            algorithm_verifications=verifications,
            human_readable_summary=self._summarize(positions, plan, steps, balance, is_valid),
        )
        checksum = canonical_hash(proof.content_dict())
        proof = proof.model_copy(
            update={
                "checksum": checksum,
                "signature": self.sign(checksum),
                "is_valid": is_valid,
            }
        )
        if is_valid:
            logger.info(
                "Generated proof %s for settlement %s (%d steps)",
                proof.proof_id,
                proof.settlement_id,
                len(steps),
            )
        else:
            failed = [s.operation for s in steps if not s.passed]
            logger.warning(
                "Proof %s for settlement %s is INVALID (failed steps: %s)",
                proof.proof_id,
                proof.settlement_id,
                ", ".join(failed) or "none",
            )
        return proof

    @staticmethod
    def _summarize(
        positions: Sequence[NetPosition],
        plan: Sequence[PaymentInstruction],
        steps: Sequence[CalculationStep],
        balance: BalanceVerification,
        is_valid: bool,
    ) -> str:
        passed = sum(1 for s in steps if s.passed)
        lines = [
            f"Settlement of {len(positions)} player(s) with {len(plan)} payment(s).",
            f"Money in {currency.format_currency(balance.total_debits)}, "
            f"money out {currency.format_currency(balance.total_credits)}, "
            f"difference {currency.format_currency(balance.net_balance)}.",
            f"{passed} of {len(steps)} calculation steps passed.",
            "The settlement is mathematically sound."
            if is_valid
            else "The settlement FAILED verification.",
        ]
        return " ".join(lines)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_proof(
        self, proof: Union[MathematicalProof, dict, str, bytes]
    ) -> VerificationResult:
        """Independently re-verify a proof or its exported JSON form.

        Returns:
            VerificationResult with a boolean per check. Malformed input
            yields a result with every check false rather than an error.
        """
        try:
            if isinstance(proof, MathematicalProof):
                parsed = proof
            elif isinstance(proof, (str, bytes)):
                parsed = MathematicalProof.model_validate_json(proof)
            else:
                parsed = MathematicalProof.model_validate(proof)
        except (ValidationError, ValueError) as exc:
            logger.warning("Proof could not be parsed: %s", exc)
            return VerificationResult(errors=[f"Malformed proof: {exc}"])

        result = VerificationResult(proof_id=parsed.proof_id)
        positions = parsed.net_positions
        plan = parsed.payment_plan

        recomputed_checksum = canonical_hash(parsed.content_dict())
        result.checksum_valid = recomputed_checksum == parsed.checksum
        if not result.checksum_valid:
            result.errors.append("Checksum does not match proof content")

        result.signature_valid = self.signature_matches(parsed.signature, parsed.checksum)
        if not result.signature_valid:
            result.errors.append("Signature does not match checksum")

        steps = self.calculation_steps(positions, plan)
        embedded = [(s.operation, s.result, s.passed) for s in parsed.calculation_steps]
        recomputed = [(s.operation, s.result, s.passed) for s in steps]
        steps_pass = all(s.passed for s in steps)
        result.steps_valid = steps_pass and embedded == recomputed
        if embedded != recomputed:
            result.errors.append("Recorded calculation steps differ from recomputation")
        if not steps_pass:
            failed = ", ".join(s.operation for s in steps if not s.passed)
            result.errors.append(f"Calculation steps failed: {failed}")

        balance = self.balance_verification(positions, plan)
        result.balance_valid = balance.is_balanced and balance == parsed.balance_verification
        if not result.balance_valid:
            result.errors.append("Balance verification failed")

        final = residual_balances(positions, plan)
        verifications = self.algorithm_verifications(positions, final)
        result.consensus_valid = all(v.final_balances_match for v in verifications)
        if not result.consensus_valid:
            result.errors.append("Alternative algorithms disagree on final balances")

        precision = self.precision_analysis(positions, plan)
        result.precision_valid = (
            precision.is_within_tolerance and precision == parsed.precision_analysis
        )
        if not result.precision_valid:
            result.errors.append("Cumulative precision loss exceeds bound")

        result.is_valid = all(
            (
                result.checksum_valid,
                result.signature_valid,
                result.steps_valid,
                result.balance_valid,
                result.consensus_valid,
                result.precision_valid,
            )
        )
        if parsed.is_valid != result.is_valid:
            result.warnings.append(
                f"Embedded is_valid={parsed.is_valid} disagrees with verification"
            )
        if not result.is_valid:
            logger.warning(
                "Proof %s failed verification: %s",
                parsed.proof_id,
                "; ".join(result.errors),
            )
        return result

    def ensure_valid_proof(
        self, proof: Union[MathematicalProof, dict, str, bytes]
    ) -> VerificationResult:
        """Verify ``proof`` and raise if any check fails.

        Raises:
            ProofIntegrityError: If verification fails.
        """
        result = self.verify_proof(proof)
        if not result.is_valid:
            raise ProofIntegrityError(
                "Mathematical proof failed verification",
                details={"proof_id": result.proof_id, "errors": result.errors},
            )
        return result


# ----------------------------------------------------------------------
# Export
# ----------------------------------------------------------------------

def render_proof_text(proof: MathematicalProof) -> str:
    """Render a proof as a plain-text audit document."""
    lines = [
        f"Settlement proof {proof.proof_id}",
        f"Settlement: {proof.settlement_id}",
        f"Session: {proof.session_id or '-'}",
        f"Algorithm: {proof.algorithm}",
        f"Generated: {proof.generated_at.isoformat()}",
        "",
        "Net positions:",
    ]
    for position in proof.net_positions:
        lines.append(
            f"  {position.player_name:<20} {currency.format_currency(position.net_amount):>12}"
        )
    lines += ["", "Payments:"]
    if not proof.payment_plan:
        lines.append("  (none)")
    for index, instruction in enumerate(proof.payment_plan, start=1):
        lines.append(f"  {index}. {instruction.describe()}")
    lines += ["", "Calculation steps:"]
    for step in proof.calculation_steps:
        mark = "PASS" if step.passed else "FAIL"
        lines.append(f"  [{mark}] {step.step_number}. {step.description}")
        lines.append(f"         {step.formula}")
    lines += [
        "",
        proof.human_readable_summary,
        f"Checksum (SHA-256): {proof.checksum}",
    ]
    return "\n".join(lines)


def export_proof_json(proof: MathematicalProof) -> str:
    """Serialize a proof to the JSON form accepted by ``verify_proof``."""
    return json.dumps(proof.model_dump(mode="json"), indent=2, ensure_ascii=False)


def generate_proof(
    settlement: OptimizedSettlement, config: Optional[Settings] = None
) -> MathematicalProof:
    return ProofEngine(config).generate_proof(settlement)


def verify_proof(
    proof: Union[MathematicalProof, dict, str, bytes],
    config: Optional[Settings] = None,
) -> VerificationResult:
    return ProofEngine(config).verify_proof(proof)
