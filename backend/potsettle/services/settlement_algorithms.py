"""Payment plan generators.

Pure functions. Each takes a list of ``NetPosition`` and returns an
ordered list of ``PaymentInstruction``. All arithmetic runs on integer
cents so a plan never carries fractions of a cent, and every tie is
broken by player id so the same input always yields the same plan.
"""

from dataclasses import dataclass
from fractions import Fraction
from typing import Callable, Sequence

from potsettle.models.common import SettlementAlgorithm
from potsettle.models.positions import NetPosition, PaymentInstruction
from potsettle.services.currency import from_minor_units, to_minor_units


@dataclass
class _Party:
    player_id: str
    name: str
    remaining: int


def _partition(
    net_positions: Sequence[NetPosition],
) -> tuple[list[_Party], list[_Party]]:
    """Split positions into creditors and debtors with remaining magnitudes in cents."""
    creditors: list[_Party] = []
    debtors: list[_Party] = []
    for position in net_positions:
        cents = to_minor_units(position.net_amount)
        if cents > 0:
            creditors.append(_Party(position.player_id, position.player_name, cents))
        elif cents < 0:
            debtors.append(_Party(position.player_id, position.player_name, -cents))
    return creditors, debtors


def _instruction(debtor: _Party, creditor: _Party, cents: int) -> PaymentInstruction:
    return PaymentInstruction(
        from_player_id=debtor.player_id,
        from_player_name=debtor.name,
        to_player_id=creditor.player_id,
        to_player_name=creditor.name,
        amount=from_minor_units(cents),
    )


def _largest_first(party: _Party) -> tuple[int, str]:
    return (-party.remaining, party.player_id)


# ---------------------------------------------------------------------------
# Greedy debt reduction
# ---------------------------------------------------------------------------

def greedy_settlement(net_positions: Sequence[NetPosition]) -> list[PaymentInstruction]:
    """Match the largest remaining debtor with the largest remaining creditor.

    Each round zeroes at least one party, so the plan has at most
    ``len(non-zero positions) - 1`` instructions.
    """
    creditors, debtors = _partition(net_positions)
    plan: list[PaymentInstruction] = []

    while creditors and debtors:
        creditor = min(creditors, key=_largest_first)
        debtor = min(debtors, key=_largest_first)
        transfer = min(creditor.remaining, debtor.remaining)

        plan.append(_instruction(debtor, creditor, transfer))
        creditor.remaining -= transfer
        debtor.remaining -= transfer

        creditors = [c for c in creditors if c.remaining > 0]
        debtors = [d for d in debtors if d.remaining > 0]

    return plan


# ---------------------------------------------------------------------------
# Direct (pairwise proportional) baseline
# ---------------------------------------------------------------------------

def _proportional_split(amount: int, weights: list[int]) -> list[int]:
    """Split ``amount`` cents across ``weights`` by largest remainder.

    Shares never exceed their weight when ``amount <= sum(weights)``.
    """
    total = sum(weights)
    if total == 0:
        return [0] * len(weights)
    shares = [amount * w // total for w in weights]
    remainders = [amount * w % total for w in weights]
    leftover = amount - sum(shares)
    order = sorted(range(len(weights)), key=lambda i: (-remainders[i], i))
    for index in order[:leftover]:
        shares[index] += 1
    return shares


@dataclass(frozen=True)
class ShareRounding:
    """A proportional share before and after allocation to whole cents."""
    debtor_id: str
    creditor_id: str
    exact_cents: Fraction
    allocated_cents: int


def _direct_allocation(
    net_positions: Sequence[NetPosition],
) -> tuple[list[PaymentInstruction], list[ShareRounding]]:
    creditors, debtors = _partition(net_positions)
    creditors.sort(key=_largest_first)
    debtors.sort(key=_largest_first)
    plan: list[PaymentInstruction] = []
    roundings: list[ShareRounding] = []

    for debtor in debtors:
        weights = [c.remaining for c in creditors]
        total = sum(weights)
        payable = min(debtor.remaining, total)
        shares = _proportional_split(payable, weights)
        for creditor, weight, share in zip(creditors, weights, shares):
            if total:
                exact = Fraction(payable * weight, total)
                if exact != share:
                    roundings.append(
                        ShareRounding(debtor.player_id, creditor.player_id, exact, share)
                    )
            if share <= 0:
                continue
            plan.append(_instruction(debtor, creditor, share))
            creditor.remaining -= share
        debtor.remaining -= payable

    return plan, roundings


def direct_settlement(net_positions: Sequence[NetPosition]) -> list[PaymentInstruction]:
    """Every debtor pays every creditor in proportion to what is still owed.

    No netting through third parties: with D debtors and C creditors this
    produces up to ``D * C`` instructions. Shares are allocated in whole
    cents so each row and column closes exactly.
    """
    return _direct_allocation(net_positions)[0]


def direct_share_roundings(net_positions: Sequence[NetPosition]) -> list[ShareRounding]:
    """Largest-remainder adjustments made while building the direct plan."""
    return _direct_allocation(net_positions)[1]


# ---------------------------------------------------------------------------
# Hub-based
# ---------------------------------------------------------------------------

def hub_settlement(net_positions: Sequence[NetPosition]) -> list[PaymentInstruction]:
    """Route every payment through one hub player.

    The hub is the non-zero player whose position is closest to zero, so
    the person handling the money has the least personal stake in it.
    Debtors pay the hub first, then the hub pays every creditor.
    """
    creditors, debtors = _partition(net_positions)
    parties = creditors + debtors
    if len(parties) < 2:
        return []

    hub = min(parties, key=lambda p: (p.remaining, p.player_id))
    plan: list[PaymentInstruction] = []

    for debtor in sorted(debtors, key=_largest_first):
        if debtor is not hub:
            plan.append(_instruction(debtor, hub, debtor.remaining))
    for creditor in sorted(creditors, key=_largest_first):
        if creditor is not hub:
            plan.append(_instruction(hub, creditor, creditor.remaining))
    return plan


# ---------------------------------------------------------------------------
# Balanced flow
# ---------------------------------------------------------------------------

def balanced_flow_settlement(
    net_positions: Sequence[NetPosition],
) -> list[PaymentInstruction]:
    """Two-pointer sweep: smallest debts first against largest credits first.

    Small debtors settle in a single payment wherever possible.
    """
    creditors, debtors = _partition(net_positions)
    creditors.sort(key=_largest_first)
    debtors.sort(key=lambda p: (p.remaining, p.player_id))
    plan: list[PaymentInstruction] = []

    i = j = 0
    while i < len(debtors) and j < len(creditors):
        debtor = debtors[i]
        creditor = creditors[j]
        transfer = min(debtor.remaining, creditor.remaining)
        plan.append(_instruction(debtor, creditor, transfer))
        debtor.remaining -= transfer
        creditor.remaining -= transfer
        if debtor.remaining == 0:
            i += 1
        if creditor.remaining == 0:
            j += 1
    return plan


ALGORITHMS: dict[SettlementAlgorithm, Callable[[Sequence[NetPosition]], list[PaymentInstruction]]] = {
    SettlementAlgorithm.GREEDY: greedy_settlement,
    SettlementAlgorithm.DIRECT: direct_settlement,
    SettlementAlgorithm.HUB_BASED: hub_settlement,
    SettlementAlgorithm.BALANCED_FLOW: balanced_flow_settlement,
}


def run_algorithm(
    algorithm: SettlementAlgorithm, net_positions: Sequence[NetPosition]
) -> list[PaymentInstruction]:
    return ALGORITHMS[SettlementAlgorithm(algorithm)](net_positions)
