"""Exact currency arithmetic.

Pure functions, no database access. Every operation converts its operands
to integer minor units (cents) before combining them, so binary floating
point error never leaks into a total. Floats are read through their
shortest ``repr`` (``0.1`` is ``Decimal("0.1")``, not the binary value).
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Union

Amount = Union[Decimal, int, float, str]

MINOR_UNITS = 100
CENT = Decimal("0.01")
ZERO = Decimal("0.00")
# Largest magnitude any stored or computed amount may have.
MAX_AMOUNT = Decimal("1000000000000")


def to_decimal(value: Amount) -> Decimal:
    """Convert any supported amount representation to a Decimal.

    Raises:
        ValueError: If the value is not a finite number.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid currency amount: {value!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, float):
        result = Decimal(repr(value))
    else:
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise ValueError(f"Invalid currency amount: {value!r}") from exc
    if not result.is_finite():
        raise ValueError(f"Invalid currency amount: {value!r}")
    return result


def to_minor_units(value: Amount) -> int:
    """Round half away from zero to whole cents and return the integer count.

    Raises:
        ValueError: If the value is not a finite number or is too large to
            hold exactly in cents.
    """
    scaled = to_decimal(value) * MINOR_UNITS
    try:
        return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except InvalidOperation as exc:
        raise ValueError(f"Currency amount out of range: {value!r}") from exc


def from_minor_units(cents: int) -> Decimal:
    """Convert an integer number of cents back to a two-place Decimal."""
    return (Decimal(cents) / MINOR_UNITS).quantize(CENT)


def round_amount(value: Amount) -> Decimal:
    """Round to the minor unit, half away from zero."""
    return from_minor_units(to_minor_units(value))


def add(a: Amount, b: Amount) -> Decimal:
    return from_minor_units(to_minor_units(a) + to_minor_units(b))


def subtract(a: Amount, b: Amount) -> Decimal:
    return from_minor_units(to_minor_units(a) - to_minor_units(b))


def sum_amounts(values: Iterable[Amount]) -> Decimal:
    """Sum many amounts in minor units."""
    return from_minor_units(sum(to_minor_units(v) for v in values))


def negate(value: Amount) -> Decimal:
    return from_minor_units(-to_minor_units(value))


def abs_amount(value: Amount) -> Decimal:
    return from_minor_units(abs(to_minor_units(value)))


def is_valid_amount(value: Amount) -> bool:
    """True when the amount is finite and has no fractional cents."""
    try:
        scaled = to_decimal(value) * MINOR_UNITS
    except ValueError:
        return False
    return scaled == scaled.to_integral_value()


def within_tolerance(a: Amount, b: Amount, tolerance: Amount = CENT) -> bool:
    """True when ``|a - b| <= tolerance``, compared without rounding a or b."""
    return abs(to_decimal(a) - to_decimal(b)) <= to_decimal(tolerance)


def format_currency(value: Amount, symbol: str = "$") -> str:
    """Format as ``$1,234.50`` (negative values as ``-$1,234.50``)."""
    amount = round_amount(value)
    sign = "-" if amount < 0 else ""
    return f"{sign}{symbol}{abs(amount):,.2f}"
