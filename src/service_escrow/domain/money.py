"""Fixed-point money helpers.

All amounts are ``Decimal`` with two fraction digits. Two amounts are
considered equal when they differ by at most one cent, which absorbs
rounding in externally supplied totals. Gateway amounts are integers in
minor units (cents/bani).
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
TOLERANCE = CENT


def to_money(value: Decimal | int | float | str) -> Decimal:
    """Coerce ``value`` to a 2-digit Decimal, rounding half-up."""
    if isinstance(value, float):
        value = repr(value)
    try:
        amount = value if isinstance(value, Decimal) else Decimal(value)
    except InvalidOperation as exc:
        raise ValueError(f"Not a monetary amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"Not a monetary amount: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def amounts_equal(left: Decimal, right: Decimal) -> bool:
    return abs(to_money(left) - to_money(right)) <= TOLERANCE


def to_minor_units(amount: Decimal) -> int:
    """Convert a major-unit amount to integer minor units (half-up)."""
    return int((to_money(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount_minor: int) -> Decimal:
    return to_money(Decimal(amount_minor) / 100)
