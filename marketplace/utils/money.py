"""Fixed-point currency helpers.

All escrow amounts are integers in the currency's minor unit. Percentages are
Decimals with at most two decimal places so that a term list summing to
exactly 100 can be checked without float drift.
"""

from collections.abc import Iterable
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

HUNDRED = Decimal("100")
PERCENT_QUANTUM = Decimal("0.01")


def to_percentage(value: Decimal | int | float | str) -> Decimal:
    """Coerce a percentage to a two-place Decimal. Raises ValueError on junk or excess precision."""
    try:
        pct = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Invalid percentage: {value!r}")
    if not pct.is_finite():
        raise ValueError(f"Invalid percentage: {value!r}")
    try:
        quantized = pct.quantize(PERCENT_QUANTUM)
    except InvalidOperation:
        # too many digits for the decimal context, e.g. 1E+30
        raise ValueError(f"Percentage {value} is out of range")
    if pct != quantized:
        raise ValueError(f"Percentage {value} has more than two decimal places")
    return quantized


def percentage_sum(percentages: Iterable[Decimal]) -> Decimal:
    return sum(percentages, Decimal("0"))


def amount_for_percentage(total: int, percentage: Decimal) -> int:
    """round(total * percentage / 100), halves rounded up, as minor units."""
    raw = Decimal(total) * percentage / HUNDRED
    return int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_amount(amount: int, currency: str) -> str:
    return f"{currency} {amount:,}"
