from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal


def round_minor(value: float) -> int:
    """Round a fractional minor-unit amount half away from zero."""
    return int(Decimal(str(value)).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def percentage_of(amount: int, percentage: float) -> int:
    return round_minor(amount * percentage / 100)
