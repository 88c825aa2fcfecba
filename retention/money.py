"""
Fixed-point money helpers.

Amounts are stored and accumulated as integer cents. Decimal values are
rounded half-up to two places only when crossing into or out of cents.
"""

import math
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Union

from .exceptions import InvalidInput

Number = Union[int, float, str, Decimal]

CENT = Decimal("0.01")


def to_decimal(value: Number) -> Decimal:
    """Convert a number to Decimal without binary float artefacts."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise InvalidInput(f"Amount must be finite (got {value!r})")
        # repr of a float is the shortest string that round-trips
        return Decimal(repr(value))
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise InvalidInput(f"Amount must be numeric (got {value!r})") from exc


def to_cents(value: Optional[Number]) -> Optional[int]:
    """Convert an amount to integer cents, rounding half-up."""
    if value is None:
        return None
    amount = to_decimal(value)
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: Optional[int]) -> Optional[Decimal]:
    """Convert integer cents back to a two-place Decimal."""
    if cents is None:
        return None
    return (Decimal(cents) / 100).quantize(CENT, rounding=ROUND_HALF_UP)


def share_of_cents(cents: int, share: Number) -> int:
    """Take a fractional share of an amount in cents, rounding half-up."""
    portion = Decimal(cents) * to_decimal(share)
    return int(portion.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def round_half_up(value: float) -> int:
    """Round to the nearest integer with .5 going up."""
    return int(math.floor(value + 0.5))


def mean_of_cents(total_cents: int, count: int) -> Decimal:
    """Average amount per item, as a two-place Decimal."""
    if not count:
        return from_cents(0)
    average = Decimal(total_cents) / Decimal(count) / 100
    return average.quantize(CENT, rounding=ROUND_HALF_UP)
