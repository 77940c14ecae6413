"""
Currency helpers shared by the totals engine and the fiscal splitter.

Amounts travel as Decimal quantized to cents. Proportional work happens in
integer cents; conversion happens only at the edges.
"""
from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Union

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
# Largest amount accepted from clients; keeps cents well inside BigInteger.
MAX_AMOUNT = Decimal("1000000000")

Number = Union[Decimal, int, float, str]


def _as_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() keeps 0.1 as 0.1 instead of its binary expansion.
    return Decimal(str(value))


def round_currency(value: Number) -> Decimal:
    """Round to the nearest cent, halves away from zero. Negatives pass through."""
    return _as_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(value: Number) -> int:
    """Integer cents of a money value, clamped at zero."""
    cents = int(round_currency(value) * 100)
    return max(0, cents)


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)
