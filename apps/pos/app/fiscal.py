"""
Receipt lines for fiscal registers.

Fiscal APIs print one amount per line and require the lines to add up to the
order total exactly. Line totals on the order are pre-discount, so the order
total is spread back over the lines with the largest-remainder method in
integer cents.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List, Sequence

from .money import from_cents, to_cents

ONE_UNIT_CENTS = 100


@dataclass(frozen=True)
class FiscalLineItem:
    name: str
    qty: int
    total: Decimal


def _is_valid(item: Any) -> bool:
    name = getattr(item, "name", None)
    qty = getattr(item, "qty", None)
    if not isinstance(name, str) or not name.strip():
        return False
    if isinstance(qty, bool) or not isinstance(qty, (int, float, Decimal)):
        return False
    return qty > 0


def _largest_remainder(sources: List[int], target: int) -> List[int]:
    subtotal = sum(sources)
    shares = []
    for idx, cents in enumerate(sources):
        floored, rest = divmod(cents * target, subtotal)
        # `rest` is the fractional part scaled by `subtotal`; comparable across lines.
        shares.append([idx, floored, rest])

    remainder = target - sum(s[1] for s in shares)
    ranked = sorted(shares, key=lambda s: (-s[2], -sources[s[0]], s[0]))
    for share in ranked:
        if remainder <= 0:
            break
        share[1] += 1
        remainder -= 1

    out = [s[1] for s in shares]
    delta = target - sum(out)
    if delta:
        out[0] += delta
    return out


def split_for_fiscal(items: Sequence[Any], authoritative_total) -> List[FiscalLineItem]:
    valid = [it for it in items or [] if _is_valid(it)]
    if not valid:
        return []

    target = to_cents(authoritative_total)
    sources = [to_cents(getattr(it, "total", None) or 0) for it in valid]
    subtotal = sum(sources)

    if target == ONE_UNIT_CENTS and subtotal > target:
        # One unit over many lines: print it on the biggest line instead of
        # scattering cents across the receipt.
        best = max(range(len(sources)), key=lambda i: (sources[i], -i))
        cents = [target if i == best else 0 for i in range(len(valid))]
    elif subtotal <= 0:
        cents = [target if i == 0 else 0 for i in range(len(valid))]
    else:
        cents = _largest_remainder(sources, target)

    return [
        FiscalLineItem(name=it.name, qty=it.qty, total=from_cents(c))
        for it, c in zip(valid, cents)
    ]
