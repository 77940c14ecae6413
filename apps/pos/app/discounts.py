"""
Discount rules: the typed shape the totals engine works with, the auto-apply
availability window and validation of admin payloads.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, List, Literal, Optional, Tuple, Union

from .errors import ValidationError
from .money import MAX_AMOUNT

DiscountType = Literal["fixed", "percentage"]
DiscountScope = Literal["order", "category", "product"]

DISCOUNT_TYPES = ("fixed", "percentage")
DISCOUNT_SCOPES = ("order", "category", "product")

_ID_RE = re.compile(r"^[0-9a-fA-F]{24}$")
_TIME_RE = re.compile(r"^\d{2}:\d{2}$")


def is_valid_id(value: Any) -> bool:
    return isinstance(value, str) and bool(_ID_RE.match(value.strip()))


@dataclass(frozen=True)
class OrderTarget:
    pass


@dataclass(frozen=True)
class CategoryTarget:
    ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ProductTarget:
    id: Optional[str] = None


Target = Union[OrderTarget, CategoryTarget, ProductTarget]


def build_target(
    scope: str,
    category_id: Optional[str] = None,
    category_ids: Optional[Iterable[str]] = None,
    product_id: Optional[str] = None,
) -> Target:
    if scope == "category":
        ids: List[str] = []
        for cid in category_ids or []:
            if cid and cid not in ids:
                ids.append(cid)
        if not ids and category_id:
            ids = [category_id]
        return CategoryTarget(ids=tuple(ids))
    if scope == "product":
        return ProductTarget(id=product_id or None)
    return OrderTarget()


@dataclass(frozen=True)
class DiscountRule:
    id: str
    name: str
    type: DiscountType
    scope: DiscountScope
    value: Decimal
    target: Target = field(default_factory=OrderTarget)
    auto_apply: bool = False
    auto_apply_days: frozenset = frozenset()
    auto_apply_start: Optional[str] = None
    auto_apply_end: Optional[str] = None
    is_active: bool = True


# --- Availability ---

def parse_minutes(value: Optional[str]) -> Optional[int]:
    """'HH:MM' -> minutes since midnight, None when absent or unparsable."""
    if not value:
        return None
    hours, _, minutes = value.partition(":")
    try:
        return int(hours) * 60 + int(minutes)
    except ValueError:
        return None


def weekday_index(now: datetime) -> int:
    """Weekday with Sunday as 0, the numbering stored in auto_apply_days."""
    return now.isoweekday() % 7


def is_within_time_window(rule: DiscountRule, now: datetime) -> bool:
    if not rule.auto_apply:
        return True

    if rule.auto_apply_days and weekday_index(now) not in rule.auto_apply_days:
        return False

    start = parse_minutes(rule.auto_apply_start)
    end = parse_minutes(rule.auto_apply_end)
    if start is None or end is None:
        return True

    current = now.hour * 60 + now.minute
    if start <= end:
        return start <= current <= end
    # window wraps midnight, e.g. 22:00-02:00
    return current >= start or current <= end


def available_discounts(discounts: Iterable[DiscountRule], now: datetime) -> List[DiscountRule]:
    return [d for d in discounts if d.is_active and is_within_time_window(d, now)]


# --- Admin payloads ---

def normalize_string(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def parse_bool(value: Any, fallback: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        if value.lower() == "true":
            return True
        if value.lower() == "false":
            return False
    return fallback


def parse_number(value: Any) -> Optional[Decimal]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        num = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not num.is_finite():
        return None
    return num


def parse_days(value: Any) -> Optional[List[int]]:
    if not isinstance(value, (list, tuple)):
        return None
    days: List[int] = []
    for entry in value:
        try:
            day = int(entry)
        except (TypeError, ValueError):
            continue
        if isinstance(entry, float) and entry != day:
            continue
        if 0 <= day <= 6 and day not in days:
            days.append(day)
    return days or None


def parse_time(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    if not _TIME_RE.match(value):
        return None
    h, m = (int(p) for p in value.split(":"))
    if not (0 <= h <= 23 and 0 <= m <= 59):
        return None
    return f"{h:02d}:{m:02d}"


def _parse_id(value: Any, message: str) -> Optional[str]:
    if not value:
        return None
    if not is_valid_id(value):
        raise ValidationError(message)
    return value.strip().lower()


@dataclass
class ParsedDiscount:
    name: Optional[str] = None
    description: Optional[str] = None
    type: Optional[str] = None
    scope: Optional[str] = None
    value: Optional[Decimal] = None
    category_id: Optional[str] = None
    category_ids: Optional[List[str]] = None
    product_id: Optional[str] = None
    auto_apply: Optional[bool] = None
    auto_apply_days: Optional[List[int]] = None
    auto_apply_start: Optional[str] = None
    auto_apply_end: Optional[str] = None
    is_active: Optional[bool] = None

    def updates(self) -> dict:
        """Column updates for a partial edit; disabling auto-apply clears the window."""
        out = {k: v for k, v in vars(self).items() if v is not None}
        if self.auto_apply is False:
            out["auto_apply_days"] = None
            out["auto_apply_start"] = None
            out["auto_apply_end"] = None
        return out


def _check_value(value: Optional[Decimal]) -> None:
    if value is None or value < 0:
        raise ValidationError("discount value required")
    if value > MAX_AMOUNT:
        raise ValidationError("discount value is too large")


def check_discount_rule(
    type: Optional[str],
    scope: Optional[str],
    value: Optional[Decimal],
    category_ids: Iterable[str] = (),
    product_id: Optional[str] = None,
    auto_apply: bool = False,
    auto_apply_start: Optional[str] = None,
    auto_apply_end: Optional[str] = None,
) -> None:
    """Cross-field rules of a complete discount, new or edited."""
    _check_value(value)
    if type == "percentage" and value > 100:
        raise ValidationError("percentage discount must be within 0-100")
    if scope == "category" and not list(category_ids):
        raise ValidationError("category discount needs a category")
    if scope == "product" and not product_id:
        raise ValidationError("product discount needs a product")
    if auto_apply and scope != "category":
        raise ValidationError("auto-apply is only available for category discounts")
    if auto_apply and not (auto_apply_start and auto_apply_end):
        raise ValidationError("auto-apply needs a start and end time")


def parse_discount_payload(payload: dict, partial: bool = False) -> ParsedDiscount:
    """
    Validate a loosely typed create/update body.

    With partial=True (PATCH) missing fields stay None and only cross-field
    rules that the body itself can violate are enforced.
    """
    raw_type = payload.get("type")
    raw_scope = payload.get("scope")
    out = ParsedDiscount(
        name=normalize_string(payload.get("name")),
        description=normalize_string(payload.get("description")),
        type=raw_type if raw_type in DISCOUNT_TYPES else None,
        scope=raw_scope if raw_scope in DISCOUNT_SCOPES else None,
        value=parse_number(payload.get("value")),
        auto_apply_days=parse_days(payload.get("auto_apply_days")),
        auto_apply_start=parse_time(payload.get("auto_apply_start")),
        auto_apply_end=parse_time(payload.get("auto_apply_end")),
    )
    if not (payload.get("auto_apply") is None and partial):
        out.auto_apply = parse_bool(payload.get("auto_apply"), False)
    if not (payload.get("is_active") is None and partial):
        out.is_active = parse_bool(payload.get("is_active"), True)

    out.category_id = _parse_id(payload.get("category_id"), "invalid category id")
    out.product_id = _parse_id(payload.get("product_id"), "invalid product id")
    raw_cids = payload.get("category_ids")
    if raw_cids is not None:
        if not isinstance(raw_cids, (list, tuple)):
            raise ValidationError("invalid category id")
        cids: List[str] = []
        for cid in raw_cids:
            parsed = _parse_id(cid, "invalid category id")
            if parsed and parsed not in cids:
                cids.append(parsed)
        out.category_ids = cids

    if not partial:
        if not out.name:
            raise ValidationError("discount name required")
        if not out.type:
            raise ValidationError("discount type required")
        if not out.scope:
            raise ValidationError("discount scope required")
        check_discount_rule(
            out.type,
            out.scope,
            out.value,
            category_ids=out.category_ids or ([out.category_id] if out.category_id else []),
            product_id=out.product_id,
            auto_apply=bool(out.auto_apply),
            auto_apply_start=out.auto_apply_start,
            auto_apply_end=out.auto_apply_end,
        )
        return out

    # partial: only what the body itself can contradict; the caller re-checks
    # the merged row with check_discount_rule
    if payload.get("value") is not None:
        _check_value(out.value)
    if out.type == "percentage" and out.value is not None and out.value > 100:
        raise ValidationError("percentage discount must be within 0-100")
    if out.auto_apply and out.scope in ("order", "product"):
        raise ValidationError("auto-apply is only available for category discounts")
    return out
