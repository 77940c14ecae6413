"""
Order totals engine.

Discounts are applied one after another against running balances: the order
balance and, per category and per product, the part of the cart not yet
discounted. Two discounts on the same category therefore compound; the second
one only sees what the first left behind.

Order of application is fixed: explicitly selected discounts first, then the
auto-apply discounts that are inside their window, then the manual discount.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple, Union

from .discounts import (
    CategoryTarget,
    DiscountRule,
    OrderTarget,
    ProductTarget,
    available_discounts,
    is_valid_id,
)
from .errors import ValidationError
from .money import MAX_AMOUNT, ZERO, round_currency

log = logging.getLogger("kassa.discounts")

MANUAL_DISCOUNT_NAME = "Ручная скидка"

APPLICATION_SELECTED = "selected"
APPLICATION_AUTO = "auto"
APPLICATION_MANUAL = "manual"

SKIP_INACTIVE = "inactive"
SKIP_NO_TARGET = "no_target"
SKIP_NOT_IN_ORDER = "target_not_in_order"
SKIP_EMPTY_BASE = "empty_base"
SKIP_ORDER_EXHAUSTED = "order_exhausted"
SKIP_ZERO_AMOUNT = "zero_amount"


@dataclass(frozen=True)
class OrderLineItem:
    product_id: str
    name: str
    qty: int
    unit_price: Decimal
    total: Decimal
    category_id: Optional[str] = None


@dataclass(frozen=True)
class AppliedDiscount:
    name: str
    type: str
    scope: str
    value: Decimal
    amount: Decimal
    application: str
    discount_id: Optional[str] = None
    target_id: Optional[str] = None
    target_name: Optional[str] = None


@dataclass(frozen=True)
class DiscountCalculationResult:
    subtotal: Decimal
    total: Decimal
    total_discount: Decimal
    manual_discount: Decimal
    applied_discounts: Tuple[AppliedDiscount, ...] = ()


@dataclass(frozen=True)
class Applied:
    amount: Decimal


@dataclass(frozen=True)
class Skipped:
    reason: str


Outcome = Union[Applied, Skipped]


@dataclass
class RunningBase:
    total: Decimal
    name: str = ""


class DiscountRepository(Protocol):
    def find_active_discounts(self, organization_id: str) -> List[DiscountRule]: ...

    def find_by_ids(self, ids: Sequence[str], organization_id: str) -> List[DiscountRule]: ...


class NameResolver(Protocol):
    def resolve_category_names(self, ids: Iterable[str]) -> Dict[str, str]: ...


# --- Input sanitizing ---

def sanitize_manual_discount(value) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise ValidationError("discount must be a positive number")
    if isinstance(value, float) and not math.isfinite(value):
        raise ValidationError("discount must be a positive number")
    if isinstance(value, Decimal) and not value.is_finite():
        raise ValidationError("discount must be a positive number")
    if value < 0 or value > MAX_AMOUNT:
        raise ValidationError("discount must be a positive number")
    return round_currency(value)


def collect_selected_discount_ids(selected: Optional[Iterable]) -> List[str]:
    """Distinct well-formed ids in request order; anything else is dropped."""
    ids: List[str] = []
    for raw in selected or []:
        if not is_valid_id(raw):
            continue
        normalized = raw.strip().lower()
        if normalized not in ids:
            ids.append(normalized)
    return ids


def resolve_discounts(
    selected: Iterable[DiscountRule],
    auto_candidates: Iterable[DiscountRule],
    now: datetime,
) -> List[Tuple[DiscountRule, str]]:
    """
    Selected rules (active only) tagged "selected", then auto-apply rules that
    are available at `now` tagged "auto". A rule that is both keeps "selected".
    """
    resolved: Dict[str, Tuple[DiscountRule, str]] = {}
    for rule in selected:
        if rule.is_active:
            resolved[rule.id] = (rule, APPLICATION_SELECTED)
    autos = [r for r in auto_candidates if r.auto_apply]
    for rule in available_discounts(autos, now):
        if rule.id in resolved:
            continue
        resolved[rule.id] = (rule, APPLICATION_AUTO)
    return list(resolved.values())


# --- Allocation ---

def compute_discount_amount(rule: DiscountRule, base: Decimal, remaining_order: Decimal) -> Outcome:
    """Amount `rule` takes from `base`, capped by what is left of the order."""
    if base <= 0:
        return Skipped(SKIP_EMPTY_BASE)
    if remaining_order <= 0:
        return Skipped(SKIP_ORDER_EXHAUSTED)

    if rule.type == "percentage":
        amount = round_currency(base * rule.value / 100)
    else:
        amount = round_currency(min(rule.value, base))
    amount = min(amount, remaining_order)
    if amount <= 0:
        return Skipped(SKIP_ZERO_AMOUNT)
    return Applied(amount)


class _Allocation:
    def __init__(self, subtotal: Decimal):
        self.subtotal = subtotal
        self.remaining_order = subtotal
        self.total_discount = ZERO
        self.applied: List[AppliedDiscount] = []

    def take(self, amount: Decimal) -> None:
        assert amount <= self.remaining_order, "discount exceeds remaining order balance"
        self.remaining_order = round_currency(max(self.remaining_order - amount, ZERO))
        self.total_discount = round_currency(self.total_discount + amount)

    def apply(
        self,
        rule: DiscountRule,
        application: str,
        base: Decimal,
        target_id: Optional[str] = None,
        target_name: Optional[str] = None,
    ) -> Outcome:
        outcome = compute_discount_amount(rule, base, self.remaining_order)
        if isinstance(outcome, Skipped):
            log.debug("discount %s skipped: %s", rule.id, outcome.reason)
            return outcome
        self.take(outcome.amount)
        self.applied.append(
            AppliedDiscount(
                discount_id=rule.id,
                name=rule.name,
                type=rule.type,
                scope=rule.scope,
                value=rule.value,
                amount=outcome.amount,
                target_id=target_id,
                target_name=target_name,
                application=application,
            )
        )
        return outcome


def _consume(entry: RunningBase, outcome: Outcome) -> None:
    if isinstance(outcome, Applied):
        entry.total = round_currency(max(entry.total - outcome.amount, ZERO))


def _running_totals(
    items: Sequence[OrderLineItem], category_names: Dict[str, str]
) -> Tuple[Dict[str, RunningBase], Dict[str, RunningBase]]:
    products: Dict[str, RunningBase] = {}
    categories: Dict[str, RunningBase] = {}
    for it in items:
        line_total = it.total or ZERO
        entry = products.get(it.product_id)
        if entry:
            entry.total = round_currency(entry.total + line_total)
        else:
            products[it.product_id] = RunningBase(round_currency(line_total), it.name or "")
        if it.category_id:
            cat = categories.get(it.category_id)
            if cat:
                cat.total = round_currency(cat.total + line_total)
            else:
                categories[it.category_id] = RunningBase(
                    round_currency(line_total), category_names.get(it.category_id, "")
                )
    return products, categories


def order_subtotal(items: Sequence[OrderLineItem]) -> Decimal:
    return round_currency(sum((it.total or ZERO for it in items), ZERO))


def allocate(
    items: Sequence[OrderLineItem],
    discounts: Sequence[Tuple[DiscountRule, str]],
    manual_discount: Decimal = ZERO,
    category_names: Optional[Dict[str, str]] = None,
) -> DiscountCalculationResult:
    """Pure allocation over already-resolved (rule, application) pairs."""
    subtotal = order_subtotal(items)
    if subtotal == 0:
        return DiscountCalculationResult(
            subtotal=ZERO, total=ZERO, total_discount=ZERO, manual_discount=ZERO
        )

    products, categories = _running_totals(items, category_names or {})
    alloc = _Allocation(subtotal)

    for rule, application in discounts:
        if not rule.is_active:
            log.debug("discount %s skipped: %s", rule.id, SKIP_INACTIVE)
            continue
        target = rule.target
        if isinstance(target, OrderTarget):
            alloc.apply(rule, application, alloc.remaining_order)
        elif isinstance(target, CategoryTarget):
            if not target.ids:
                log.debug("discount %s skipped: %s", rule.id, SKIP_NO_TARGET)
                continue
            for cid in target.ids:
                entry = categories.get(cid)
                if entry is None:
                    log.debug("discount %s skipped for %s: %s", rule.id, cid, SKIP_NOT_IN_ORDER)
                    continue
                _consume(entry, alloc.apply(rule, application, entry.total, cid, entry.name))
        elif isinstance(target, ProductTarget):
            if not target.id:
                log.debug("discount %s skipped: %s", rule.id, SKIP_NO_TARGET)
                continue
            entry = products.get(target.id)
            if entry is None:
                log.debug("discount %s skipped: %s", rule.id, SKIP_NOT_IN_ORDER)
                continue
            _consume(entry, alloc.apply(rule, application, entry.total, target.id, entry.name))

    manual_amount = min(manual_discount, alloc.remaining_order)
    if manual_amount > 0:
        alloc.take(manual_amount)
        alloc.applied.append(
            AppliedDiscount(
                name=MANUAL_DISCOUNT_NAME,
                type="fixed",
                scope="order",
                value=manual_amount,
                amount=manual_amount,
                application=APPLICATION_MANUAL,
            )
        )
    else:
        manual_amount = ZERO

    total = round_currency(max(subtotal - alloc.total_discount, ZERO))
    assert alloc.total_discount <= subtotal, "discounts exceed subtotal"
    assert subtotal - alloc.total_discount == total

    return DiscountCalculationResult(
        subtotal=subtotal,
        total=total,
        total_discount=alloc.total_discount,
        manual_discount=manual_amount,
        applied_discounts=tuple(alloc.applied),
    )


def calculate_order_totals(
    items: Sequence[OrderLineItem],
    *,
    repository: DiscountRepository,
    names: NameResolver,
    organization_id: str,
    selected_discount_ids: Optional[Iterable] = None,
    manual_discount=None,
    now: Optional[datetime] = None,
) -> DiscountCalculationResult:
    now = now or datetime.now()
    selected_ids = collect_selected_discount_ids(selected_discount_ids)
    manual = sanitize_manual_discount(manual_discount)

    if order_subtotal(items) == 0:
        return allocate(items, [], manual)

    selected = repository.find_by_ids(selected_ids, organization_id) if selected_ids else []
    auto_candidates = [d for d in repository.find_active_discounts(organization_id) if d.auto_apply]
    resolved = resolve_discounts(selected, auto_candidates, now)

    category_ids = sorted({it.category_id for it in items if it.category_id})
    category_names = names.resolve_category_names(category_ids) if category_ids else {}

    result = allocate(items, resolved, manual, category_names)
    log.info(
        "order totals calculated",
        extra={
            "organization_id": organization_id,
            "subtotal": str(result.subtotal),
            "total": str(result.total),
            "discounts_applied": len(result.applied_discounts),
        },
    )
    return result
