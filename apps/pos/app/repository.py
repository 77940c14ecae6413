"""SQLAlchemy-backed collaborators of the totals engine."""
from __future__ import annotations

import json
from typing import Dict, Iterable, List, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from .discounts import DiscountRule, build_target
from .models import Category, Discount, Product
from .money import from_cents


def _load_json_list(raw) -> list:
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except ValueError:
        return []
    return data if isinstance(data, list) else []


def rule_from_row(row: Discount) -> DiscountRule:
    days = frozenset(d for d in _load_json_list(row.auto_apply_days_json) if isinstance(d, int))
    return DiscountRule(
        id=row.id,
        name=row.name,
        type=row.type,  # type: ignore[arg-type]
        scope=row.scope,  # type: ignore[arg-type]
        value=from_cents(row.value_cents or 0),
        target=build_target(
            row.scope,
            category_id=row.category_id,
            category_ids=[c for c in _load_json_list(row.category_ids_json) if isinstance(c, str)],
            product_id=row.product_id,
        ),
        auto_apply=bool(row.auto_apply),
        auto_apply_days=days,
        auto_apply_start=row.auto_apply_start,
        auto_apply_end=row.auto_apply_end,
        is_active=bool(row.is_active),
    )


class SqlDiscountRepository:
    """Active discounts of one organization, in creation order."""

    def __init__(self, s: Session):
        self.s = s

    def find_active_discounts(self, organization_id: str) -> List[DiscountRule]:
        stmt = (
            select(Discount)
            .where(Discount.organization_id == organization_id, Discount.is_active.is_(True))
            .order_by(Discount.id)
        )
        return [rule_from_row(r) for r in self.s.execute(stmt).scalars().all()]

    def find_by_ids(self, ids: Sequence[str], organization_id: str) -> List[DiscountRule]:
        if not ids:
            return []
        stmt = (
            select(Discount)
            .where(
                Discount.id.in_(list(ids)),
                Discount.organization_id == organization_id,
                Discount.is_active.is_(True),
            )
            .order_by(Discount.id)
        )
        return [rule_from_row(r) for r in self.s.execute(stmt).scalars().all()]


class SqlNameResolver:
    def __init__(self, s: Session, organization_id: str):
        self.s = s
        self.organization_id = organization_id

    def resolve_category_names(self, ids: Iterable[str]) -> Dict[str, str]:
        ids = list(ids)
        if not ids:
            return {}
        stmt = select(Category).where(Category.id.in_(ids), Category.organization_id == self.organization_id)
        return {c.id: c.name or "" for c in self.s.execute(stmt).scalars().all()}

    def resolve_product_names(self, ids: Iterable[str]) -> Dict[str, str]:
        ids = list(ids)
        if not ids:
            return {}
        stmt = select(Product).where(Product.id.in_(ids), Product.organization_id == self.organization_id)
        return {p.id: p.name or "" for p in self.s.execute(stmt).scalars().all()}
