import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from fastapi import FastAPI, APIRouter, HTTPException, Depends, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ConfigDict
from sqlalchemy import create_engine, delete, select
from sqlalchemy.orm import Session

from kassa_shared import (
    RequestIDMiddleware,
    add_standard_health,
    configure_cors,
    get_request_id,
    setup_json_logging,
)

from .discounts import available_discounts, check_discount_rule, is_valid_id, parse_discount_payload
from .errors import ValidationError
from .fiscal import split_for_fiscal
from .models import DB_URL, Base, Category, Discount, Order, OrderLine, Product, _env_or
from .money import MAX_AMOUNT, from_cents, round_currency, to_cents
from .repository import SqlDiscountRepository, SqlNameResolver, rule_from_row
from .totals import (
    AppliedDiscount,
    DiscountCalculationResult,
    OrderLineItem,
    calculate_order_totals,
    collect_selected_discount_ids,
    sanitize_manual_discount,
)

ENV = _env_or("ENV", "dev").lower()
POS_TIMEZONE = _env_or("POS_TIMEZONE", "UTC")
_TZ = timezone.utc if POS_TIMEZONE.upper() == "UTC" else ZoneInfo(POS_TIMEZONE)

log = logging.getLogger("kassa.pos")

engine = create_engine(
    DB_URL,
    future=True,
    connect_args=({"check_same_thread": False} if DB_URL.startswith("sqlite") else {}),
)


def get_session():
    with Session(engine) as s:
        yield s


def on_startup():
    Base.metadata.create_all(engine)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    on_startup()
    try:
        yield
    finally:
        engine.dispose()


app = FastAPI(title="POS API", version="0.1.0", lifespan=_lifespan)
setup_json_logging()
app.add_middleware(RequestIDMiddleware)
configure_cors(app, os.getenv("ALLOWED_ORIGINS", "*"))
add_standard_health(app, extra=lambda: {"timezone": POS_TIMEZONE})
router = APIRouter()


def _now() -> datetime:
    return datetime.now(_TZ)


@app.exception_handler(ValidationError)
async def _validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": exc.message})


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    rid = get_request_id()
    logging.getLogger("kassa.errors").exception("unhandled exception", extra={"request_id": rid})
    if ENV in ("prod", "production", "staging"):
        return JSONResponse(status_code=500, content={"detail": "internal error", "request_id": rid})
    return JSONResponse(status_code=500, content={"detail": str(exc), "request_id": rid})


def require_org(x_organization_id: Optional[str] = Header(default=None)) -> str:
    if not x_organization_id or not is_valid_id(x_organization_id):
        raise HTTPException(status_code=403, detail="organization context is required")
    return x_organization_id.strip().lower()


# --- Schemas ---
class DiscountPayload(BaseModel):
    # validated by parse_discount_payload
    name: Any = None
    description: Any = None
    type: Any = None
    scope: Any = None
    value: Any = None
    category_id: Any = None
    category_ids: Any = None
    product_id: Any = None
    auto_apply: Any = None
    auto_apply_days: Any = None
    auto_apply_start: Any = None
    auto_apply_end: Any = None
    is_active: Any = None


class DiscountOut(BaseModel):
    id: str
    name: str
    description: Optional[str]
    type: str
    scope: str
    value: float
    category_id: Optional[str]
    category_ids: List[str]
    product_id: Optional[str]
    target_name: Optional[str]
    auto_apply: bool
    auto_apply_days: Optional[List[int]]
    auto_apply_start: Optional[str]
    auto_apply_end: Optional[str]
    is_active: bool
    created_at: Optional[datetime]
    updated_at: Optional[datetime]


class AppliedDiscountOut(BaseModel):
    discount_id: Optional[str] = None
    name: str
    type: str
    scope: str
    value: float
    amount: float
    target_id: Optional[str] = None
    target_name: Optional[str] = None
    application: str


class TotalsOut(BaseModel):
    subtotal: float
    total: float
    total_discount: float
    manual_discount: float
    applied_discounts: List[AppliedDiscountOut]


class OrderLineIn(BaseModel):
    product_id: str
    qty: int = Field(ge=1, le=10000)
    name: Optional[str] = None
    unit_price: Optional[Decimal] = Field(default=None, ge=0, le=MAX_AMOUNT)  # overrides catalog price (modifiers)


class TotalsPreviewIn(BaseModel):
    lines: List[OrderLineIn]
    selected_discount_ids: List[Any] = Field(default_factory=list)
    manual_discount: Any = None


class OrderCreate(TotalsPreviewIn):
    pass


class OrderLinesUpdate(BaseModel):
    lines: List[OrderLineIn]


class OrderDiscountsUpdate(BaseModel):
    selected_discount_ids: List[Any] = Field(default_factory=list)
    manual_discount: Any = None


class PaymentIn(BaseModel):
    method: str = "cash"
    amount: Decimal = Field(ge=0, le=MAX_AMOUNT)


class OrderLineOut(BaseModel):
    product_id: str
    name: str
    category_id: Optional[str]
    qty: int
    unit_price: float
    total: float


class OrderOut(BaseModel):
    id: str
    status: str
    subtotal: float
    discount: float
    total: float
    manual_discount: float
    requested_manual_discount: float
    selected_discount_ids: List[str]
    applied_discounts: List[AppliedDiscountOut]
    lines: List[OrderLineOut]
    payment_method: Optional[str]
    created_at: Optional[datetime]
    paid_at: Optional[datetime]
    model_config = ConfigDict(from_attributes=True)


class FiscalLineOut(BaseModel):
    name: str
    qty: int
    total: float


# --- Discounts ---
def _json_list(raw: Optional[str]) -> list:
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except ValueError:
        return []
    return data if isinstance(data, list) else []


def _discount_out(s: Session, org: str, rows: List[Discount]) -> List[DiscountOut]:
    names = SqlNameResolver(s, org)
    cat_ids = set()
    prod_ids = set()
    for d in rows:
        if d.category_id:
            cat_ids.add(d.category_id)
        cat_ids.update(_json_list(d.category_ids_json))
        if d.product_id:
            prod_ids.add(d.product_id)
    cat_names = names.resolve_category_names(sorted(cat_ids))
    prod_names = names.resolve_product_names(sorted(prod_ids))

    out = []
    for d in rows:
        cids = _json_list(d.category_ids_json)
        target_name = None
        if d.scope == "category":
            targets = cids or ([d.category_id] if d.category_id else [])
            found = [cat_names[c] for c in targets if c in cat_names]
            target_name = ", ".join(found) if found else None
        elif d.scope == "product" and d.product_id:
            target_name = prod_names.get(d.product_id)
        out.append(
            DiscountOut(
                id=d.id,
                name=d.name,
                description=d.description,
                type=d.type,
                scope=d.scope,
                value=float(from_cents(d.value_cents or 0)),
                category_id=d.category_id,
                category_ids=cids,
                product_id=d.product_id,
                target_name=target_name,
                auto_apply=bool(d.auto_apply),
                auto_apply_days=_json_list(d.auto_apply_days_json) or None,
                auto_apply_start=d.auto_apply_start,
                auto_apply_end=d.auto_apply_end,
                is_active=bool(d.is_active),
                created_at=d.created_at,
                updated_at=d.updated_at,
            )
        )
    return out


def _ensure_targets_exist(s: Session, org: str, category_ids: List[str], product_id: Optional[str]):
    if category_ids:
        found = s.execute(
            select(Category.id).where(Category.id.in_(category_ids), Category.organization_id == org)
        ).scalars().all()
        if len(set(found)) != len(set(category_ids)):
            raise ValidationError("category not found")
    if product_id:
        p = s.execute(
            select(Product.id).where(Product.id == product_id, Product.organization_id == org)
        ).scalar()
        if not p:
            raise ValidationError("product not found")


def _apply_updates(d: Discount, updates: Dict[str, Any]):
    for key, value in updates.items():
        if key == "value":
            d.value_cents = to_cents(value)
        elif key == "category_ids":
            d.category_ids_json = json.dumps(value) if value else None
        elif key == "auto_apply_days":
            d.auto_apply_days_json = json.dumps(value) if value else None
        else:
            setattr(d, key, value)


def _check_merged(d: Discount, updates: Dict[str, Any]):
    """Run the create-time rules on the stored row with `updates` laid over it."""
    merged = {
        "type": d.type,
        "scope": d.scope,
        "value": from_cents(d.value_cents or 0),
        "category_id": d.category_id,
        "category_ids": _json_list(d.category_ids_json),
        "product_id": d.product_id,
        "auto_apply": bool(d.auto_apply),
        "auto_apply_start": d.auto_apply_start,
        "auto_apply_end": d.auto_apply_end,
    }
    merged.update({k: v for k, v in updates.items() if k in merged})
    check_discount_rule(
        merged["type"],
        merged["scope"],
        merged["value"],
        category_ids=merged["category_ids"] or ([merged["category_id"]] if merged["category_id"] else []),
        product_id=merged["product_id"],
        auto_apply=merged["auto_apply"],
        auto_apply_start=merged["auto_apply_start"],
        auto_apply_end=merged["auto_apply_end"],
    )


def _get_discount(s: Session, org: str, did: str) -> Discount:
    if not is_valid_id(did):
        raise HTTPException(status_code=400, detail="invalid discount id")
    d = s.get(Discount, did.strip().lower())
    if not d or d.organization_id != org:
        raise HTTPException(status_code=404, detail="discount not found")
    return d


@router.get("/discounts", response_model=List[DiscountOut])
def list_discounts(org: str = Depends(require_org), s: Session = Depends(get_session)):
    rows = s.execute(
        select(Discount).where(Discount.organization_id == org).order_by(Discount.id.desc())
    ).scalars().all()
    return _discount_out(s, org, list(rows))


@router.get("/discounts/available", response_model=List[DiscountOut])
def list_available_discounts(org: str = Depends(require_org), s: Session = Depends(get_session)):
    rows = s.execute(
        select(Discount)
        .where(Discount.organization_id == org, Discount.is_active.is_(True))
        .order_by(Discount.id)
    ).scalars().all()
    available = {r.id for r in available_discounts([rule_from_row(r) for r in rows], _now())}
    return _discount_out(s, org, [r for r in rows if r.id in available])


@router.post("/discounts", response_model=DiscountOut, status_code=201)
def create_discount(req: DiscountPayload, org: str = Depends(require_org), s: Session = Depends(get_session)):
    parsed = parse_discount_payload(req.model_dump(exclude_unset=True), partial=False)
    _ensure_targets_exist(
        s, org, (parsed.category_ids or []) + ([parsed.category_id] if parsed.category_id else []), parsed.product_id
    )
    d = Discount(
        organization_id=org,
        name=parsed.name,
        description=parsed.description,
        type=parsed.type,
        scope=parsed.scope,
        value_cents=to_cents(parsed.value),
        category_id=parsed.category_id,
        category_ids_json=json.dumps(parsed.category_ids) if parsed.category_ids else None,
        product_id=parsed.product_id,
        auto_apply=bool(parsed.auto_apply),
        auto_apply_days_json=json.dumps(parsed.auto_apply_days) if parsed.auto_apply and parsed.auto_apply_days else None,
        auto_apply_start=parsed.auto_apply_start if parsed.auto_apply else None,
        auto_apply_end=parsed.auto_apply_end if parsed.auto_apply else None,
        is_active=True if parsed.is_active is None else parsed.is_active,
    )
    s.add(d); s.commit(); s.refresh(d)
    log.info("discount created", extra={"discount_id": d.id, "organization_id": org})
    return _discount_out(s, org, [d])[0]


@router.patch("/discounts/{did}", response_model=DiscountOut)
def update_discount(did: str, req: DiscountPayload, org: str = Depends(require_org), s: Session = Depends(get_session)):
    d = _get_discount(s, org, did)
    parsed = parse_discount_payload(req.model_dump(exclude_unset=True), partial=True)
    updates = parsed.updates()
    _check_merged(d, updates)
    _ensure_targets_exist(
        s, org, (parsed.category_ids or []) + ([parsed.category_id] if parsed.category_id else []), parsed.product_id
    )
    _apply_updates(d, updates)
    s.add(d); s.commit(); s.refresh(d)
    return _discount_out(s, org, [d])[0]


@router.delete("/discounts/{did}")
def delete_discount(did: str, org: str = Depends(require_org), s: Session = Depends(get_session)):
    d = _get_discount(s, org, did)
    s.delete(d); s.commit()
    log.info("discount deleted", extra={"discount_id": did, "organization_id": org})
    return {"deleted": True}


# --- Orders / totals ---
def _build_lines(s: Session, org: str, lines: List[OrderLineIn], allow_empty: bool = False) -> List[OrderLineItem]:
    if not lines:
        if allow_empty:
            return []
        raise HTTPException(status_code=400, detail="no lines")
    ids = {ln.product_id for ln in lines}
    products = {
        p.id: p
        for p in s.execute(
            select(Product).where(Product.id.in_(ids), Product.organization_id == org)
        ).scalars().all()
    }
    if len(products) != len(ids):
        raise HTTPException(status_code=400, detail="one or more products could not be found")
    out = []
    for ln in lines:
        p = products[ln.product_id]
        unit_price = round_currency(ln.unit_price if ln.unit_price is not None else from_cents(p.price_cents or 0))
        out.append(
            OrderLineItem(
                product_id=p.id,
                name=(ln.name or "").strip() or p.name,
                category_id=p.category_id,
                qty=ln.qty,
                unit_price=unit_price,
                total=round_currency(unit_price * ln.qty),
            )
        )
    return out


def _calculate(s: Session, org: str, items: List[OrderLineItem], selected: List[Any], manual: Any) -> DiscountCalculationResult:
    return calculate_order_totals(
        items,
        repository=SqlDiscountRepository(s),
        names=SqlNameResolver(s, org),
        organization_id=org,
        selected_discount_ids=selected,
        manual_discount=manual,
        now=_now(),
    )


def _applied_out(ad: AppliedDiscount) -> AppliedDiscountOut:
    return AppliedDiscountOut(
        discount_id=ad.discount_id,
        name=ad.name,
        type=ad.type,
        scope=ad.scope,
        value=float(ad.value),
        amount=float(ad.amount),
        target_id=ad.target_id,
        target_name=ad.target_name,
        application=ad.application,
    )


def _totals_out(result: DiscountCalculationResult) -> TotalsOut:
    return TotalsOut(
        subtotal=float(result.subtotal),
        total=float(result.total),
        total_discount=float(result.total_discount),
        manual_discount=float(result.manual_discount),
        applied_discounts=[_applied_out(ad) for ad in result.applied_discounts],
    )


def _order_items(s: Session, order_id: str) -> List[OrderLineItem]:
    rows = s.execute(select(OrderLine).where(OrderLine.order_id == order_id).order_by(OrderLine.id)).scalars().all()
    return [
        OrderLineItem(
            product_id=r.product_id,
            name=r.name,
            category_id=r.category_id,
            qty=r.qty,
            unit_price=from_cents(r.unit_price_cents),
            total=from_cents(r.total_cents),
        )
        for r in rows
    ]


def _store_lines(s: Session, order_id: str, items: List[OrderLineItem]):
    s.execute(delete(OrderLine).where(OrderLine.order_id == order_id))
    for it in items:
        s.add(
            OrderLine(
                order_id=order_id,
                product_id=it.product_id,
                name=it.name,
                category_id=it.category_id,
                qty=it.qty,
                unit_price_cents=to_cents(it.unit_price),
                total_cents=to_cents(it.total),
            )
        )


def _store_totals(od: Order, result: DiscountCalculationResult, selected: List[str], requested_manual: Decimal):
    od.subtotal_cents = to_cents(result.subtotal)
    od.discount_cents = to_cents(result.total_discount)
    od.total_cents = to_cents(result.total)
    od.manual_discount_cents = to_cents(result.manual_discount)
    od.manual_discount_requested_cents = to_cents(requested_manual)
    od.selected_discount_ids_json = json.dumps(selected)
    od.applied_discounts_json = json.dumps([_applied_out(ad).model_dump() for ad in result.applied_discounts])


def _order_to_out(s: Session, od: Order) -> OrderOut:
    return OrderOut(
        id=od.id,
        status=od.status,
        subtotal=float(from_cents(od.subtotal_cents)),
        discount=float(from_cents(od.discount_cents)),
        total=float(from_cents(od.total_cents)),
        manual_discount=float(from_cents(od.manual_discount_cents)),
        requested_manual_discount=float(from_cents(od.manual_discount_requested_cents or 0)),
        selected_discount_ids=_json_list(od.selected_discount_ids_json),
        applied_discounts=[AppliedDiscountOut(**a) for a in _json_list(od.applied_discounts_json)],
        lines=[
            OrderLineOut(
                product_id=it.product_id,
                name=it.name,
                category_id=it.category_id,
                qty=it.qty,
                unit_price=float(it.unit_price),
                total=float(it.total),
            )
            for it in _order_items(s, od.id)
        ],
        payment_method=od.payment_method,
        created_at=od.created_at,
        paid_at=od.paid_at,
    )


def _get_order(s: Session, org: str, order_id: str, for_update: bool = False) -> Order:
    od = s.get(Order, order_id)
    if not od or od.organization_id != org:
        raise HTTPException(status_code=404, detail="order not found")
    if for_update and od.status != "draft":
        raise HTTPException(status_code=400, detail="order is paid")
    return od


@router.post("/orders/totals", response_model=TotalsOut)
def preview_totals(req: TotalsPreviewIn, org: str = Depends(require_org), s: Session = Depends(get_session)):
    items = _build_lines(s, org, req.lines)
    return _totals_out(_calculate(s, org, items, req.selected_discount_ids, req.manual_discount))


@router.post("/orders", response_model=OrderOut, status_code=201)
def create_order(req: OrderCreate, org: str = Depends(require_org), s: Session = Depends(get_session)):
    items = _build_lines(s, org, req.lines)
    selected = collect_selected_discount_ids(req.selected_discount_ids)
    manual = sanitize_manual_discount(req.manual_discount)
    result = _calculate(s, org, items, selected, manual)
    od = Order(organization_id=org, status="draft")
    s.add(od); s.flush()
    _store_lines(s, od.id, items)
    _store_totals(od, result, selected, manual)
    s.commit(); s.refresh(od)
    log.info("order created", extra={"order_id": od.id, "organization_id": org, "total": str(result.total)})
    return _order_to_out(s, od)


@router.get("/orders/{order_id}", response_model=OrderOut)
def get_order(order_id: str, org: str = Depends(require_org), s: Session = Depends(get_session)):
    return _order_to_out(s, _get_order(s, org, order_id))


@router.put("/orders/{order_id}/items", response_model=OrderOut)
def replace_order_items(order_id: str, req: OrderLinesUpdate, org: str = Depends(require_org), s: Session = Depends(get_session)):
    od = _get_order(s, org, order_id, for_update=True)
    items = _build_lines(s, org, req.lines, allow_empty=True)
    selected = collect_selected_discount_ids(_json_list(od.selected_discount_ids_json))
    manual = from_cents(od.manual_discount_requested_cents or 0)
    result = _calculate(s, org, items, selected, manual)
    _store_lines(s, od.id, items)
    _store_totals(od, result, selected, manual)
    s.commit(); s.refresh(od)
    return _order_to_out(s, od)


@router.put("/orders/{order_id}/discounts", response_model=OrderOut)
def update_order_discounts(order_id: str, req: OrderDiscountsUpdate, org: str = Depends(require_org), s: Session = Depends(get_session)):
    od = _get_order(s, org, order_id, for_update=True)
    items = _order_items(s, od.id)
    selected = collect_selected_discount_ids(req.selected_discount_ids)
    manual = sanitize_manual_discount(req.manual_discount)
    result = _calculate(s, org, items, selected, manual)
    _store_totals(od, result, selected, manual)
    s.commit(); s.refresh(od)
    return _order_to_out(s, od)


@router.post("/orders/{order_id}/pay", response_model=OrderOut)
def pay_order(order_id: str, req: PaymentIn, org: str = Depends(require_org), s: Session = Depends(get_session)):
    od = _get_order(s, org, order_id, for_update=True)
    if req.method not in ("cash", "card"):
        raise HTTPException(status_code=400, detail="payment method must be cash or card")
    if not od.subtotal_cents:
        raise HTTPException(status_code=400, detail="order has no lines")
    if to_cents(req.amount) != od.total_cents:
        raise HTTPException(status_code=400, detail="payment amount must equal the order total")
    od.status = "paid"
    od.payment_method = req.method
    od.paid_at = _now()
    s.add(od); s.commit(); s.refresh(od)
    log.info("order paid", extra={"order_id": od.id, "organization_id": org, "method": req.method})
    return _order_to_out(s, od)


@router.get("/orders/{order_id}/fiscal", response_model=List[FiscalLineOut])
def fiscal_lines(order_id: str, org: str = Depends(require_org), s: Session = Depends(get_session)):
    od = _get_order(s, org, order_id)
    lines = split_for_fiscal(_order_items(s, od.id), from_cents(od.total_cents))
    return [FiscalLineOut(name=ln.name, qty=ln.qty, total=float(ln.total)) for ln in lines]


app.include_router(router)
