import itertools
import os
import secrets
import time
from typing import Optional

from sqlalchemy import BigInteger, Boolean, DateTime, Integer, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _env_or(key: str, default: str) -> str:
    v = os.getenv(key)
    return v if v is not None else default


DB_URL = _env_or("POS_DB_URL", "sqlite+pysqlite:////tmp/pos.db")
DB_SCHEMA = os.getenv("DB_SCHEMA") if not DB_URL.startswith("sqlite") else None

_ID_PROCESS = secrets.token_hex(5)
_ID_COUNTER = itertools.count(secrets.randbelow(0x800000))


def new_id() -> str:
    """24 hex chars: seconds, per-process random, counter. Sorts by creation within a process."""
    return f"{int(time.time()) & 0xFFFFFFFF:08x}{_ID_PROCESS}{next(_ID_COUNTER) & 0xFFFFFF:06x}"


class Base(DeclarativeBase):
    pass


class Category(Base):
    __tablename__ = "categories"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[str] = mapped_column(String(24), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String(24), index=True)
    name: Mapped[str] = mapped_column(String(200))


class Product(Base):
    __tablename__ = "products"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[str] = mapped_column(String(24), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String(24), index=True)
    name: Mapped[str] = mapped_column(String(200))
    category_id: Mapped[Optional[str]] = mapped_column(String(24), default=None)
    price_cents: Mapped[int] = mapped_column(BigInteger, default=0)


class Discount(Base):
    __tablename__ = "discounts"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[str] = mapped_column(String(24), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String(24), index=True)
    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[Optional[str]] = mapped_column(String(400), default=None)
    type: Mapped[str] = mapped_column(String(16))  # fixed/percentage
    scope: Mapped[str] = mapped_column(String(16))  # order/category/product
    value_cents: Mapped[int] = mapped_column(BigInteger, default=0)  # percent or amount, x100
    category_id: Mapped[Optional[str]] = mapped_column(String(24), default=None)
    category_ids_json: Mapped[Optional[str]] = mapped_column(String(2000), default=None)
    product_id: Mapped[Optional[str]] = mapped_column(String(24), default=None)
    auto_apply: Mapped[bool] = mapped_column(Boolean, default=False)
    auto_apply_days_json: Mapped[Optional[str]] = mapped_column(String(64), default=None)  # 0=Sunday
    auto_apply_start: Mapped[Optional[str]] = mapped_column(String(5), default=None)  # HH:MM
    auto_apply_end: Mapped[Optional[str]] = mapped_column(String(5), default=None)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[Optional[str]] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[Optional[str]] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[str] = mapped_column(String(24), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String(24), index=True)
    status: Mapped[str] = mapped_column(String(16), default="draft")  # draft/paid
    subtotal_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    discount_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    total_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    manual_discount_cents: Mapped[int] = mapped_column(BigInteger, default=0)  # applied, after capping
    manual_discount_requested_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    selected_discount_ids_json: Mapped[Optional[str]] = mapped_column(String(2000), default=None)
    applied_discounts_json: Mapped[Optional[str]] = mapped_column(String(8000), default=None)
    payment_method: Mapped[Optional[str]] = mapped_column(String(16), default=None)
    created_at: Mapped[Optional[str]] = mapped_column(DateTime(timezone=True), server_default=func.now())
    paid_at: Mapped[Optional[str]] = mapped_column(DateTime(timezone=True))


class OrderLine(Base):
    __tablename__ = "order_lines"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(24), index=True)
    product_id: Mapped[str] = mapped_column(String(24))
    name: Mapped[str] = mapped_column(String(200))
    category_id: Mapped[Optional[str]] = mapped_column(String(24), default=None)
    qty: Mapped[int] = mapped_column(Integer, default=1)
    unit_price_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    total_cents: Mapped[int] = mapped_column(BigInteger, default=0)
