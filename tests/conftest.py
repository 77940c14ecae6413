import os
import tempfile
import uuid
from decimal import Decimal
from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("ENV", "test")
os.environ.setdefault("POS_TIMEZONE", "UTC")
os.environ.setdefault(
    "POS_DB_URL",
    f"sqlite+pysqlite:///{tempfile.gettempdir()}/kassa-pos-test-{uuid.uuid4().hex[:8]}.db",
)


@pytest.fixture(scope="session")
def app():
    """
    Import the POS FastAPI app once per test session.
    """
    from apps.pos.app.main import app as pos_app

    return pos_app


@pytest.fixture()
def client(app):
    """
    TestClient used as a context manager so the lifespan creates the tables.
    """
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def org_id() -> str:
    """
    Fresh organization per test; tenant scoping keeps tests from seeing
    each other's discounts and orders in the shared test database.
    """
    from apps.pos.app.models import new_id

    return new_id()


@pytest.fixture()
def org_headers(org_id) -> Dict[str, str]:
    return {"X-Organization-ID": org_id}


class _Catalog:
    """
    Seeds categories and products straight into the app's database;
    catalog CRUD lives outside the POS core.
    """

    def __init__(self, org: str):
        self.org = org

    def category(self, name: str) -> str:
        from sqlalchemy.orm import Session

        from apps.pos.app import main as pos
        from apps.pos.app.models import Category

        with Session(pos.engine) as s:
            c = Category(organization_id=self.org, name=name)
            s.add(c); s.commit()
            return c.id

    def product(self, name: str, price: str, category_id: Optional[str] = None) -> str:
        from sqlalchemy.orm import Session

        from apps.pos.app import main as pos
        from apps.pos.app.models import Product
        from apps.pos.app.money import to_cents

        with Session(pos.engine) as s:
            p = Product(
                organization_id=self.org,
                name=name,
                category_id=category_id,
                price_cents=to_cents(Decimal(price)),
            )
            s.add(p); s.commit()
            return p.id


@pytest.fixture()
def catalog(client, org_id) -> _Catalog:
    return _Catalog(org_id)


def line(product_id: str, name: str, total: str, qty: int = 1, category_id: Optional[str] = None):
    """OrderLineItem with unit price derived from the line total."""
    from apps.pos.app.totals import OrderLineItem

    t = Decimal(total)
    return OrderLineItem(
        product_id=product_id,
        name=name,
        qty=qty,
        unit_price=(t / qty).quantize(Decimal("0.01")),
        total=t,
        category_id=category_id,
    )


@pytest.fixture()
def make_line():
    return line
