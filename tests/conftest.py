import os
import tempfile

# the server module reads its config at import time
_TMP = tempfile.mkdtemp(prefix="rsastore-test-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP}/server.db"
os.environ["CHATSESSION_BACKEND"] = "sql"
os.environ["FILES_DIR"] = _TMP
os.environ["CLEANUP_INITIAL_DELAY_SECONDS"] = "3600"

from types import SimpleNamespace  # noqa: E402

import pytest  # noqa: E402

from rsastore.helpers import now_ts  # noqa: E402
from rsastore.infra.sql import make_database  # noqa: E402
from rsastore.model.db import (  # noqa: E402
    Order, Product, create_tables,
)
from rsastore.model.orders import OrderLedger  # noqa: E402
from rsastore.model.settings import SettingsStore  # noqa: E402
from rsastore.model.tokens import TokenIssuer  # noqa: E402
from rsastore.qris import QrisGenerator  # noqa: E402

FILES_DIR = _TMP


@pytest.fixture
async def store(tmp_path):
    engine, SessionAsync, gated = make_database(
        f"sqlite:///{tmp_path}/store.db"
    )
    await create_tables(engine)
    yield SimpleNamespace(engine=engine, SessionAsync=SessionAsync,
                          gated=gated)
    await engine.dispose()


@pytest.fixture
async def db(store):
    async with store.SessionAsync() as session:
        yield session


@pytest.fixture
def ledger(db, store):
    return OrderLedger(db=db, gated=store.gated)


@pytest.fixture
def tokens(db, store):
    return TokenIssuer(db=db, gated=store.gated)


@pytest.fixture
def settings_store(db, store):
    return SettingsStore(db=db, gated=store.gated)


async def add_product(db, **kw) -> Product:
    ts = now_ts()
    fields = dict(
        id="p1", name="E-Book Python", slug=None, price=50_000, stock=5,
        is_active=True, created_at=ts, updated_at=ts,
    )
    fields.update(kw)
    fields["slug"] = fields["slug"] or fields["id"]
    product = Product(**fields)
    async with db.begin():
        db.add(product)
    return product


async def add_order(ledger: OrderLedger, invoice: str, total: int, *,
                    product_id: str = "p1", price: int = 50_000,
                    created_at: float | None = None,
                    email: str | None = "buyer@example.com",
                    whatsapp: str | None = None,
                    telegram: str | None = None) -> Order:
    order = Order(
        invoice_number=invoice,
        product_id=product_id,
        product_name="E-Book Python",
        product_price=price,
        unique_code=total - price,
        total_amount=total,
        customer_email=email,
        customer_whatsapp=whatsapp,
        customer_telegram=telegram,
        qris_string="QRIS",
        created_at=created_at if created_at is not None else now_ts(),
    )
    return await ledger.insert_pending(order)


class FakeQris(QrisGenerator):
    def __init__(self):
        self.calls = []

    async def generate(self, base_string, amount):
        self.calls.append((base_string, amount))
        return f"{base_string}|{amount}"


class FakeDispatcher:
    def __init__(self):
        self.confirmed = []
        self.reissued = []

    async def payment_confirmed(self, settings, order, download_link):
        self.confirmed.append((order.invoice_number, download_link))
        return {}

    async def download_reissued(self, settings, order, download_link):
        self.reissued.append((order.invoice_number, download_link))
        return {}
