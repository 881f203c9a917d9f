import pytest

from rsastore.errors import DuplicateInvoiceError
from rsastore.helpers import now_ts
from rsastore.model.db import Product
from rsastore.model.orders import verify_contact

from conftest import add_order, add_product


async def test_insert_and_get(db, ledger):
    await add_product(db)
    await add_order(ledger, "INV-1", 50_123)
    order = await ledger.get_order("INV-1")
    assert order.status == "pending"
    assert order.total_amount == order.product_price + order.unique_code
    assert await ledger.get_order("INV-404") is None


async def test_duplicate_invoice_is_a_hard_failure(db, ledger):
    await add_order(ledger, "INV-1", 50_123)
    with pytest.raises(DuplicateInvoiceError):
        await add_order(ledger, "INV-1", 50_456)
    # the session is still usable afterwards
    assert (await ledger.get_order("INV-1")).total_amount == 50_123


async def test_find_pending_matches_exact_amount_only(ledger):
    await add_order(ledger, "INV-1", 50_123)
    assert await ledger.find_pending_by_amount(50_124) is None
    assert (await ledger.find_pending_by_amount(50_123)).invoice_number \
        == "INV-1"


async def test_find_pending_prefers_most_recent(ledger):
    t = now_ts()
    await add_order(ledger, "INV-OLD", 50_123, created_at=t - 600)
    await add_order(ledger, "INV-NEW", 50_123, created_at=t - 60)
    order = await ledger.find_pending_by_amount(50_123)
    assert order.invoice_number == "INV-NEW"


async def test_mark_paid_only_once(ledger):
    order = await add_order(ledger, "INV-1", 50_123)
    assert await ledger.mark_paid(order) is True
    assert order.status == "paid"
    assert order.paid_at is not None
    assert await ledger.mark_paid(order) is False
    assert await ledger.find_pending_by_amount(50_123) is None


async def test_decrement_stock_floors_at_zero(db, ledger):
    await add_product(db, stock=1)
    assert await ledger.decrement_stock("p1") is True
    assert await ledger.decrement_stock("p1") is False
    async with db.begin():
        product = await db.get(Product, "p1", populate_existing=True)
    assert product.stock == 0


async def test_sweep_deletes_only_old_pending(ledger):
    t = now_ts()
    await add_order(ledger, "INV-ABANDONED", 50_001, created_at=t - 90 * 60)
    await add_order(ledger, "INV-FRESH", 50_002, created_at=t - 10 * 60)
    paid = await add_order(ledger, "INV-PAID", 50_003,
                           created_at=t - 3 * 24 * 3600)
    await ledger.mark_paid(paid)

    assert await ledger.sweep_abandoned() == 1
    assert await ledger.get_order("INV-ABANDONED") is None
    assert await ledger.get_order("INV-FRESH") is not None
    assert (await ledger.get_order("INV-PAID")).status == "paid"


async def test_list_products_hides_inactive(db, ledger):
    await add_product(db, id="a", name="Template Canva")
    await add_product(db, id="b", name="Video Course", is_active=False)
    await add_product(db, id="c", name="Canva Pro Account")
    names = {p.name for p in await ledger.list_products()}
    assert names == {"Template Canva", "Canva Pro Account"}
    found = await ledger.list_products(query="canva")
    assert {p.id for p in found} == {"a", "c"}


async def test_verify_contact(ledger):
    order = await add_order(ledger, "INV-1", 50_123,
                            email="Buyer@Example.com",
                            whatsapp="081234567890", telegram="@Buyer")
    assert verify_contact(order, email="buyer@example.com")
    assert verify_contact(order, whatsapp="081234567890")
    assert verify_contact(order, telegram="@buyer")
    assert not verify_contact(order, whatsapp="6281234567890")
    assert not verify_contact(order, email="other@example.com")
    assert not verify_contact(order)
