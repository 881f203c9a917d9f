import pytest

from rsastore.errors import OrderNotPaidError
from rsastore.helpers import now_ts
from rsastore.model.db import DownloadToken
from rsastore.model.tokens import (
    EXPIRED, FILE, FORBIDDEN, MISSING, REDIRECT,
)

from conftest import add_order, add_product


async def paid_order(ledger, invoice="INV-1", total=50_123, product_id="p1"):
    order = await add_order(ledger, invoice, total, product_id=product_id)
    assert await ledger.mark_paid(order)
    return order


async def test_issue_requires_paid_order(db, ledger, tokens):
    await add_product(db)
    order = await add_order(ledger, "INV-1", 50_123)
    with pytest.raises(OrderNotPaidError):
        await tokens.issue(order)
    # the snapshot survives the rolled back attempt
    assert order.invoice_number == "INV-1"


async def test_issue_sets_absolute_expiry(db, ledger, tokens):
    await add_product(db)
    order = await paid_order(ledger)
    before = now_ts()
    token = await tokens.issue(order, expiry_minutes=60)
    assert token.invoice_number == "INV-1"
    assert token.product_id == "p1"
    assert before + 3600 <= token.expires_at <= now_ts() + 3600
    assert token.download_count == 0
    assert token.is_used is False


async def test_reissue_gives_independent_tokens(db, ledger, tokens):
    await add_product(db, download_link="https://cdn.example.com/a.pdf")
    order = await paid_order(ledger)
    first = await tokens.issue(order, expiry_minutes=60)
    second = await tokens.issue(order, expiry_minutes=60)
    assert first.token != second.token
    assert (await tokens.redeem(first.token)).outcome == REDIRECT
    assert (await tokens.redeem(second.token)).outcome == REDIRECT


async def test_unknown_token_is_expired(tokens):
    assert (await tokens.redeem("nope")).outcome == EXPIRED


async def test_redeem_prefers_external_link(db, ledger, tokens):
    await add_product(db, download_link="https://cdn.example.com/a.pdf",
                      file_path="files/a.pdf")
    token = await tokens.issue(await paid_order(ledger))
    r = await tokens.redeem(token.token)
    assert r.outcome == REDIRECT
    assert r.download_link == "https://cdn.example.com/a.pdf"


async def test_redeem_local_file(db, ledger, tokens):
    await add_product(db, file_path="files/a.pdf")
    token = await tokens.issue(await paid_order(ledger))
    r = await tokens.redeem(token.token)
    assert r.outcome == FILE
    assert r.file_path == "files/a.pdf"
    assert r.product_name == "E-Book Python"


async def test_redeem_without_deliverable(db, ledger, tokens):
    await add_product(db)
    token = await tokens.issue(await paid_order(ledger))
    assert (await tokens.redeem(token.token)).outcome == MISSING


async def test_unlimited_redemptions_until_expiry(db, ledger, tokens):
    await add_product(db, download_link="https://cdn.example.com/a.pdf")
    token = await tokens.issue(await paid_order(ledger), expiry_minutes=60)
    for _ in range(3):
        assert (await tokens.redeem(token.token)).outcome == REDIRECT

    async with db.begin():
        row = await db.get(DownloadToken, token.token)
    assert row.download_count == 3
    assert row.is_used is True
    assert row.last_download_at is not None

    # expiry is absolute, earlier use does not extend it
    later = token.expires_at + 1
    assert (await tokens.redeem(token.token, now=later)).outcome == EXPIRED


async def test_token_for_unpaid_order_is_forbidden(db, ledger, tokens):
    await add_product(db, download_link="https://cdn.example.com/a.pdf")
    await add_order(ledger, "INV-1", 50_123)
    ts = now_ts()
    async with db.begin():
        db.add(DownloadToken(token="t-pending", invoice_number="INV-1",
                             product_id="p1", created_at=ts,
                             expires_at=ts + 3600))
    r = await tokens.redeem("t-pending")
    assert r.outcome == FORBIDDEN
    assert r.download_link is None
