import asyncio

from rsastore.helpers import now_ts
from rsastore.model.chatsession._sql import ChatSessionStore
from rsastore.sweeper import run_sweeper, sweep_once

from conftest import add_order


async def test_sweep_once_removes_abandoned_orders_and_idle_chats(
        store, ledger, db):
    t = now_ts()
    await add_order(ledger, "INV-OLD", 50_001, created_at=t - 2 * 3600)
    await add_order(ledger, "INV-NEW", 50_002)
    paid = await add_order(ledger, "INV-PAID", 50_003,
                           created_at=t - 2 * 3600)
    await ledger.mark_paid(paid)

    chats = ChatSessionStore(db=db, gated=store.gated, idle_seconds=1800)
    await chats.update("whatsapp", "628123", state="browsing")

    def idle_store(session):
        return ChatSessionStore(db=session, gated=store.gated,
                                idle_seconds=-1)

    res = await sweep_once(store.SessionAsync, store.gated, idle_store)
    assert res == {"orders": 1, "chat_sessions": 1}
    assert await ledger.get_order("INV-OLD") is None
    assert await ledger.get_order("INV-NEW") is not None
    assert (await ledger.get_order("INV-PAID")).status == "paid"


async def test_sweep_once_without_chat_store(store):
    assert await sweep_once(store.SessionAsync, store.gated) == \
        {"orders": 0, "chat_sessions": 0}


async def test_run_sweeper_survives_failed_pass(store, monkeypatch):
    calls = []

    async def flaky(SessionAsync, gated, chat_store=None):
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("database is locked")
        return {"orders": 0, "chat_sessions": 0}

    monkeypatch.setattr("rsastore.sweeper.sweep_once", flaky)
    task = asyncio.create_task(run_sweeper(store.SessionAsync, store.gated,
                                           interval=0.01, initial_delay=0))
    for _ in range(100):
        if len(calls) >= 2:
            break
        await asyncio.sleep(0.01)
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    assert len(calls) >= 2
