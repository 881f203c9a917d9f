import asyncio

import pytest
from sqlalchemy import text

from rsastore.infra.sql import async_url, make_database


@pytest.mark.parametrize("url, expected", [
    ("sqlite:///shop.db", "sqlite+aiosqlite:///shop.db"),
    ("postgresql://u:p@db/shop", "postgresql+asyncpg://u:p@db/shop"),
    ("postgres://u:p@db/shop", "postgresql+asyncpg://u:p@db/shop"),
    ("sqlite+aiosqlite:///x.db", "sqlite+aiosqlite:///x.db"),
])
def test_async_url(url, expected):
    assert async_url(url) == expected


async def test_sqlite_runs_in_wal_mode(store):
    async with store.engine.connect() as conn:
        mode = (await conn.execute(text("PRAGMA journal_mode"))).scalar()
    assert mode.lower() == "wal"


async def test_gate_limits_concurrent_transactions(tmp_path, monkeypatch):
    monkeypatch.setenv("DB_GATE_LIMIT", "2")
    engine, _, gated = make_database(f"sqlite:///{tmp_path}/gate.db")
    inside = peak = 0

    async def work():
        nonlocal inside, peak
        async with gated():
            inside += 1
            peak = max(peak, inside)
            await asyncio.sleep(0.01)
            inside -= 1

    await asyncio.gather(*(work() for _ in range(6)))
    await engine.dispose()
    assert peak == 2
