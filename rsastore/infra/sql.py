"""
Async SQLAlchemy setup shared by the server, the bootstrap CLI and the
tests.

The server and the bots talk to the same database. SQLite is the
single-host default; Postgres takes over by changing DATABASE_URL only.
"""
import os
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Callable, NamedTuple

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

# `async with gated():` wraps every unit of work against the store
Gated = Callable[[], AsyncContextManager[None]]

_DRIVERS = {
    "sqlite://": "sqlite+aiosqlite://",
    "postgresql://": "postgresql+asyncpg://",
    "postgres://": "postgresql+asyncpg://",
}


class Database(NamedTuple):
    engine: AsyncEngine
    SessionAsync: async_sessionmaker
    gated: Gated


def async_url(url: str) -> str:
    """Plain sqlite/postgres URLs get their asyncio driver."""
    for plain, driver in _DRIVERS.items():
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


def _gate(limit: int) -> Gated:
    # at most `limit` concurrent transactions per process; past that,
    # requests queue here instead of inside the connection pool
    sem = asyncio.Semaphore(max(1, limit))

    @asynccontextmanager
    async def gated() -> AsyncIterator[None]:
        async with sem:
            yield

    return gated


def _sqlite_pragmas(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _):
        cur = dbapi_connection.cursor()
        # the bots and the web server write to the same file
        cur.execute("PRAGMA journal_mode=WAL;")
        cur.execute("PRAGMA busy_timeout=5000;")
        cur.execute("PRAGMA synchronous=NORMAL;")
        cur.close()


def make_database(database_url: str) -> Database:
    url = async_url(database_url)
    kw = dict(pool_pre_ping=True)

    if url.startswith("postgresql+asyncpg://"):
        pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
        kw.update(
            pool_size=pool_size,
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
        )
        gate_limit = int(os.getenv("DB_GATE_LIMIT", pool_size))
    else:
        gate_limit = int(os.getenv("DB_GATE_LIMIT", "10"))

    engine = create_async_engine(url, **kw)
    if url.startswith("sqlite+aiosqlite://"):
        _sqlite_pragmas(engine)

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return Database(engine, SessionAsync, _gate(gate_limit))
