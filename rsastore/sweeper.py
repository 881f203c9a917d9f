import asyncio
import logging
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from .infra.sql import Gated
from .model.orders import OrderLedger, ABANDONED_ORDER_SECONDS

log = logging.getLogger(__name__)

CLEANUP_INTERVAL_SECONDS = 30 * 60
CLEANUP_INITIAL_DELAY_SECONDS = 5


async def sweep_once(SessionAsync: async_sessionmaker, gated: Gated,
                     chat_store: Optional[Callable] = None,
                     max_age_seconds: int = ABANDONED_ORDER_SECONDS) -> dict:
    """
    Delete abandoned pending orders (paid orders are never touched) and idle
    chat sessions. `chat_store(db)` builds a chat session store for a session.
    """
    async with SessionAsync() as db:
        deleted = await OrderLedger(db=db, gated=gated).sweep_abandoned(
            max_age_seconds
        )
        chats = 0
        if chat_store is not None:
            chats = await chat_store(db).sweep()
    if deleted:
        log.info("cleaned up %d expired pending order(s)", deleted)
    if chats:
        log.info("cleaned up %d idle chat session(s)", chats)
    return {"orders": deleted, "chat_sessions": chats}


async def run_sweeper(SessionAsync: async_sessionmaker, gated: Gated,
                      chat_store: Optional[Callable] = None,
                      interval: float = CLEANUP_INTERVAL_SECONDS,
                      initial_delay: float = CLEANUP_INITIAL_DELAY_SECONDS,
                      ) -> None:
    await asyncio.sleep(initial_delay)
    while True:
        try:
            await sweep_once(SessionAsync, gated, chat_store)
        except Exception:
            log.error("cleanup pass failed", exc_info=True)
        await asyncio.sleep(interval)
