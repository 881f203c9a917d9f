# model/chatsession/__init__.py
import os
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from ...infra.sql import Gated
from ._common import chat_key, fresh_session

BACKEND = os.getenv("CHATSESSION_BACKEND", "redis").lower()  # 'redis' | 'sql'

IDLE_TIMEOUT_SECONDS = 30 * 60

if BACKEND == "sql":
    from ._sql import ChatSessionStore as _ChatSessionStore
else:
    from ._redis import ChatSessionStore as _ChatSessionStore


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, db: Optional[AsyncSession] = None,
              r: Optional[redis.Redis] = None,
              idle_seconds: int = IDLE_TIMEOUT_SECONDS,
              gated: Optional[Gated] = None):
    if BACKEND == "sql":
        if db is None:
            raise RuntimeError("ChatSessionStore(sql) requires db=AsyncSession")
        if gated is None:
            raise RuntimeError("ChatSessionStore(sql) requires gated=Gated")
        return _ChatSessionStore(db=db, gated=gated, idle_seconds=idle_seconds)
    else:
        if r is None:
            raise RuntimeError(
                "ChatSessionStore(redis) requires r=redis.Redis"
            )
        return _ChatSessionStore(r=r, idle_seconds=idle_seconds)


ChatSessionStore = _ChatSessionStore
__all__ = ["ChatSessionStore", "new_store", "chat_key", "fresh_session",
           "BACKEND", "IDLE_TIMEOUT_SECONDS"]
