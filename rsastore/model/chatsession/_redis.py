from __future__ import annotations
import json
from typing import Any, Dict, Optional

import redis.asyncio as redis

from ...helpers import now_ts
from ._common import chat_key, fresh_session


# ---- keys
def k_chat(channel: str, chat_id: str) -> str:
    return f"chat:{chat_key(channel, chat_id)}"


class ChatSessionStore:
    """
    Per-chat conversation state in Redis. Every write refreshes the key TTL,
    so idle sessions expire on their own and `sweep()` has nothing to do.
    """

    def __init__(self, r: redis.Redis, idle_seconds: int) -> None:
        self.r = r
        self.idle_seconds = idle_seconds

    async def get(self, channel: str, chat_id: str) -> Dict[str, Any]:
        h = await self.r.hgetall(k_chat(channel, chat_id))
        if not h:
            return fresh_session(now_ts())
        return {
            "state": h.get("state", "menu"),
            "data": json.loads(h.get("data") or "{}"),
            "last_activity": float(h.get("last_activity", "0")),
        }

    async def update(self, channel: str, chat_id: str,
                     state: Optional[str] = None,
                     data: Optional[Dict[str, Any]] = None
                     ) -> Dict[str, Any]:
        session = await self.get(channel, chat_id)
        if state is not None:
            session["state"] = state
        if data is not None:
            session["data"].update(data)
        session["last_activity"] = now_ts()

        key = k_chat(channel, chat_id)
        pipe = self.r.pipeline(transaction=True)
        pipe.hset(key, mapping={
            "state": session["state"],
            "data": json.dumps(session["data"]),
            "last_activity": str(session["last_activity"]),
        })
        pipe.expire(key, self.idle_seconds)
        await pipe.execute()
        return session

    async def clear(self, channel: str, chat_id: str) -> None:
        await self.r.delete(k_chat(channel, chat_id))

    async def sweep(self, idle_seconds: Optional[int] = None) -> int:
        # key TTL does the work
        return 0
