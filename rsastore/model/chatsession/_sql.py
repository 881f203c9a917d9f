from __future__ import annotations
import json
from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ...infra.sql import Gated
from ...helpers import now_ts
from ._common import chat_key, fresh_session


class ChatSessionStore:
    """Per-chat conversation state in the shared SQL database."""

    def __init__(self, *, db: AsyncSession, gated: Gated,
                 idle_seconds: int) -> None:
        self.db = db
        self.gated = gated
        self.idle_seconds = idle_seconds

    async def get(self, channel: str, chat_id: str) -> Dict[str, Any]:
        now = now_ts()
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                    SELECT state, data, last_activity FROM chat_sessions
                    WHERE chat_key = :k
                """), {"k": chat_key(channel, chat_id)})).mappings().first()
        # idle sessions count as gone even before the sweep removes them
        if row is None or now - row["last_activity"] > self.idle_seconds:
            return fresh_session(now)
        return {
            "state": row["state"],
            "data": json.loads(row["data"] or "{}"),
            "last_activity": row["last_activity"],
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
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                    INSERT INTO chat_sessions
                        (chat_key, state, data, last_activity)
                    VALUES (:k, :s, :d, :ts)
                    ON CONFLICT (chat_key) DO UPDATE SET
                        state = EXCLUDED.state,
                        data = EXCLUDED.data,
                        last_activity = EXCLUDED.last_activity
                """), {
                    "k": chat_key(channel, chat_id),
                    "s": session["state"],
                    "d": json.dumps(session["data"]),
                    "ts": session["last_activity"],
                })
        return session

    async def clear(self, channel: str, chat_id: str) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(
                    text("DELETE FROM chat_sessions WHERE chat_key = :k"),
                    {"k": chat_key(channel, chat_id)},
                )

    async def sweep(self, idle_seconds: Optional[int] = None) -> int:
        cutoff = now_ts() - (idle_seconds or self.idle_seconds)
        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(
                    text("DELETE FROM chat_sessions "
                         "WHERE last_activity < :cutoff"),
                    {"cutoff": cutoff},
                )
        return res.rowcount or 0
