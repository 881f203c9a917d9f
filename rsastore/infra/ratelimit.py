"""
Per-client sliding-window rate limits, kept in process memory.

Each limiter is a FastAPI dependency:

    @app.post("/api/recover", dependencies=[Depends(recover_limit)])

Clients are keyed by the socket peer address. A deployment behind a reverse
proxy sees the proxy's address unless uvicorn runs with --proxy-headers.
"""
import logging
from collections import defaultdict
from typing import Dict, List, Optional

from fastapi import HTTPException, Request

from ..helpers import now_ts

log = logging.getLogger(__name__)

# past this many tracked clients, stale entries are dropped on the next hit
_PRUNE_AT = 10_000


class RateLimiter:
    def __init__(self, name: str, limit: int, window_seconds: float,
                 message: str) -> None:
        self.name = name
        self.limit = limit
        self.window = window_seconds
        self.message = message
        self._hits: Dict[str, List[float]] = defaultdict(list)

    def reset(self) -> None:
        self._hits.clear()

    def _prune(self, cutoff: float) -> None:
        stale = [k for k, hits in self._hits.items()
                 if not hits or hits[-1] <= cutoff]
        for k in stale:
            del self._hits[k]

    def hit(self, key: str, now: Optional[float] = None) -> Optional[float]:
        """
        Record a request from `key`. Returns None if it is allowed, else the
        seconds until the oldest request in the window ages out.
        """
        now = now_ts() if now is None else now
        cutoff = now - self.window
        if len(self._hits) > _PRUNE_AT:
            self._prune(cutoff)
        hits = [t for t in self._hits[key] if t > cutoff]
        if len(hits) >= self.limit:
            self._hits[key] = hits
            return hits[0] + self.window - now
        hits.append(now)
        self._hits[key] = hits
        return None

    async def __call__(self, request: Request) -> None:
        client = request.client.host if request.client else "unknown"
        retry_after = self.hit(client)
        if retry_after is None:
            return
        log.warning("%s rate limit hit by %s", self.name, client)
        raise HTTPException(
            429,
            detail=self.message,
            headers={"Retry-After": str(int(retry_after) + 1)},
        )
