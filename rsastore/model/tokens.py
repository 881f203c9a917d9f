# model/tokens.py
"""
Download tokens: bearer credentials for a paid order's deliverable.

- expiry is absolute (created_at + N minutes) and never renewed
- redemptions are unlimited until expiry; `is_used` / `download_count` are
  bookkeeping only
- an unknown token and an expired token look the same to the caller
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .db import DownloadToken, Order
from ..errors import OrderNotPaidError
from ..infra.sql import Gated
from ..helpers import now_ts, generate_download_token

log = logging.getLogger(__name__)

DEFAULT_EXPIRY_MINUTES = 60

# redemption outcomes
EXPIRED = "expired"
FORBIDDEN = "forbidden"
REDIRECT = "redirect"
FILE = "file"
MISSING = "missing"


@dataclass
class Redemption:
    outcome: str
    invoice_number: Optional[str] = None
    product_name: Optional[str] = None
    download_link: Optional[str] = None
    file_path: Optional[str] = None


class TokenIssuer:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def issue(self, order: Order,
                    expiry_minutes: int = DEFAULT_EXPIRY_MINUTES
                    ) -> DownloadToken:
        created = now_ts()
        token = DownloadToken(
            token=generate_download_token(),
            invoice_number=order.invoice_number,
            product_id=order.product_id,
            created_at=created,
            expires_at=created + int(expiry_minutes) * 60,
            is_used=False,
            download_count=0,
        )
        async with self.gated():
            async with self.db.begin():
                # status is read from the store, not from the caller's copy
                status = (await self.db.execute(
                    text("SELECT status FROM orders "
                         "WHERE invoice_number = :inv"),
                    {"inv": order.invoice_number},
                )).scalar_one_or_none()
                if status != "paid":
                    raise OrderNotPaidError(order.invoice_number)
                self.db.add(token)
        self.db.expunge(token)
        log.info("download token issued for %s, expires in %s min",
                 order.invoice_number, expiry_minutes)
        return token

    async def redeem(self, token: str,
                     now: Optional[float] = None) -> Redemption:
        now = now_ts() if now is None else now
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                    SELECT dt.invoice_number, dt.expires_at,
                           o.status AS order_status,
                           p.name AS product_name,
                           p.file_path, p.download_link
                    FROM download_tokens dt
                    JOIN orders o ON o.invoice_number = dt.invoice_number
                    JOIN products p ON p.id = dt.product_id
                    WHERE dt.token = :t
                """), {"t": token})).mappings().first()

                if row is None or now > row["expires_at"]:
                    return Redemption(EXPIRED)
                if row["order_status"] != "paid":
                    return Redemption(FORBIDDEN, row["invoice_number"])

                await self.db.execute(text("""
                    UPDATE download_tokens
                    SET download_count = download_count + 1,
                        last_download_at = :ts,
                        is_used = :used
                    WHERE token = :t
                """), {"t": token, "ts": now, "used": True})

        out = Redemption(
            MISSING,
            invoice_number=row["invoice_number"],
            product_name=row["product_name"],
            download_link=row["download_link"],
            file_path=row["file_path"],
        )
        # an external link wins over a local file
        if row["download_link"]:
            out.outcome = REDIRECT
        elif row["file_path"]:
            out.outcome = FILE
        return out
