# model/settings.py
"""
Settings store: a flat key -> string mapping shared by the web server and the
bot processes.

Every read goes to the database. There is no in-process cache, so an admin
edit is visible to the next request in every process.
"""
from __future__ import annotations
import logging
from typing import Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..infra.sql import Gated
from ..helpers import now_ts

log = logging.getLogger(__name__)


DEFAULT_SETTINGS: Dict[str, str] = {
    "store_name": "RSA Store",
    "store_description": "Toko Digital Terpercaya",
    "store_whatsapp": "6281234567890",
    "store_email": "admin@rsastore.com",
    "store_telegram": "@RSAStore",
    "qris_base_string": (
        "00020101021126570011ID.DANA.WWW011893600915366813362702096681336"
        "270303UMI51440014ID.CO.QRIS.WWW0215ID10243259493930303UMI520448145"
        "3033605802ID5909RSA Store6015Kota Yogyakarta610555161"
    ),
    "qris_merchant_name": "RSA Store",
    "webhook_api_key": "CHANGE_THIS_SECRET_KEY",
    "smtp_host": "smtp.gmail.com",
    "smtp_port": "587",
    "smtp_username": "",
    "smtp_password": "",
    "smtp_from_name": "RSA Store",
    "smtp_active": "0",
    "token_expiry_minutes": "60",
    "base_url": "",
    "telegram_bot_token": "",
    "whatsapp_enabled": "0",
    # 0 disables the pending-total collision check at checkout
    "unique_code_window_minutes": "0",
}


class SettingsStore:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def get_all(self) -> Dict[str, str]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    text("SELECT key, value FROM settings")
                )).all()
        return {k: v for k, v in rows}

    async def get(self, key: str,
                  default: Optional[str] = None) -> Optional[str]:
        async with self.gated():
            async with self.db.begin():
                value = (await self.db.execute(
                    text("SELECT value FROM settings WHERE key = :k"),
                    {"k": key},
                )).scalar_one_or_none()
        return default if value is None else value

    async def get_int(self, key: str, default: int) -> int:
        raw = await self.get(key)
        try:
            return int(raw)
        except (TypeError, ValueError):
            return default

    async def update(self, key: str, value: str) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                    INSERT INTO settings (key, value, updated_at)
                    VALUES (:k, :v, :ts)
                    ON CONFLICT (key) DO UPDATE SET
                        value = EXCLUDED.value,
                        updated_at = EXCLUDED.updated_at
                """), {"k": key, "v": str(value), "ts": now_ts()})
        log.info("setting updated: %s", key)

    async def seed_defaults(self) -> None:
        """Insert missing defaults. Existing values are left alone."""
        ts = now_ts()
        async with self.gated():
            async with self.db.begin():
                for key, value in DEFAULT_SETTINGS.items():
                    await self.db.execute(text("""
                        INSERT INTO settings (key, value, updated_at)
                        VALUES (:k, :v, :ts)
                        ON CONFLICT (key) DO NOTHING
                    """), {"k": key, "v": value, "ts": ts})


def int_setting(settings: Dict[str, str], key: str, default: int) -> int:
    try:
        return int(settings.get(key) or default)
    except ValueError:
        return default
