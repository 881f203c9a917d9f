"""
Notification fan-out after a payment is matched or a link is re-issued.

Each channel is independent: a failing SMTP relay does not stop the WhatsApp
message and nothing here ever raises into the payment path.
"""
from __future__ import annotations
import asyncio
import logging
import re
import smtplib
from email.message import EmailMessage
from email.utils import formataddr
from typing import Dict, Optional

import httpx

from .helpers import normalize_whatsapp_number
from .model.db import Order
from .model.settings import int_setting
from .templates import render

log = logging.getLogger(__name__)


# ----------------------------
# Email (SMTP relay)
# ----------------------------
class EmailSender:
    def __init__(self, timeout: float = 15.0) -> None:
        self.timeout = timeout

    @staticmethod
    def enabled(settings: Dict[str, str]) -> bool:
        return settings.get("smtp_active") == "1" and \
            bool(settings.get("smtp_host"))

    def _send_sync(self, settings: Dict[str, str], msg: EmailMessage) -> None:
        host = settings["smtp_host"]
        port = int_setting(settings, "smtp_port", 587)
        user = settings.get("smtp_username") or ""
        password = settings.get("smtp_password") or ""
        if port == 465:
            server = smtplib.SMTP_SSL(host, port, timeout=self.timeout)
        else:
            server = smtplib.SMTP(host, port, timeout=self.timeout)
        with server:
            if port != 465:
                server.starttls()
            if user and password:
                server.login(user, password)
            server.send_message(msg)

    async def send(self, settings: Dict[str, str], to: str, subject: str,
                   html: str) -> bool:
        if not self.enabled(settings):
            log.info("SMTP inactive, skipping email to %s", to)
            return False
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = formataddr((
            settings.get("smtp_from_name") or settings.get("store_name", ""),
            settings.get("smtp_username") or settings.get("store_email", ""),
        ))
        msg["To"] = to
        msg.set_content("Buka email ini dengan aplikasi yang mendukung HTML.")
        msg.add_alternative(html, subtype="html")
        # smtplib blocks; keep it off the event loop
        await asyncio.to_thread(self._send_sync, settings, msg)
        log.info("email sent to %s: %s", to, subject)
        return True


# ----------------------------
# WhatsApp (bot process bridge)
# ----------------------------
class WhatsAppNotifier:
    """
    The WhatsApp session lives in the bot process; it exposes a small local
    HTTP bridge:
      GET  /health         -> {"ready": bool}
      POST /send-message   {"phone": "62...", "message": "..."}
    """

    def __init__(self, bridge_url: str, client: httpx.AsyncClient) -> None:
        # the client is owned (and closed) by the caller
        self.bridge_url = bridge_url.rstrip("/")
        self.client = client

    async def connected(self) -> bool:
        try:
            r = await self.client.get(f"{self.bridge_url}/health")
            return r.status_code == 200 and bool(r.json().get("ready"))
        except (httpx.HTTPError, ValueError):
            return False

    async def send(self, phone: str, message: str) -> bool:
        if not await self.connected():
            log.warning("WhatsApp bot not connected, message dropped")
            return False
        number = normalize_whatsapp_number(phone)
        r = await self.client.post(
            f"{self.bridge_url}/send-message",
            json={"phone": number, "message": message},
        )
        r.raise_for_status()
        log.info("WhatsApp message sent to %s", number)
        return True


# ----------------------------
# Telegram (Bot API)
# ----------------------------
_CHAT_ID = re.compile(r"^-?\d+$")


class TelegramNotifier:
    BASE_URL = "https://api.telegram.org/bot"

    def __init__(self, client: httpx.AsyncClient) -> None:
        self.client = client

    @staticmethod
    def chat_id_for(handle: Optional[str]) -> Optional[str]:
        # the Bot API cannot open a chat with an @username; only orders made
        # through the bot carry a numeric chat id
        if handle and _CHAT_ID.match(handle.strip()):
            return handle.strip()
        return None

    async def send(self, bot_token: str, chat_id: str, message: str) -> bool:
        r = await self.client.post(
            f"{self.BASE_URL}{bot_token}/sendMessage",
            json={"chat_id": chat_id, "text": message,
                  "disable_web_page_preview": True},
        )
        r.raise_for_status()
        log.info("Telegram message sent to chat %s", chat_id)
        return True


# ----------------------------
# Dispatcher
# ----------------------------
class NotificationDispatcher:
    def __init__(self, email: EmailSender, whatsapp: WhatsAppNotifier,
                 telegram: TelegramNotifier) -> None:
        self.email = email
        self.whatsapp = whatsapp
        self.telegram = telegram

    async def _guard(self, channel: str, invoice: str, coro) -> bool:
        try:
            return bool(await coro)
        except Exception:
            log.error("%s notification failed for %s", channel, invoice,
                      exc_info=True)
            return False

    async def payment_confirmed(self, settings: Dict[str, str], order: Order,
                                download_link: str) -> Dict[str, bool]:
        expiry = int_setting(settings, "token_expiry_minutes", 60)
        ctx = dict(order=order, download_link=download_link,
                   expiry_minutes=expiry,
                   store_name=settings.get("store_name", ""))
        sent: Dict[str, bool] = {}

        if order.customer_email:
            sent["email"] = await self._guard(
                "email", order.invoice_number,
                self.email.send(
                    settings, order.customer_email,
                    f"Pembayaran Berhasil - {order.invoice_number}",
                    render("email_invoice.html", **ctx),
                ),
            )

        message = render("whatsapp_paid.txt", **ctx)
        if order.customer_whatsapp:
            sent["whatsapp"] = await self._guard(
                "whatsapp", order.invoice_number,
                self.whatsapp.send(order.customer_whatsapp, message),
            )

        chat_id = TelegramNotifier.chat_id_for(order.customer_telegram)
        bot_token = settings.get("telegram_bot_token")
        if chat_id and bot_token:
            sent["telegram"] = await self._guard(
                "telegram", order.invoice_number,
                self.telegram.send(bot_token, chat_id,
                                   message.replace("*", "")),
            )
        return sent

    async def download_reissued(self, settings: Dict[str, str], order: Order,
                                download_link: str) -> Dict[str, bool]:
        if not order.customer_email:
            return {}
        expiry = int_setting(settings, "token_expiry_minutes", 60)
        ok = await self._guard(
            "email", order.invoice_number,
            self.email.send(
                settings, order.customer_email,
                f"Link Download Baru - {order.invoice_number}",
                render("email_download.html", order=order,
                       download_link=download_link, expiry_minutes=expiry),
            ),
        )
        return {"email": ok}
