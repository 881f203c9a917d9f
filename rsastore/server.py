from __future__ import annotations
import sys

import asyncio
import httpx
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from .infra.logs import setup_logging
from .infra.ratelimit import RateLimiter
from .infra.sql import make_database

from .model.db import Product, create_tables
from .model.orders import OrderLedger, verify_contact
from .model.settings import SettingsStore, int_setting
from .model.tokens import (
    TokenIssuer, EXPIRED, FORBIDDEN, REDIRECT, FILE, Redemption,
)
from .model.chatsession import (
    ChatSessionStore, new_store, BACKEND as CHATSESSION_BACKEND
)
from .checkout import ContactInfo, create_order, order_summary
from .errors import (
    CheckoutError, DuplicateInvoiceError, OrderNotPaidError,
    ProductNotFoundError,
)
from .matcher import PaymentMatcher, download_url
from .notifications import (
    EmailSender, NotificationDispatcher, TelegramNotifier, WhatsAppNotifier,
)
from .qris import QrisGenerator, QrisService
from .sweeper import (
    run_sweeper, CLEANUP_INTERVAL_SECONDS, CLEANUP_INITIAL_DELAY_SECONDS,
)
from .templates import render

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.responses import (
    FileResponse, HTMLResponse, ORJSONResponse, RedirectResponse,
)

from sqlalchemy.ext.asyncio import AsyncSession
from .helpers import (
    ct_equal, sanitize_email, sanitize_invoice_number, sanitize_phone,
    sanitize_text, to_iso,
)

from pydantic import BaseModel
import redis.asyncio as redis

setup_logging()
log = logging.getLogger("rsastore.server")

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", None)

if DATABASE_URL is None:
    log.critical("DATABASE_URL is required, e.g. sqlite:///./rsastore.db")
    sys.exit(1)

PORT = int(os.environ.get("PORT", "33415"))
DEFAULT_BASE_URL = f"http://localhost:{PORT}"
QRIS_SERVICE_URL = os.environ.get("QRIS_SERVICE_URL", "http://localhost:33416")
WHATSAPP_BRIDGE_URL = os.environ.get(
    "WHATSAPP_BRIDGE_URL", "http://127.0.0.1:33418"
)
FILES_DIR = Path(os.environ.get("FILES_DIR", "."))
CHAT_CHANNELS = {"whatsapp", "telegram"}

# requests per client address: checkout and recovery per hour, webhook
# per minute
CHECKOUT_RATE_LIMIT = int(os.getenv("CHECKOUT_RATE_LIMIT", "10"))
RECOVER_RATE_LIMIT = int(os.getenv("RECOVER_RATE_LIMIT", "3"))
WEBHOOK_RATE_LIMIT = int(os.getenv("WEBHOOK_RATE_LIMIT", "100"))

checkout_limit = RateLimiter(
    "checkout", CHECKOUT_RATE_LIMIT, 60 * 60,
    "Too many checkout attempts, please try again later",
)
recover_limit = RateLimiter(
    "recover", RECOVER_RATE_LIMIT, 60 * 60,
    "Too many recovery attempts, please try again after 1 hour",
)
webhook_limit = RateLimiter(
    "webhook", WEBHOOK_RATE_LIMIT, 60,
    "Webhook rate limit exceeded",
)


engine, SessionAsync, gated = make_database(DATABASE_URL)


async def get_db() -> AsyncSession:
    async with SessionAsync() as session:
        yield session


app = FastAPI(
    title="RSA Store",
    default_response_class=ORJSONResponse,
)


def get_qris() -> QrisGenerator:
    return QrisService(QRIS_SERVICE_URL, client=app.state.http)


def get_dispatcher() -> NotificationDispatcher:
    return app.state.dispatcher


def _sql_chat_store(db: AsyncSession) -> ChatSessionStore:
    return new_store(db=db, gated=gated)


async def chat_sessions(
    db: AsyncSession = Depends(get_db),
) -> ChatSessionStore:
    if CHATSESSION_BACKEND == "sql":
        yield _sql_chat_store(db)
    else:
        yield new_store(r=app.state.redis)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    log.info("=" * 50)
    log.info("RSA Store is starting up...")
    log.info("   - Port: %s", PORT)
    log.info("   - QRIS service: %s", QRIS_SERVICE_URL)
    log.info("   - Chat sessions backend: %s", CHATSESSION_BACKEND)
    log.info("=" * 50)


@app.on_event("startup")
async def _db_init():
    await create_tables(engine)
    async with SessionAsync() as db:
        await SettingsStore(db=db, gated=gated).seed_defaults()


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=10.0,
        limits=httpx.Limits(
            max_connections=64, max_keepalive_connections=16
        ),
    )
    app.state.dispatcher = NotificationDispatcher(
        email=EmailSender(),
        whatsapp=WhatsAppNotifier(WHATSAPP_BRIDGE_URL, client=app.state.http),
        telegram=TelegramNotifier(client=app.state.http),
    )


@app.on_event("startup")
async def _redis_start():
    if CHATSESSION_BACKEND != "sql":
        REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=int(os.getenv("REDIS_MAX_CONN", "64")),
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("startup")
async def _sweeper_start():
    app.state.sweeper = asyncio.create_task(run_sweeper(
        SessionAsync, gated,
        chat_store=_sql_chat_store if CHATSESSION_BACKEND == "sql" else None,
        interval=float(os.getenv(
            "CLEANUP_INTERVAL_SECONDS", CLEANUP_INTERVAL_SECONDS
        )),
        initial_delay=float(os.getenv(
            "CLEANUP_INITIAL_DELAY_SECONDS", CLEANUP_INITIAL_DELAY_SECONDS
        )),
    ))


@app.on_event("shutdown")
async def _sweeper_stop():
    task = getattr(app.state, "sweeper", None)
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        app.state.sweeper = None


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


@app.on_event("shutdown")
async def _db_stop():
    # pooled connections belong to this event loop
    await engine.dispose()


# ----------------------------
# Request bodies
# ----------------------------
class CheckoutRequest(BaseModel):
    customer_email: Optional[str] = None
    customer_whatsapp: Optional[str] = None
    customer_telegram: Optional[str] = None


class RecoverRequest(CheckoutRequest):
    invoice_number: Optional[str] = None


class ChatSessionUpdate(BaseModel):
    state: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


# ----------------------------
# Helpers
# ----------------------------
def api_key_ok(request: Request, settings: dict) -> Optional[bool]:
    """None if no key is configured, else whether the header matches."""
    expected = settings.get("webhook_api_key") or ""
    if not expected:
        return None
    return ct_equal(request.headers.get("x-api-key", ""), expected)


async def require_api_key(request: Request,
                          db: AsyncSession = Depends(get_db)) -> None:
    settings = await SettingsStore(db=db, gated=gated).get_all()
    ok = api_key_ok(request, settings)
    if ok is None:
        raise HTTPException(503, detail="API key not configured")
    if not ok:
        raise HTTPException(401, detail="Unauthorized")


def product_dict(p: Product) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "slug": p.slug,
        "description": p.description or "",
        "price": p.price,
        "stock": p.stock,
        "available": bool(p.is_active and p.stock > 0),
    }


def download_filename(r: Redemption) -> str:
    ext = Path(r.file_path).suffix
    name = r.product_name or Path(r.file_path).name
    if ext and not name.lower().endswith(ext.lower()):
        name += ext
    return name


def resolve_file(file_path: str) -> Optional[Path]:
    base = FILES_DIR.resolve()
    path = (base / file_path).resolve()
    if not path.is_relative_to(base) or not path.is_file():
        return None
    return path


# ----------------------------
# API: catalogue (bots list products from here)
# ----------------------------
@app.get("/api/products")
async def api_products(q: Optional[str] = None, limit: int = 50,
                       db: AsyncSession = Depends(get_db)):
    ledger = OrderLedger(db=db, gated=gated)
    products = await ledger.list_products(
        query=sanitize_text(q, 100), limit=max(1, min(limit, 200))
    )
    return {"items": [product_dict(p) for p in products]}


# ----------------------------
# API: checkout (web form and bots)
# ----------------------------
@app.post("/api/checkout/{product_id}",
          dependencies=[Depends(checkout_limit)])
async def api_checkout(
    product_id: str,
    payload: CheckoutRequest,
    db: AsyncSession = Depends(get_db),
    qris: QrisGenerator = Depends(get_qris),
):
    contact = ContactInfo.sanitized(
        email=payload.customer_email,
        whatsapp=payload.customer_whatsapp,
        telegram=payload.customer_telegram,
    )
    ledger = OrderLedger(db=db, gated=gated)
    product = await ledger.get_product(product_id)

    settings = await SettingsStore(db=db, gated=gated).get_all()
    try:
        order = await create_order(ledger, settings, qris, product, contact)
    except ProductNotFoundError as e:
        raise HTTPException(404, detail=str(e))
    except CheckoutError as e:
        raise HTTPException(400, detail=str(e))
    except DuplicateInvoiceError as e:
        log.error("duplicate invoice number %s", e)
        raise HTTPException(409, detail="Could not create order, try again")
    return order_summary(order)


# ----------------------------
# API: order status (polled by checkout page and bots)
# ----------------------------
@app.get("/api/order-status/{invoice_number}")
async def api_order_status(invoice_number: str,
                           db: AsyncSession = Depends(get_db)):
    order = await OrderLedger(db=db, gated=gated).get_order(invoice_number)
    if order is None:
        return ORJSONResponse({"status": "not_found"}, status_code=404)
    return {
        "status": order.status,
        "paid_at": to_iso(order.paid_at),
    }


# ----------------------------
# API: invoice recovery (new download link for a paid order)
# ----------------------------
@app.post("/api/recover", dependencies=[Depends(recover_limit)])
async def api_recover(
    payload: RecoverRequest,
    background: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    invoice = sanitize_invoice_number(payload.invoice_number)
    email = sanitize_email(payload.customer_email)
    whatsapp = sanitize_phone(payload.customer_whatsapp)
    telegram = sanitize_text(payload.customer_telegram, 100)
    if not invoice:
        raise HTTPException(400, detail="Invoice number is required")

    ledger = OrderLedger(db=db, gated=gated)
    order = await ledger.get_order(invoice)
    if order is None:
        raise HTTPException(404, detail="Order not found")
    if not verify_contact(order, email, whatsapp, telegram):
        raise HTTPException(
            403, detail="Contact information does not match order records"
        )

    settings = await SettingsStore(db=db, gated=gated).get_all()
    expiry = int_setting(settings, "token_expiry_minutes", 60)
    try:
        token = await TokenIssuer(db=db, gated=gated).issue(order, expiry)
    except OrderNotPaidError:
        raise HTTPException(
            409, detail="Order is not paid yet. Please complete payment first."
        )
    link = download_url(settings, token.token, DEFAULT_BASE_URL)
    background.add_task(dispatcher.download_reissued, settings, order, link)
    log.info("download link re-issued for %s", order.invoice_number)
    return {
        "invoice_number": order.invoice_number,
        "product_name": order.product_name,
        "download_url": f"/download/{token.token}",
        "download_link": link,
        "expires_at": to_iso(token.expires_at),
    }


# ----------------------------
# Download handler
# ----------------------------
@app.get("/download/{token}")
async def download(token: str, db: AsyncSession = Depends(get_db)):
    r = await TokenIssuer(db=db, gated=gated).redeem(token)
    if r.outcome == EXPIRED:
        return RedirectResponse(url="/expired-link", status_code=302)
    if r.outcome == FORBIDDEN:
        raise HTTPException(403, detail="Order is not paid yet")
    if r.outcome == REDIRECT:
        return RedirectResponse(url=r.download_link, status_code=302)
    if r.outcome == FILE:
        path = resolve_file(r.file_path)
        if path is not None:
            return FileResponse(path, filename=download_filename(r))
        log.error("file for %s missing on disk: %s",
                  r.invoice_number, r.file_path)
    raise HTTPException(404, detail="Download file not found")


@app.get("/expired-link", response_class=HTMLResponse)
async def expired_link(db: AsyncSession = Depends(get_db)):
    settings = await SettingsStore(db=db, gated=gated).get_all()
    return HTMLResponse(render(
        "expired.html",
        expiry_minutes=int_setting(settings, "token_expiry_minutes", 60),
    ))


# ----------------------------
# Webhook endpoint (payment notifier app)
# ----------------------------
@app.post("/webhook/payment", dependencies=[Depends(webhook_limit)])
async def payment_webhook(
    request: Request,
    background: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    settings = await SettingsStore(db=db, gated=gated).get_all()

    ok = api_key_ok(request, settings)
    if ok is None:
        log.error("webhook rejected: webhook_api_key is not configured")
        return ORJSONResponse(
            {"status": "error", "message": "Webhook not configured"},
            status_code=503,
        )
    if not ok:
        client = request.client.host if request.client else "-"
        log.warning("webhook rejected: invalid API key from %s", client)
        return ORJSONResponse(
            {"status": "error", "message": "Unauthorized"}, status_code=401
        )

    try:
        notification = await request.json()
    except ValueError:
        return ORJSONResponse(
            {"status": "error", "message": "Invalid JSON"}, status_code=400
        )
    log.info("webhook received: %s", notification)

    matcher = PaymentMatcher(
        ledger=OrderLedger(db=db, gated=gated),
        tokens=TokenIssuer(db=db, gated=gated),
        default_base_url=DEFAULT_BASE_URL,
    )
    result = await matcher.process(notification, settings)

    # fan-out runs after the reply has been sent
    if result.download_link:
        background.add_task(dispatcher.payment_confirmed, settings,
                            result.order, result.download_link)
    return result.to_response()


# ----------------------------
# API: chat sessions (shared by the WhatsApp and Telegram bot processes)
# ----------------------------
def _check_channel(channel: str) -> None:
    if channel not in CHAT_CHANNELS:
        raise HTTPException(404, detail="unknown channel")


@app.get("/api/chat-sessions/{channel}/{chat_id}",
         dependencies=[Depends(require_api_key)])
async def api_chat_session_get(
    channel: str, chat_id: str,
    store: ChatSessionStore = Depends(chat_sessions),
):
    _check_channel(channel)
    return await store.get(channel, chat_id)


@app.put("/api/chat-sessions/{channel}/{chat_id}",
         dependencies=[Depends(require_api_key)])
async def api_chat_session_put(
    channel: str, chat_id: str, payload: ChatSessionUpdate,
    store: ChatSessionStore = Depends(chat_sessions),
):
    _check_channel(channel)
    return await store.update(channel, chat_id,
                              state=payload.state, data=payload.data)


@app.delete("/api/chat-sessions/{channel}/{chat_id}",
            dependencies=[Depends(require_api_key)])
async def api_chat_session_delete(
    channel: str, chat_id: str,
    store: ChatSessionStore = Depends(chat_sessions),
):
    _check_channel(channel)
    await store.clear(channel, chat_id)
    return {"ok": True}
