"""
Order creation, shared by the web checkout and the chat bots.

    total_amount = product_price + unique_code

The unique code is what lets the payment matcher tell two pending orders for
the same product apart. Codes are drawn independently per order; with
`unique_code_window_minutes` > 0 a draw that collides with a pending total
inside the window is re-drawn.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from .errors import CheckoutError, ProductNotFoundError
from .helpers import (
    generate_invoice_number, generate_unique_code, now_ts,
    sanitize_email, sanitize_phone, sanitize_text,
)
from .model.db import Order, Product
from .model.orders import OrderLedger
from .model.settings import int_setting
from .qris import QrisGenerator

log = logging.getLogger(__name__)

UNIQUE_CODE_MAX_DRAWS = 20


@dataclass
class ContactInfo:
    email: Optional[str] = None
    whatsapp: Optional[str] = None
    telegram: Optional[str] = None

    @classmethod
    def sanitized(cls, email: Optional[str] = None,
                  whatsapp: Optional[str] = None,
                  telegram: Optional[str] = None) -> "ContactInfo":
        return cls(
            email=sanitize_email(email),
            whatsapp=sanitize_phone(whatsapp),
            telegram=sanitize_text(telegram, 100),
        )

    def is_empty(self) -> bool:
        return not (self.email or self.whatsapp or self.telegram)


def check_product(product: Optional[Product]) -> Product:
    if product is None:
        raise ProductNotFoundError("Product not found")
    if not product.is_active:
        raise CheckoutError("Product not available")
    if product.stock <= 0:
        raise CheckoutError("Product out of stock")
    return product


async def draw_unique_code(ledger: OrderLedger, price: int,
                           window_minutes: int) -> int:
    code = generate_unique_code()
    if window_minutes <= 0:
        return code
    since = now_ts() - window_minutes * 60
    for _ in range(UNIQUE_CODE_MAX_DRAWS):
        if not await ledger.pending_total_exists(price + code, since):
            return code
        code = generate_unique_code()
    log.warning("no collision-free unique code for price %s after %d draws",
                price, UNIQUE_CODE_MAX_DRAWS)
    return code


async def create_order(ledger: OrderLedger, settings: Dict[str, str],
                       qris: QrisGenerator, product: Optional[Product],
                       contact: ContactInfo) -> Order:
    """
    Validate, price and persist a pending order. No stock is reserved here:
    stock only moves when a payment is matched.
    """
    product = check_product(product)
    if contact.is_empty():
        raise CheckoutError(
            "At least one contact (email, WhatsApp or Telegram) is required"
        )

    window = int_setting(settings, "unique_code_window_minutes", 0)
    unique_code = await draw_unique_code(ledger, product.price, window)
    total_amount = product.price + unique_code

    base_string = settings.get("qris_base_string", "")
    qris_string = await qris.generate(base_string, total_amount)

    order = Order(
        invoice_number=generate_invoice_number(),
        product_id=product.id,
        product_name=product.name,
        product_price=product.price,
        unique_code=unique_code,
        total_amount=total_amount,
        customer_email=contact.email,
        customer_whatsapp=contact.whatsapp,
        customer_telegram=contact.telegram,
        payment_method="qris",
        qris_string=qris_string,
        created_at=now_ts(),
    )
    await ledger.insert_pending(order)
    log.info("order %s created: %s total=%s",
             order.invoice_number, product.id, total_amount)
    return order


def order_summary(order: Order) -> dict:
    return {
        "invoice_number": order.invoice_number,
        "product_id": order.product_id,
        "product_name": order.product_name,
        "product_price": order.product_price,
        "unique_code": order.unique_code,
        "total_amount": order.total_amount,
        "status": order.status,
        "payment_method": order.payment_method,
        "qris_string": order.qris_string or "",
        "customer_email": order.customer_email,
        "customer_whatsapp": order.customer_whatsapp,
        "customer_telegram": order.customer_telegram,
    }
