# model/orders.py
"""
Order ledger: durable purchase intents and their lifecycle.

    pending -> paid        (payment matcher, terminal)
    pending -> (deleted)   (abandoned-order sweep, terminal)

Every method commits on its own. The payment path relies on the
`status = 'pending'` predicate, not on application locks, to make a second
match for the same amount a no-op.
"""
from __future__ import annotations
import logging
from typing import List, Optional

from sqlalchemy import func, select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.attributes import set_committed_value
from sqlalchemy.ext.asyncio import AsyncSession

from .db import Order, Product
from ..errors import DuplicateInvoiceError
from ..infra.sql import Gated
from ..helpers import now_ts

log = logging.getLogger(__name__)

ABANDONED_ORDER_SECONDS = 60 * 60


class OrderLedger:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    # ---
    # products (read side only; catalogue edits belong to the admin panel)
    # ---
    async def get_product(self, product_id: str) -> Optional[Product]:
        async with self.gated():
            async with self.db.begin():
                return await self.db.get(Product, product_id)

    async def list_products(self, query: Optional[str] = None,
                            limit: int = 50) -> List[Product]:
        stmt = select(Product).where(Product.is_active.is_(True))
        if query:
            stmt = stmt.where(
                func.lower(Product.name).like(f"%{query.lower()}%")
            )
        stmt = stmt.order_by(Product.created_at.desc()).limit(limit)
        async with self.gated():
            async with self.db.begin():
                return list((await self.db.execute(stmt)).scalars().all())

    async def decrement_stock(self, product_id: str) -> bool:
        # never goes below zero
        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(text("""
                    UPDATE products SET stock = stock - 1, updated_at = :ts
                    WHERE id = :id AND stock > 0
                """), {"id": product_id, "ts": now_ts()})
        return res.rowcount == 1

    # ---
    # orders
    # ---
    def _detach(self, order: Optional[Order]) -> Optional[Order]:
        # callers get a plain snapshot: a later rollback on this session
        # (failed token insert, say) must not expire it
        if order is not None and order in self.db:
            self.db.expunge(order)
        return order

    async def insert_pending(self, order: Order) -> Order:
        order.status = "pending"
        if order.created_at is None:
            order.created_at = now_ts()
        try:
            async with self.gated():
                async with self.db.begin():
                    self.db.add(order)
        except IntegrityError as e:
            raise DuplicateInvoiceError(order.invoice_number) from e
        return self._detach(order)

    async def get_order(self, invoice_number: str) -> Optional[Order]:
        async with self.gated():
            async with self.db.begin():
                order = (await self.db.execute(
                    select(Order).where(
                        Order.invoice_number == invoice_number
                    )
                )).scalar_one_or_none()
        return self._detach(order)

    async def find_pending_by_amount(self, amount: int) -> Optional[Order]:
        """Newest pending order whose total equals `amount` exactly."""
        async with self.gated():
            async with self.db.begin():
                order = (await self.db.execute(
                    select(Order)
                    .where(Order.total_amount == int(amount),
                           Order.status == "pending")
                    .order_by(Order.created_at.desc(), Order.id.desc())
                    .limit(1)
                )).scalar_one_or_none()
        return self._detach(order)

    async def pending_total_exists(self, total: int, since_ts: float) -> bool:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                    SELECT 1 FROM orders
                    WHERE status = 'pending' AND total_amount = :t
                      AND created_at >= :since
                    LIMIT 1
                """), {"t": int(total), "since": since_ts})).first()
        return row is not None

    async def mark_paid(self, order: Order) -> bool:
        """
        Flip a pending order to paid. Returns False if the order was no
        longer pending (a concurrent delivery won, or it was swept).
        """
        paid_at = now_ts()
        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(text("""
                    UPDATE orders SET status = 'paid', paid_at = :ts
                    WHERE invoice_number = :inv AND status = 'pending'
                """), {"inv": order.invoice_number, "ts": paid_at})
        if res.rowcount != 1:
            return False
        # keep the loaded instance in sync without marking it dirty
        set_committed_value(order, "status", "paid")
        set_committed_value(order, "paid_at", paid_at)
        return True

    async def sweep_abandoned(
        self, max_age_seconds: int = ABANDONED_ORDER_SECONDS
    ) -> int:
        cutoff = now_ts() - max_age_seconds
        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(text("""
                    DELETE FROM orders
                    WHERE status = 'pending' AND created_at < :cutoff
                """), {"cutoff": cutoff})
        return res.rowcount or 0


def verify_contact(order: Order, email: Optional[str] = None,
                   whatsapp: Optional[str] = None,
                   telegram: Optional[str] = None) -> bool:
    """True if at least one supplied channel matches the order's record."""
    if email and order.customer_email and \
            email.lower() == order.customer_email.lower():
        return True
    if whatsapp and order.customer_whatsapp and \
            whatsapp == order.customer_whatsapp:
        return True
    if telegram and order.customer_telegram and \
            telegram.lower() == order.customer_telegram.lower():
        return True
    return False
