"""
Payment matcher.

There is no gateway transaction reference: a payment is attributed to the
newest *pending* order whose total equals the received amount exactly. The
per-order unique code makes totals distinct in practice, not in principle.

On a match, four effects run in order, each committed on its own:

    1. order -> paid             (guarded by status = 'pending')
    2. product stock - 1         (floored at zero)
    3. download token issued
    4. notifications             (scheduled by the caller, after the reply)

Only (1) decides the outcome. Failures in (2) and (3) are logged; the payment
happened and stays recorded. A paid order left without a token is recovered
through the re-issue flow.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .infra.logs import log_payment
from .model.db import DownloadToken, Order
from .model.orders import OrderLedger
from .model.settings import int_setting
from .model.tokens import TokenIssuer, DEFAULT_EXPIRY_MINUTES
from .webhook import parse_notification, extract_amount

log = logging.getLogger(__name__)

MSG_NO_AMOUNT = "No amount detected"
MSG_NO_MATCH = "No matching order"
MSG_PROCESSED = "Payment processed"


@dataclass
class MatchResult:
    status: str
    message: str
    amount: Optional[int] = None
    order: Optional[Order] = None
    token: Optional[DownloadToken] = None
    download_link: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.order is not None

    def to_response(self) -> Dict[str, Any]:
        out = {"status": self.status, "message": self.message}
        if self.order is not None:
            out["invoice"] = self.order.invoice_number
        return out


def download_url(settings: Dict[str, str], token: str,
                 default_base: str) -> str:
    base = (settings.get("base_url") or default_base).rstrip("/")
    return f"{base}/download/{token}"


class PaymentMatcher:
    def __init__(self, *, ledger: OrderLedger, tokens: TokenIssuer,
                 default_base_url: str) -> None:
        self.ledger = ledger
        self.tokens = tokens
        self.default_base_url = default_base_url

    async def process(self, payload: Any,
                      settings: Dict[str, str]) -> MatchResult:
        notification = parse_notification(payload)
        amount = extract_amount(notification)
        if amount is None:
            log.info("webhook: no amount detected (%s)",
                     type(notification).__name__)
            return MatchResult("success", MSG_NO_AMOUNT)

        log_payment("amount_detected", None, amount, "pending",
                    source=type(notification).__name__)

        order = await self.ledger.find_pending_by_amount(amount)
        if order is None:
            log.info("webhook: no pending order for amount %s", amount)
            return MatchResult("success", MSG_NO_MATCH, amount=amount)

        if not await self.ledger.mark_paid(order):
            # another delivery for the same amount flipped it first
            log.info("webhook: order %s no longer pending",
                     order.invoice_number)
            return MatchResult("success", MSG_NO_MATCH, amount=amount)

        log_payment("order_paid", order.invoice_number, amount, "paid")

        try:
            if not await self.ledger.decrement_stock(order.product_id):
                log.warning("stock already zero for product %s (order %s)",
                            order.product_id, order.invoice_number)
        except Exception:
            log.error("stock decrement failed for order %s",
                      order.invoice_number, exc_info=True)

        token: Optional[DownloadToken] = None
        link: Optional[str] = None
        expiry = int_setting(settings, "token_expiry_minutes",
                             DEFAULT_EXPIRY_MINUTES)
        try:
            token = await self.tokens.issue(order, expiry)
            link = download_url(settings, token.token, self.default_base_url)
        except Exception:
            log.error("token issuance failed for order %s",
                      order.invoice_number, exc_info=True)

        return MatchResult("success", MSG_PROCESSED, amount=amount,
                           order=order, token=token, download_link=link)
