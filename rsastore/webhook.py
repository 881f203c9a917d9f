"""
Inbound payment notifications.

The notifier app forwards whatever the e-wallet pushed to the phone, so the
payload shape varies. It is parsed into one of three known shapes:

- AmountNotification: a numeric `amountDetected` or `amount` field
- TextNotification:   a `text` field such as "Dana masuk Rp 50.123"
- UnknownNotification: anything else (kept for logging)
"""
from __future__ import annotations
import re
from dataclasses import dataclass
from typing import Any, Optional, Union

AMOUNT_FIELDS = ("amountDetected", "amount")
# orders.total_amount is a 32-bit INTEGER column
MAX_AMOUNT = 2**31 - 1
_RP_PATTERN = re.compile(r"Rp\s*([0-9.,]+)")
_ASCII_DIGITS = re.compile(r"[0-9]+")


@dataclass(frozen=True)
class AmountNotification:
    amount: int
    field: str


@dataclass(frozen=True)
class TextNotification:
    text: str


@dataclass(frozen=True)
class UnknownNotification:
    payload: Any


Notification = Union[AmountNotification, TextNotification,
                     UnknownNotification]


def _to_amount(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        # thousands separators are dropped, "50.123" and "50,123" -> 50123
        digits = re.sub(r"[.,\s]", "", value).lstrip("0") or "0"
        if len(digits) > len(str(MAX_AMOUNT)) or \
                not _ASCII_DIGITS.fullmatch(digits):
            return None
        return int(digits)
    return None


def parse_notification(payload: Any) -> Notification:
    if not isinstance(payload, dict):
        return UnknownNotification(payload)
    for field in AMOUNT_FIELDS:
        amount = _to_amount(payload.get(field))
        if amount:
            return AmountNotification(amount, field)
    text = payload.get("text")
    if isinstance(text, str) and text:
        return TextNotification(text)
    return UnknownNotification(payload)


def extract_amount(notification: Notification) -> Optional[int]:
    """Amount in (0, MAX_AMOUNT] carried by the notification, or None."""
    if isinstance(notification, AmountNotification):
        amount = notification.amount
    elif isinstance(notification, TextNotification):
        m = _RP_PATTERN.search(notification.text)
        if not m:
            return None
        amount = _to_amount(m.group(1))
    else:
        return None
    if not amount or amount <= 0 or amount > MAX_AMOUNT:
        return None
    return amount
