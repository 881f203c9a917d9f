import time
import re
import random
import secrets
from datetime import datetime, timezone, timedelta
import hmac
from typing import Optional

WIB = timezone(timedelta(hours=7), "WIB")

UNIQUE_CODE_MIN = 1
UNIQUE_CODE_MAX = 999


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


# ----------------------------
# Input sanitizing
# ----------------------------
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f<>]")


def sanitize_email(value: Optional[str]) -> Optional[str]:
    if not value or not isinstance(value, str):
        return None
    value = value.strip().lower()
    if len(value) > 254 or not is_valid_email(value):
        return None
    return value


def sanitize_phone(value: Optional[str]) -> Optional[str]:
    if not value or not isinstance(value, str):
        return None
    value = value.strip()
    plus = "+" if value.startswith("+") else ""
    digits = re.sub(r"\D", "", value)
    if not 8 <= len(digits) <= 20:
        return None
    return plus + digits


def sanitize_text(value: Optional[str], max_len: int = 255) -> Optional[str]:
    if not value or not isinstance(value, str):
        return None
    value = _CONTROL_CHARS.sub("", value).strip()
    return value[:max_len] or None


def sanitize_invoice_number(value: Optional[str]) -> Optional[str]:
    if not value or not isinstance(value, str):
        return None
    value = re.sub(r"[^A-Z0-9-]", "", value.strip().upper())
    return value[:40] or None


# ----------------------------
# Generators
# ----------------------------
def generate_invoice_number(now: Optional[float] = None) -> str:
    """INV-<date>-<time><3 random digits>, local (WIB) wall clock."""
    dt = datetime.fromtimestamp(now if now is not None else now_ts(), tz=WIB)
    return (
        f"INV-{dt:%Y%m%d}-{dt:%H%M%S}{random.randint(0, 999):03d}"
    )


def generate_unique_code() -> int:
    return random.randint(UNIQUE_CODE_MIN, UNIQUE_CODE_MAX)


def generate_download_token() -> str:
    # url-safe, 256 bits
    return secrets.token_urlsafe(32)


# ----------------------------
# Formatting
# ----------------------------
def format_currency(amount: int) -> str:
    return "Rp " + f"{int(amount):,}".replace(",", ".")


def normalize_whatsapp_number(raw: str) -> str:
    digits = re.sub(r"\D", "", raw or "")
    if digits.startswith("0"):
        digits = "62" + digits[1:]
    if not digits.startswith("62"):
        digits = "62" + digits
    return digits
