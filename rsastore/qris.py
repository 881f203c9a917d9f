from abc import ABC, abstractmethod
import logging
from typing import Optional

import httpx

log = logging.getLogger(__name__)


# ----------------------------
# QRIS generator interface
# ----------------------------
class QrisGenerator(ABC):
    @abstractmethod
    async def generate(self, base_string: str, amount: int) -> str:
        """Return a payment string for `amount` built from the merchant
        template. Must not raise: fall back to `base_string`."""


# ----------------------------
# HTTP microservice implementation
# ----------------------------
class QrisService(QrisGenerator):
    """Client for the QR microservice: POST {base_string, amount}."""

    def __init__(self, base_url: str,
                 client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 5.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = client
        self.timeout = timeout

    async def _post(self, payload: dict) -> httpx.Response:
        url = f"{self.base_url}/generate-qris"
        if self.client is not None:
            return await self.client.post(url, json=payload,
                                          timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(url, json=payload)

    async def generate(self, base_string: str, amount: int) -> str:
        try:
            r = await self._post({"base_string": base_string,
                                  "amount": int(amount)})
            r.raise_for_status()
            data = r.json()
            qris_string = data.get("qris_string") \
                if isinstance(data, dict) else None
            if not qris_string:
                raise ValueError("response has no qris_string")
            return qris_string
        except (httpx.HTTPError, ValueError) as e:
            # degraded mode: the template still renders as a QR code, the
            # buyer types the amount by hand
            log.error("QRIS generation failed for amount %s: %s", amount, e)
            return base_string
