import logging
import os
from typing import Optional

_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"

payments_logger = logging.getLogger("rsastore.payments")


def setup_logging(level: Optional[str] = None) -> None:
    """Configure the root logger once per process (server, bots, CLI)."""
    root = logging.getLogger()
    if getattr(root, "_rsastore_configured", False):
        return
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_FORMAT))
    root.addHandler(handler)
    root.setLevel(level)
    root._rsastore_configured = True


def log_payment(stage: str, invoice: Optional[str], amount: int,
                status: str, **extra) -> None:
    # one greppable audit line per payment stage
    fields = " ".join(f"{k}={v}" for k, v in sorted(extra.items()))
    payments_logger.info(
        "payment stage=%s invoice=%s amount=%s status=%s %s",
        stage, invoice or "-", amount, status, fields,
    )
