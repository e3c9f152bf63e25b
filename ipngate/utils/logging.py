"""
Structured logging for the gateway.

One JSON object per line. The correlation id assigned by the request
middleware rides along in a contextvar and is also persisted on the IPN
event, so a payment can be followed from webhook to queue to reconciliation.

Payer MSISDNs in rendered messages are masked to the last four digits.
Provider error strings and raw snippets end up in messages often enough
that the formatter does this itself rather than trusting call sites.
"""
import json
import logging
import re
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

SERVICE_NAME = "ipn-gateway"

correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Copied from `logger.x(..., extra={...})` onto the JSON line
EXTRA_FIELDS = (
    "event_id",
    "integration_id",
    "bank_code",
    "status",
    "source_ip",
    "error_code",
    "queue_item_id",
)

# Kenyan mobile numbers: 2547XXXXXXXX, +2541XXXXXXXX, 07XXXXXXXX
_MSISDN_RE = re.compile(r"(?<!\w)(\+?254[17]\d{4}|0[17]\d{4})(\d{4})(?!\w)")

_QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx", "alembic")


def get_correlation_id() -> Optional[str]:
    return correlation_id_ctx.get()


def set_correlation_id(cid: Optional[str]) -> None:
    correlation_id_ctx.set(cid)


def generate_correlation_id() -> str:
    """UUID4 hex, 32 chars."""
    return uuid.uuid4().hex


def redact_msisdns(text: str) -> str:
    """'paid by 254712345678' -> 'paid by ********5678'."""
    return _MSISDN_RE.sub(lambda m: "*" * len(m.group(1)) + m.group(2), text)


class StructuredJsonFormatter(logging.Formatter):
    def __init__(self, service: str = SERVICE_NAME):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry = {
            "timestamp": created.strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "service": self.service,
            "correlation_id": get_correlation_id(),
            "module": record.name,
            "message": redact_msisdns(record.getMessage()),
        }

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        entry.update(
            (key, getattr(record, key))
            for key in EXTRA_FIELDS
            if getattr(record, key, None) is not None
        )
        return json.dumps(entry, default=str)


def configure_structured_logging(log_level: str = "INFO") -> None:
    """Install the JSON formatter on the root logger. Call once at startup."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredJsonFormatter())
    root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
