"""
JSON log lines for the webhook service and its batch flushes.

One line per record: timestamp (taken from the record), level, module,
correlation_id, message, plus the whitelisted extras below. The correlation
id is bound per request by the middleware and per batch by the flush
handler. It lives in a ContextVar, so concurrent flush tasks each log
their own batch id.
"""
import json
import logging
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Attributes lifted from `extra={...}` into the JSON line
EXTRA_FIELDS = ("batch_id", "provider", "sobject", "record_id", "error_code")

QUIET_LOGGERS = ("uvicorn.access", "httpcore", "httpx")


def get_correlation_id() -> Optional[str]:
    return correlation_id_ctx.get()


def set_correlation_id(cid: str) -> None:
    correlation_id_ctx.set(cid)


def generate_correlation_id() -> str:
    """32-char hex id."""
    return uuid.uuid4().hex


class StructuredJsonFormatter(logging.Formatter):
    """Renders each record as a single-line JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry = {
            "timestamp": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "module": record.name,
            "correlation_id": get_correlation_id(),
            "message": record.getMessage(),
        }
        entry.update(
            (key, getattr(record, key))
            for key in EXTRA_FIELDS
            if getattr(record, key, None) is not None
        )
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_structured_logging(log_level: str = "INFO") -> None:
    """Route all logging through one stderr handler using the JSON formatter."""
    handler = logging.StreamHandler()
    handler.setFormatter(StructuredJsonFormatter())

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(logging.getLevelNamesMapping().get(log_level.upper(), logging.INFO))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
