from __future__ import annotations

import json
import logging
import re
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")

SERVICE_NAME = "carrier-verification"

TEXT_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] [%(correlation_id)s] %(message)s"

_NOISY_LOGGERS = ("httpx", "httpcore", "aiokafka", "apscheduler")

# Registry URLs carry the FMCSA web key as a query parameter.
_WEB_KEY_RE = re.compile(r"(webKey=)[^&\s\"']+", re.IGNORECASE)
_CORRELATION_ID_RE = re.compile(r"^[A-Za-z0-9._\-]{1,64}$")


def bind_correlation_id(inbound: str | None = None) -> str:
    """Set the correlation id for the current context and return it.

    Inbound values that are not short header-safe tokens are replaced with a
    fresh id so they cannot forge log lines.
    """
    cid = inbound if inbound and _CORRELATION_ID_RE.match(inbound) else uuid.uuid4().hex[:12]
    correlation_id.set(cid)
    return cid


def log_data(**data: Any) -> dict[str, Any]:
    """``extra=`` payload picked up by :class:`JSONFormatter` as the ``data`` field."""
    return {"extra_data": data}


def redact(text: str) -> str:
    return _WEB_KEY_RE.sub(r"\1***", text)


class ContextFilter(logging.Filter):
    """Stamps the correlation id on every record and masks registry credentials."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id.get("") or "-"
        if record.args:
            record.msg = record.getMessage()
            record.args = None
        record.msg = redact(str(record.msg))
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": SERVICE_NAME,
            "logger": record.name,
            "message": redact(record.getMessage()),
            "correlation_id": getattr(record, "correlation_id", None) or correlation_id.get(""),
        }
        data = getattr(record, "extra_data", None)
        if data:
            if "key" in data:
                entry["carrier_key"] = data["key"]
            entry["data"] = data
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = redact(self.formatException(record.exc_info))
        return json.dumps(entry, default=str)


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for h in root.handlers[:]:
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    handler.setFormatter(JSONFormatter() if fmt == "json" else logging.Formatter(TEXT_FORMAT))
    root.addHandler(handler)

    # Request-level chatter from client libraries only at DEBUG.
    if root.level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
