"""Structured logging setup.

Every record carries the current correlation id (the reconciliation task id
while a task runs). Fields passed through ``extra=`` are collected under the
``extra`` key of JSON output.
"""
from __future__ import annotations

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone

from netrecon.config import settings

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)

# Attributes present on every LogRecord; anything else came from extra=
_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime", "correlation_id"}

OPS_LOGGER_NAME = "netrecon.ops"


def generate_correlation_id() -> str:
    return uuid.uuid4().hex[:16]


def set_correlation_id(value: str | None):
    """Set the correlation id for the current context and return the reset token."""
    return correlation_id_var.set(value)


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get()
        return True


def _extras(record: logging.LogRecord) -> dict:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS and not key.startswith("_")
    }


class NetreconJSONFormatter(logging.Formatter):
    def __init__(self, service: str = "netrecon"):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service,
            "correlation_id": getattr(record, "correlation_id", None),
        }
        extra = _extras(record)
        if extra:
            payload["extra"] = extra
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class NetreconTextFormatter(logging.Formatter):
    def __init__(self):
        super().__init__("%(asctime)s %(levelname)-7s [%(correlation)s] %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        record.correlation = (getattr(record, "correlation_id", None) or "-")[:8]
        return super().format(record)


def setup_logging(service: str = "netrecon") -> None:
    """Configure the root logger from settings.log_level and settings.log_format."""
    handler = logging.StreamHandler(sys.stdout)
    if settings.log_format.lower() == "json":
        handler.setFormatter(NetreconJSONFormatter(service=service))
    else:
        handler.setFormatter(NetreconTextFormatter())
    handler.addFilter(CorrelationIdFilter())

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())

    # docker-py and urllib3 are chatty at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("docker").setLevel(logging.WARNING)
