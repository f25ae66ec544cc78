from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from subscription_engine.context import get_correlation_id, get_lifecycle_operation

MAX_ERROR_LENGTH = 500

# Only these ``extra`` keys reach the output; anything else a caller attaches
# (tokens, raw gateway payloads) is dropped by the formatter.
HTTP_FIELDS = ("method", "path", "status_code", "duration_ms")
LIFECYCLE_FIELDS = (
    "user_id",
    "subscription_id",
    "plan_code",
    "billing_cycle",
    "status",
    "code",
    "count",
)
GATEWAY_FIELDS = (
    "gateway_operation",
    "gateway_subscription_id",
    "gateway_payment_id",
    "event_type",
)
LOGGED_FIELDS = frozenset(HTTP_FIELDS + LIFECYCLE_FIELDS + GATEWAY_FIELDS + ("lifecycle_operation", "error"))

_base_factory = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    # Stamped at creation so records handed to other threads keep the request's ids.
    record = _base_factory(*args, **kwargs)
    record.correlation_id = get_correlation_id()
    record.lifecycle_operation = get_lifecycle_operation()
    return record


def _selected_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields = {
        key: value
        for key, value in vars(record).items()
        if key in LOGGED_FIELDS and value is not None
    }
    error = fields.get("error")
    if isinstance(error, str) and len(error) > MAX_ERROR_LENGTH:
        fields["error"] = error[:MAX_ERROR_LENGTH]
    return fields


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line, ids at the top level and whitelisted extras under ``fields``."""

    def format(self, record: logging.LogRecord) -> str:
        fields = _selected_fields(record)
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)
        return json.dumps(
            {
                "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "correlation_id": getattr(record, "correlation_id", None),
                "fields": fields,
            },
            default=str,
        )


class ConsoleLogFormatter(logging.Formatter):
    """Human readable lines for local runs; same field whitelist as the JSON output."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-7s %(name)s [%(correlation_id)s] %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        if getattr(record, "correlation_id", None) is None:
            record.correlation_id = "-"
        line = super().format(record)
        fields = _selected_fields(record)
        if fields:
            line += " " + " ".join(f"{key}={value}" for key, value in sorted(fields.items()))
        return line


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    """Install the record factory and a single stdout handler on the root logger.

    ``LOG_LEVEL`` and ``LOG_FORMAT`` (``json`` or ``text``) are read from the
    environment unless passed explicitly. Calling this again is a no-op.
    """
    root = logging.getLogger()
    if getattr(root, "_subscription_engine_configured", False):
        return

    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    resolved_level = getattr(logging, level_name, logging.INFO)
    formatter: logging.Formatter
    if (fmt or os.getenv("LOG_FORMAT", "json")).lower() == "text":
        formatter = ConsoleLogFormatter()
    else:
        formatter = JsonLogFormatter()

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(resolved_level)
    handler.setFormatter(formatter)

    logging.setLogRecordFactory(_record_factory)
    root.handlers.clear()
    root.setLevel(resolved_level)
    root.addHandler(handler)
    root._subscription_engine_configured = True  # type: ignore[attr-defined]
