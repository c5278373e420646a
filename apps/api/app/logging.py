from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id


# keys accepted from ``extra=``; anything else passed there is dropped from the output
STRUCTURED_FIELDS = (
    "method",
    "path",
    "status_code",
    "duration_ms",
    "entity_type",
    "field_id",
    "record_id",
    "operation",
    "row_count",
    "error",
)
_MAX_ERROR_LENGTH = 500

_default_record_factory = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _default_record_factory(*args, **kwargs)
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


def _structured_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields = {key: getattr(record, key) for key in STRUCTURED_FIELDS if getattr(record, key, None) is not None}
    if isinstance(fields.get("error"), str):
        fields["error"] = fields["error"][:_MAX_ERROR_LENGTH]
    return fields


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = _structured_fields(record)
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)
        payload = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "fields": fields,
        }
        return json.dumps(payload, default=str)


class ConsoleLogFormatter(logging.Formatter):
    """Single-line output for local development: ``LEVEL logger msg [correlation] key=value ...``."""

    def format(self, record: logging.LogRecord) -> str:
        parts = [record.levelname, record.name, record.getMessage()]
        correlation_id = getattr(record, "correlation_id", None)
        if correlation_id:
            parts.append(f"[{correlation_id}]")
        parts.extend(f"{key}={value}" for key, value in _structured_fields(record).items())
        line = " ".join(str(part) for part in parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_fieldbook_configured", False):
        return

    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    formatter: logging.Formatter
    if os.getenv("LOG_FORMAT", "json").lower() == "console":
        formatter = ConsoleLogFormatter()
    else:
        formatter = JsonLogFormatter()

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(formatter)

    root_logger.handlers.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._fieldbook_configured = True  # type: ignore[attr-defined]
