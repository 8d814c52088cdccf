from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from app.context import get_log_context
from app.core.config import get_settings


_BASE_RECORD_KEYS = frozenset(logging.makeLogRecord({}).__dict__)

# Only these extras reach the output; anything else passed via ``extra=`` is dropped.
STRUCTURED_FIELDS = frozenset(
    {
        "method",
        "path",
        "status_code",
        "duration_ms",
        "field_name",
        "field_type",
        "field_id",
        "company_unique_id",
        "count",
        "policy",
        "outcome",
        "user_id",
        "reason",
        "error",
    }
)
MAX_ERROR_LENGTH = 500


def _stamp_context(record: logging.LogRecord) -> None:
    for key, value in get_log_context().items():
        if getattr(record, key, None) is None:
            setattr(record, key, value)


class RequestContextFilter(logging.Filter):
    """Copies the request's correlation and principal ids onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        _stamp_context(record)
        return True


_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    # Stamped at creation so handlers added later (pytest's caplog) see the ids too.
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    _stamp_context(record)
    return record


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields: dict[str, Any] = {
            key: value
            for key, value in record.__dict__.items()
            if key in STRUCTURED_FIELDS and key not in _BASE_RECORD_KEYS
        }
        if "user_id" not in fields and getattr(record, "principal_id", None) is not None:
            fields["user_id"] = record.principal_id
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "fields": fields,
        }
        return json.dumps(payload, default=str)


def configure_logging(level_name: str | None = None) -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_crm_configured", False):
        return

    if level_name is None:
        level_name = get_settings().log_level
    level = getattr(logging, level_name.upper(), logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(RequestContextFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._crm_configured = True  # type: ignore[attr-defined]
