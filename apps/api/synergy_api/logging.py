from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from synergy_api.context import get_log_context


_BASE_RECORD_KEYS = set(logging.makeLogRecord({}).__dict__.keys())
_KNOWN_FIELDS = {
    "method",
    "path",
    "status_code",
    "duration_ms",
    "resource",
    "action",
    "event_name",
    "contact_id",
    "company_id",
    "deal_id",
    "synergy_id",
    "area_id",
    "email_id",
    "from_status",
    "to_status",
    "count",
    "error",
}
_ERROR_MAX_LENGTH = 500


class RequestContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        _attach_context(record)
        return True


_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _attach_context(record: logging.LogRecord) -> None:
    for key, value in get_log_context().items():
        if not getattr(record, key, None):
            setattr(record, key, value)


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    _attach_context(record)
    return record


class JsonLogFormatter(logging.Formatter):
    """Render one JSON object per line with the request context and whitelisted extras."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "actor_user_id": getattr(record, "actor_user_id", None),
        }

        fields: dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key.startswith("_") or key in _BASE_RECORD_KEYS:
                continue
            if key in _KNOWN_FIELDS:
                fields[key] = value

        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        error_value = fields.get("error")
        if isinstance(error_value, str):
            fields["error"] = error_value[:_ERROR_MAX_LENGTH]

        payload["fields"] = fields
        return json.dumps(payload, default=str)


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_synergy_configured", False):
        return

    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(RequestContextFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._synergy_configured = True  # type: ignore[attr-defined]
