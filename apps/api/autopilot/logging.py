from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from autopilot.context import get_correlation_id, get_log_context
from autopilot.core.config import Settings, get_settings

# Only these extras reach the output; CRM payloads and tokens never do.
_FIELD_LIMITS: dict[str, int | None] = {
    "method": None,
    "path": None,
    "status_code": None,
    "duration_ms": None,
    "job_id": None,
    "job_name": None,
    "status": None,
    "attempt": None,
    "source": None,
    "event_hash": None,
    "entity_type": None,
    "entity_id": None,
    "reason": None,
    "stats": None,
    "error": 500,
    "exception": 4000,
}

_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


class LogContextFilter(logging.Filter):
    """Fills job and correlation fields the call site did not pass in ``extra``."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in get_log_context().items():
            if getattr(record, key, None) is None:
                setattr(record, key, value)
        return True


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line, tagged with the service and deployment environment."""

    def __init__(self, service: str = "autopilot", environment: str = "local") -> None:
        super().__init__()
        self.service = service
        self.environment = environment

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service,
            "env": self.environment,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
        }

        fields: dict[str, Any] = {}
        for key, limit in _FIELD_LIMITS.items():
            value = getattr(record, key, None)
            if value is None:
                continue
            if limit is not None and isinstance(value, str):
                value = value[:limit]
            fields[key] = value

        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)[: _FIELD_LIMITS["exception"]]

        payload["fields"] = fields
        return json.dumps(payload, default=str)


def configure_logging(service: str = "autopilot-api", settings: Settings | None = None) -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_autopilot_configured", False):
        return

    settings = settings or get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter(service=service, environment=settings.app_env))
    handler.addFilter(LogContextFilter())

    root_logger.handlers.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._autopilot_configured = True  # type: ignore[attr-defined]
