"""
Structured logging for the metering engine.

Events are emitted through ``log_event`` with their fields flattened onto
the LogRecord, so tests can read ``record.amount`` and the JSON formatter
can write every field without a fixed key list. The request id bound by
the middleware is attached to every record by ``RequestIdFilter``.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, Optional

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RECORD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime", "request_id"}

# Free-text fields (reasons, idempotency keys) are clipped in log output.
MAX_FIELD_CHARS = 200

# Shown inline by the pretty formatter, in this order.
_PRETTY_FIELDS = ("amount", "remaining", "operation_id", "plan_type", "kind", "drift")


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    for bound, label in ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms")):
        if latency_ms < bound:
            return label
    return ">=1000ms"


def _log_value(value):
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    text = str(value)
    if len(text) > MAX_FIELD_CHARS:
        return text[:MAX_FIELD_CHARS] + "...<truncated>"
    return text


def _event_fields(record: logging.LogRecord) -> Dict[str, object]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RECORD_ATTRS and not key.startswith("_") and value is not None
    }


def _timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z")


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, message, request_id, then event fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": _timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        for key, value in _event_fields(record).items():
            payload[key] = _log_value(value)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        parts = [_timestamp(record), record.levelname, "[atelier]"]
        rid = getattr(record, "request_id", None)
        if rid:
            parts.append(f"[rid={rid}]")
        uid = getattr(record, "user_id", None)
        if uid:
            parts.append(f"[user={uid}]")
        parts.append(record.getMessage())
        fields = _event_fields(record)
        parts.extend(f"{key}={_log_value(fields[key])}" for key in _PRETTY_FIELDS if key in fields)
        line = " ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(env: str = "development", stream=None) -> None:
    """JSON lines in production, pretty lines elsewhere; stdout unless ``stream`` is given."""
    logger = logging.getLogger("atelier")
    logger.setLevel(logging.INFO)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(RequestIdFilter())

    logger.handlers = [handler]
    logger.propagate = True

    # Reduce noise from uvicorn loggers but keep error output
    logging.getLogger("uvicorn").propagate = False
    logging.getLogger("uvicorn.error").propagate = False


def log_event(
    level: str,
    msg: str,
    *,
    user_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    request_id: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
):
    """
    Emit a structured event on the ``atelier`` logger.

    ``event_type`` defaults to ``msg``. Keys in ``extra`` become record
    attributes; None values are dropped and long strings are clipped.
    """
    fields: Dict[str, object] = {
        "request_id": request_id or get_request_id(),
        "user_id": user_id,
        "event_type": event_type or msg,
        "error_code": error_code,
    }
    for key, value in (extra or {}).items():
        fields[key] = _log_value(value)

    logger = logging.getLogger("atelier")
    getattr(logger, level, logger.info)(msg, extra=fields)
