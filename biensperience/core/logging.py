"""
Logging for the backend.

configure_logging installs one stdout handler on the "biensperience" logger:
one JSON object per line in production, a readable line elsewhere. Records
are stamped with the request_id that RequestIdMiddleware binds for the
duration of a request, and log_event attaches invite and permission context
as record attributes so both formats can carry it.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

LOGGER_NAME = "biensperience"

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Record attributes rendered by StructuredFormatter, in output order
STRUCTURED_FIELDS = (
    "request_id",
    "user_id",
    "invite_id",
    "entity_kind",
    "entity_id",
    "event_type",
    "error_code",
)

EXTRA_VALUE_LIMIT = 500

_LATENCY_BUCKETS = (
    (10, "<10ms"),
    (100, "10-100ms"),
    (500, "100-500ms"),
    (1000, "500-1000ms"),
)


def get_request_id() -> Optional[str]:
    return request_id_ctx_var.get()


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    """Coarse latency label for request logs."""
    if latency_ms is None:
        return "unknown"
    for upper_ms, label in _LATENCY_BUCKETS:
        if latency_ms < upper_ms:
            return label
    return ">=1000ms"


def _stamp_request_id(record: logging.LogRecord) -> bool:
    if getattr(record, "request_id", None) is None:
        record.request_id = request_id_ctx_var.get()
    return True


class StructuredFormatter(logging.Formatter):
    """Render a record as a JSON object or as a single readable line."""

    def __init__(self, as_json: bool = False):
        super().__init__()
        self.as_json = as_json

    def formatTime(self, record: logging.LogRecord, datefmt: Optional[str] = None) -> str:
        return datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")

    def format(self, record: logging.LogRecord) -> str:
        context = {
            name: getattr(record, name)
            for name in STRUCTURED_FIELDS
            if getattr(record, name, None) is not None
        }
        error = self.formatException(record.exc_info) if record.exc_info else None

        if self.as_json:
            payload: Dict[str, Any] = {
                "timestamp": self.formatTime(record),
                "level": record.levelname,
                "logger": record.name,
                "message": record.getMessage(),
            }
            payload.update(context)
            if error:
                payload["exc_info"] = error
            return json.dumps(payload, default=str)

        line = f"{self.formatTime(record)} {record.levelname:<7} {record.name}: {record.getMessage()}"
        if context:
            line += " [" + " ".join(f"{name}={value}" for name, value in context.items()) + "]"
        if error:
            line += "\n" + error
        return line


def configure_logging(env: str = "development") -> logging.Logger:
    """Route the backend logger to stdout, JSON in production."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter(as_json=env.lower() == "production"))
    handler.addFilter(_stamp_request_id)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.INFO)
    logger.handlers = [handler]
    return logger


def _truncate(value: Any, limit: int = EXTRA_VALUE_LIMIT) -> str:
    text = str(value)
    if len(text) <= limit:
        return text
    return text[:limit] + "...<truncated>"


def log_event(level: str, msg: str, *, extra: Optional[Dict[str, Any]] = None, **fields: Any) -> None:
    """
    Log an event on the backend logger.

    Keyword fields (user_id, invite_id, event_type, error_code) become record
    attributes when not None; request_id defaults to the current request's.
    Values in extra are stringified and cut to EXTRA_VALUE_LIMIT characters.
    """
    attributes: Dict[str, Any] = {"request_id": fields.pop("request_id", None) or get_request_id()}
    attributes.update({name: value for name, value in fields.items() if value is not None})
    for name, value in (extra or {}).items():
        attributes[name] = _truncate(value)

    logging.getLogger(LOGGER_NAME).log(getattr(logging, level.upper(), logging.INFO), msg, extra=attributes)
