"""
Structured logging for the entitlement service.

Engines log through module loggers under ``backend``; HTTP and job summaries
go through ``creatorhub``. Both share one stdout handler whose formatter is
JSON in production and a single readable line elsewhere. Anything passed via
``extra={...}`` is carried into the output, and the request id bound by the
middleware is attached to every record.
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

SERVICE_LOGGERS = ("creatorhub", "backend")

# Attributes every LogRecord has; the rest arrived through extra={...}
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "request_id"}

# Upper bounds (exclusive) in milliseconds
_LATENCY_BUCKETS = ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms"))

_MAX_FIELD_CHARS = 500


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return default if rid is None else rid


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    """Coarse latency label for request logs."""
    if latency_ms is None:
        return "unknown"
    for upper, label in _LATENCY_BUCKETS:
        if latency_ms < upper:
            return label
    return ">=1000ms"


def _context_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {key: value for key, value in vars(record).items() if key not in _RECORD_ATTRS}


def _utc_stamp(record: logging.LogRecord) -> str:
    stamp = datetime.fromtimestamp(record.created, timezone.utc)
    return stamp.strftime("%Y-%m-%dT%H:%M:%S.") + f"{stamp.microsecond // 1000:03d}Z"


class RequestIdFilter(logging.Filter):
    """Attach the bound request id unless the caller passed one explicitly."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        document = {
            "timestamp": _utc_stamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
            **_context_fields(record),
        }
        if record.exc_info:
            document["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(document, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        parts = [_utc_stamp(record), record.levelname, f"[{record.name}]"]
        rid = getattr(record, "request_id", None)
        if rid:
            parts.append(f"[rid={rid}]")
        parts.append(record.getMessage())
        parts.extend(f"{key}={value}" for key, value in _context_fields(record).items())
        line = " ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(env: str = "development") -> None:
    """Point every service logger at one stdout handler."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(RequestIdFilter())

    for name in SERVICE_LOGGERS:
        service_logger = logging.getLogger(name)
        service_logger.setLevel(logging.INFO)
        service_logger.handlers = [handler]
        service_logger.propagate = True

    # uvicorn keeps its own handlers
    for name in ("uvicorn", "uvicorn.error"):
        logging.getLogger(name).propagate = False


def _clip(value: Any) -> str:
    text = value if isinstance(value, str) else str(value)
    if len(text) > _MAX_FIELD_CHARS:
        return text[:_MAX_FIELD_CHARS] + "...<truncated>"
    return text


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    account_id: Optional[str] = None,
    entity_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
):
    """Log one structured line on ``creatorhub`` with ids and clipped extras."""
    service_logger = logging.getLogger("creatorhub")
    if not service_logger.handlers:
        configure_logging(os.getenv("ENV", "development"))

    fields: Dict[str, object] = {
        "request_id": request_id or get_request_id(),
        "account_id": account_id,
        "entity_id": entity_id,
    }
    fields.update({k: v for k, v in (("event_type", event_type), ("error_code", error_code)) if v})
    for key, value in (extra or {}).items():
        fields[f"extra_{key}" if key in _RECORD_ATTRS else key] = _clip(value)

    getattr(service_logger, level, service_logger.info)(msg, extra=fields)
