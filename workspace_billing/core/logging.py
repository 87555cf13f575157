"""
Logging for the billing service.

Every record on the `workspace_billing` logger carries the request id bound
by RequestIdMiddleware. Production emits one JSON object per line; other
environments get a single readable line with the billing ids appended.

Use log_event() for anything a billing operator may need to search for later
(checkout created, subscription synced, webhook failed). Its `extra` values
are stringified and truncated so a gateway payload can never flood the log.
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Optional

LOGGER_NAME = "workspace_billing"
MAX_EXTRA_CHARS = 500

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Attributes every LogRecord has; anything else on a record came from `extra`
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

# Upper bound (exclusive) in ms -> label
_LATENCY_BUCKETS = ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms"))

_PRETTY_IDS = ("user_id", "workspace_id", "subscription_id", "event_type")


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return default if rid is None else rid


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    for upper, label in _LATENCY_BUCKETS:
        if latency_ms < upper:
            return label
    return ">=1000ms"


def _utc_timestamp(record: logging.LogRecord) -> str:
    stamp = datetime.fromtimestamp(record.created, timezone.utc)
    return stamp.strftime("%Y-%m-%dT%H:%M:%S.") + f"{stamp.microsecond // 1000:03d}Z"


def _record_fields(record: logging.LogRecord) -> Dict[str, object]:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RECORD_ATTRS and value is not None
    }


class RequestIdFilter(logging.Filter):
    """Stamp records logged without an explicit request_id."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, object] = {
            "ts": _utc_timestamp(record),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        payload.update(_record_fields(record))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, sort_keys=False)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = _record_fields(record)
        rid = fields.pop("request_id", None)
        ids = " ".join(f"{key}={fields.pop(key)}" for key in _PRETTY_IDS if key in fields)
        rest = " ".join(f"{key}={value}" for key, value in fields.items())

        line = f"{_utc_timestamp(record)} {record.levelname:<7} {record.getMessage()}"
        if rid:
            line += f" rid={rid}"
        if ids:
            line += f" | {ids}"
        if rest:
            line += f" | {rest}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(env: str = "development", level: Optional[str] = None) -> logging.Logger:
    """Install one stdout handler on the billing logger (replacing any previous one)."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel((level or os.getenv("LOG_LEVEL") or "INFO").upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(RequestIdFilter())
    logger.handlers = [handler]

    # uvicorn installs its own handlers
    for name in ("uvicorn", "uvicorn.error"):
        logging.getLogger(name).propagate = False
    return logger


def _clip(value: object) -> str:
    try:
        text = str(value)
    except Exception:
        return "<unrepresentable>"
    if len(text) > MAX_EXTRA_CHARS:
        return text[:MAX_EXTRA_CHARS] + "...<truncated>"
    return text


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    workspace_id: Optional[str] = None,
    subscription_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
) -> None:
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        # Scripts and tests may log before the app configures logging
        configure_logging(os.getenv("ENV", "development"))

    fields: Dict[str, object] = {
        "request_id": request_id or get_request_id(),
        "user_id": user_id,
        "workspace_id": workspace_id,
        "subscription_id": subscription_id,
        "event_type": event_type,
        "error_code": error_code,
    }
    for key, value in (extra or {}).items():
        # LogRecord refuses to overwrite its own attributes
        name = f"x_{key}" if key in _RECORD_ATTRS else key
        fields[name] = _clip(value)

    logger.log(logging.getLevelName(level.upper()), msg, extra=fields)
