"""JSON logging setup shared by the API, the record store and the workflows.

Every log line is a single JSON object written to stdout. Besides the usual
level/logger/message triple each line carries the correlation ID of the
current request and, when known, the actor on whose behalf the work is done.
Those values live in :mod:`contextvars` so that the workflow and reporting
modules can log without being handed a request object.
"""

from __future__ import annotations

import contextvars
import json
import logging
import os
import sys
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, Mapping, Optional

_request_id_ctx: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "request_id", default=None
)
_log_context_ctx: contextvars.ContextVar[Optional[Dict[str, Any]]] = contextvars.ContextVar(
    "log_context", default=None
)

_REDACTED = "[REDACTED]"
_SENSITIVE_FIELDS = {
    field.strip().lower()
    for field in os.environ.get("SENSITIVE_FIELDS", "password,token,email,phone").split(",")
    if field.strip()
}

# Always present in the payload so log consumers can rely on a fixed shape.
_JSON_LOG_FIELDS = (
    "ts",
    "level",
    "logger",
    "msg",
    "request_id",
    "actor_id",
    "actor_role",
    "method",
    "path",
    "status",
    "duration_ms",
    "record_id",
    "operation",
    "error_type",
    "error",
    "stack",
    "extra_context",
)

# Attributes promoted from ``extra=`` to top-level keys.
_PROMOTED_FIELDS = (
    "method",
    "path",
    "status",
    "duration_ms",
    "record_id",
    "operation",
    "error_type",
    "error",
)


def get_request_id() -> Optional[str]:
    """Return the correlation ID bound to the current context, if any."""

    return _request_id_ctx.get()


def set_request_id(request_id: str) -> None:
    _request_id_ctx.set(request_id)
    merge_log_context(request_id=request_id)


def clear_request_id() -> None:
    _request_id_ctx.set(None)


def get_log_context() -> Dict[str, Any]:
    ctx = _log_context_ctx.get()
    if ctx is None:
        ctx = {}
        _log_context_ctx.set(ctx)
    return ctx


def merge_log_context(**kwargs: Any) -> None:
    """Merge non-``None`` key/value pairs into the current log context."""

    ctx = dict(get_log_context())
    ctx.update({key: value for key, value in kwargs.items() if value is not None})
    _log_context_ctx.set(ctx)


def bind_actor(actor: Any) -> None:
    """Attach the acting user to every subsequent log line of this context."""

    merge_log_context(actor_id=getattr(actor, "id", None), actor_role=getattr(actor, "role", None))


def clear_log_context() -> None:
    _log_context_ctx.set({})


def redact_sensitive_data(data: Any, fields: Optional[Iterable[str]] = None) -> Any:
    """Replace values of sensitive keys in nested mappings and sequences.

    Keys are matched case-insensitively. Scalars pass through unchanged.
    """

    fields_set = {field.lower() for field in (fields or _SENSITIVE_FIELDS)}

    if isinstance(data, Mapping):
        return {
            key: _REDACTED if str(key).lower() in fields_set else redact_sensitive_data(value, fields_set)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple, set)):
        return [redact_sensitive_data(item, fields_set) for item in data]
    return data


class JSONFormatter(logging.Formatter):
    """Render log records as single-line JSON objects."""

    _RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "request_id": get_request_id(),
        }

        for key, value in get_log_context().items():
            if payload.get(key) is None:
                payload[key] = value

        for field in _PROMOTED_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info:
            payload["error_type"] = record.exc_info[0].__name__
            payload["error"] = str(record.exc_info[1])
            payload["stack"] = self.formatException(record.exc_info)
        elif record.stack_info:
            payload["stack"] = record.stack_info

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in self._RESERVED and key not in payload and not key.startswith("_")
        }
        if extra:
            payload["extra_context"] = redact_sensitive_data(extra)

        for field in _JSON_LOG_FIELDS:
            payload.setdefault(field, None)

        return json.dumps(payload, default=_json_default, separators=(",", ":"))


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    return str(obj)


_configured = False


def configure_logging() -> None:
    """Install the JSON formatter on the root logger (idempotent)."""

    global _configured
    if _configured:
        return

    level = getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JSONFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = [handler]
    logging.captureWarnings(True)

    # The request middleware logs requests itself.
    for noisy_logger in ("werkzeug", "gunicorn.access", "gunicorn.error"):
        log = logging.getLogger(noisy_logger)
        log.handlers = []
        log.propagate = True
        log.setLevel(logging.WARNING)

    _configured = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)


__all__ = [
    "JSONFormatter",
    "bind_actor",
    "clear_log_context",
    "clear_request_id",
    "configure_logging",
    "get_log_context",
    "get_logger",
    "get_request_id",
    "merge_log_context",
    "redact_sensitive_data",
    "set_request_id",
]
