"""Structured request/response logging for the Flask API."""

from __future__ import annotations

import os
import random
import time
from typing import Any, Dict

from flask import Flask, Response, g, request

from app_logging import get_logger, merge_log_context, redact_sensitive_data

_DEFAULT_SAMPLE_RATE = 1.0

_request_logger = get_logger("app.request")


def _sample_rate() -> float:
    try:
        return max(0.0, min(1.0, float(os.environ.get("REQUEST_LOG_SAMPLE_RATE", _DEFAULT_SAMPLE_RATE))))
    except ValueError:
        return _DEFAULT_SAMPLE_RATE


def _should_log(path: str) -> bool:
    if path == "/health":
        return False
    rate = _sample_rate()
    return rate >= 1.0 or random.random() <= rate


def _request_payload() -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    if request.args:
        payload["query"] = redact_sensitive_data(request.args.to_dict(flat=False))
    if request.method in {"POST", "PUT", "PATCH", "DELETE"}:
        body = request.get_json(silent=True)
        if body is not None:
            payload["json"] = redact_sensitive_data(body)
    return payload


def init_request_logging(app: Flask) -> None:
    """Log one ``request_start`` and one ``request_end`` line per request.

    Report responses can be large, so response bodies are never logged; the
    status code and duration are enough to correlate with workflow logs that
    share the same request ID.
    """

    @app.before_request
    def _log_request_start() -> None:
        g._request_start = time.perf_counter()
        g._log_request = _should_log(request.path)
        merge_log_context(method=request.method, path=request.path)
        if g._log_request:
            _request_logger.info(
                "request_start",
                extra={
                    "event": "request_start",
                    "route": request.url_rule.rule if request.url_rule else None,
                    "request_payload": _request_payload(),
                },
            )

    @app.after_request
    def _log_request_end(response: Response) -> Response:
        duration_ms = round((time.perf_counter() - g.get("_request_start", time.perf_counter())) * 1000, 2)
        merge_log_context(status=response.status_code, duration_ms=duration_ms)
        if g.get("_log_request"):
            _request_logger.info(
                "request_end",
                extra={"event": "request_end", "status": response.status_code, "duration_ms": duration_ms},
            )
        return response


__all__ = ["init_request_logging"]
