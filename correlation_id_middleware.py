"""Correlation ID handling for the Flask API."""

from __future__ import annotations

import uuid
from typing import Optional

from flask import Flask, g, request

from app_logging import clear_log_context, clear_request_id, set_request_id

HEADER_NAME = "X-Request-ID"


def _incoming_request_id() -> Optional[str]:
    return request.headers.get(HEADER_NAME, "").strip() or None


def init_correlation_id(app: Flask) -> None:
    """Give every request an ID, echo it back and clear it afterwards."""

    @app.before_request
    def _assign_request_id() -> None:
        g.request_id = _incoming_request_id() or uuid.uuid4().hex
        set_request_id(g.request_id)

    @app.after_request
    def _echo_request_id(response):
        request_id = getattr(g, "request_id", None)
        if request_id:
            response.headers[HEADER_NAME] = request_id
        return response

    @app.teardown_request
    def _reset_context(_exc):
        clear_request_id()
        clear_log_context()


__all__ = ["HEADER_NAME", "init_correlation_id"]
