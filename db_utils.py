"""Database start-up helpers."""

from __future__ import annotations

import time
from typing import Callable, TypeVar

from sqlalchemy.exc import OperationalError

from app_logging import get_logger

T = TypeVar("T")

_logger = get_logger("app.db")


def retry_with_backoff(
    func: Callable[[], T],
    attempts: int = 3,
    base_delay: float = 0.1,
    max_total_delay: float = 2.0,
) -> T:
    """Call ``func`` again with exponential backoff on ``OperationalError``.

    Only used while the application boots (schema creation). Record store
    operations never retry; their failures go straight back to the caller.
    """

    total_delay = 0.0
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except OperationalError as exc:
            _logger.warning("database not ready", extra={"attempt": attempt, "error": str(exc)})
            if attempt >= attempts or total_delay >= max_total_delay:
                raise
            delay = min(base_delay * (2 ** (attempt - 1)), max_total_delay - total_delay)
            time.sleep(delay)
            total_delay += delay
    raise RuntimeError("retry_with_backoff called with attempts < 1")


__all__ = ["retry_with_backoff"]
