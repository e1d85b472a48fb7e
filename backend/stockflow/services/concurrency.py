# Overview: Retry helpers for optimistic stock and sale writes.

from __future__ import annotations

import random
import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


class CasConflict(Exception):
    """A conditional UPDATE matched no row; the caller's snapshot was stale."""


RETRYABLE = (CasConflict, OperationalError, StaleDataError)


def backoff_delay(attempt: int, backoff_base: float) -> float:
    """Exponential backoff with full jitter."""
    return random.uniform(0, backoff_base * (2 ** attempt))


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.02, retry_on=RETRYABLE):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on a lost compare-and-swap, OperationalError (locked database,
    deadlocks) and StaleDataError (version_id conflicts). The session is
    rolled back between attempts so the next one re-reads current state.
    The last exception propagates once attempts are exhausted.
    """
    for attempt in range(attempts):
        try:
            return func()
        except retry_on as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise
            delay = backoff_delay(attempt, backoff_base)
            current_app.logger.warning(
                "Concurrent write conflict (%s), retry %d/%d in %.3fs",
                type(exc).__name__, attempt + 1, attempts - 1, delay,
            )
            time.sleep(delay)
    raise RuntimeError("run_with_retry called with attempts < 1")
