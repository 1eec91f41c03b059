"""Row locking and retry helpers for contended writes."""

from __future__ import annotations

import logging
import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from errors import CounterAllocationFailure
from extensions import db

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (OperationalError, StaleDataError, CounterAllocationFailure)


def lock_for_update(query):
    """Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE and serializes writers on the
    database file instead; other databases honour the row lock.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.05):
    """Execute a whole DB operation, retrying on concurrency-related failures.

    The session is rolled back before every retry so each attempt starts
    from a clean transaction.
    """
    for attempt in range(attempts):
        try:
            return func()
        except RETRYABLE_ERRORS as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise
            logger.warning(
                "Retrying after %s (attempt %s/%s)", type(exc).__name__, attempt + 1, attempts
            )
            time.sleep(backoff_base * (2 ** attempt))
    return None
