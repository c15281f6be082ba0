# Overview: Row locking and retry helpers shared by every mutating cash operation.

from __future__ import annotations

import logging
import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import LedgerUnavailableError
from ..extensions import db


logger = logging.getLogger(__name__)


class ConcurrentWriteConflict(Exception):
    """Another writer committed first (unique constraint); re-run the whole operation."""


RETRYABLE_ERRORS = (OperationalError, StaleDataError, ConcurrentWriteConflict)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    On SQLite the version_id columns still catch the lost update at flush.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute a read-check-write operation with retry on concurrency failures.

    Retries on OperationalError (deadlocks, locks), StaleDataError
    (optimistic locking conflicts) and ConcurrentWriteConflict. Any other
    exception rolls the session back and propagates, so a rejected
    operation never leaves a partial write behind. When retries run out
    the failure surfaces as a retryable LedgerUnavailableError.
    """
    if attempts is None:
        attempts = current_app.config.get("CASH_RETRY_ATTEMPTS", 3)
    if backoff_base is None:
        backoff_base = current_app.config.get("CASH_RETRY_BACKOFF", 0.1)

    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except RETRYABLE_ERRORS as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                break
            logger.info("Concurrent write conflict (attempt %d/%d): %s", attempt + 1, attempts, exc)
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise

    logger.warning("Giving up after %d attempts: %s", attempts, last_exc)
    raise LedgerUnavailableError(
        "Cash ledger is temporarily unavailable, retry the operation",
        attempts=attempts,
        cause=type(last_exc).__name__ if last_exc else None,
    ) from last_exc
