# Overview: Row locking and retry helpers shared by the write paths (checkout, lifecycle, packing).

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


RETRYABLE_ERRORS = (OperationalError, StaleDataError)


def lock_for_update(query):
    """
    SELECT ... FOR UPDATE on the rows an operation is about to change.

    SQLite ignores the clause; there the version_id columns catch lost
    updates instead. Stock safety never depends on this lock, see
    stock_ledger.decrement.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1, retry_on=RETRYABLE_ERRORS):
    """
    Run func (one unit of DB work ending in commit) and retry it on
    lock/deadlock errors and optimistic version_id conflicts.

    Each attempt starts from a rolled-back session, so func must re-read
    whatever it changes. Domain errors raised by func are not retried; the
    session is rolled back and the error propagates.
    """
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except retry_on as exc:
            db.session.rollback()
            if attempt == attempts:
                raise
            delay = backoff_base * (2 ** (attempt - 1))
            current_app.logger.warning(
                "Retrying %s after %s (attempt %s/%s, sleeping %.2fs)",
                getattr(func, "__qualname__", func), type(exc).__name__, attempt, attempts, delay,
            )
            time.sleep(delay)
        except Exception:
            db.session.rollback()
            raise
