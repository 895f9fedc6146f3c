# Overview: Transaction boundaries, row locking and caller-side retry for ledger writes.

from __future__ import annotations

import time

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from .errors import ConcurrencyConflict


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    Versioned models (version_id_col) still catch the lost update on SQLite.
    """
    return query.with_for_update()


def run_in_transaction(func):
    """
    Execute func as one DB transaction.

    - Any exception rolls the session back, so a compound write never
      leaves half of itself behind.
    - OperationalError (deadlocks, lock timeouts) and StaleDataError
      (optimistic version mismatch) surface as ConcurrencyConflict.
    - No retry here; that is the caller's call (see run_with_retry).
    """
    try:
        return func()
    except (OperationalError, StaleDataError) as exc:
        db.session.rollback()
        raise ConcurrencyConflict(
            "Concurrent update detected, retry the operation",
            {"cause": exc.__class__.__name__},
        ) from exc
    except Exception:
        db.session.rollback()
        raise


def flush_or_conflict(on_integrity_error=None):
    """
    Flush pending writes and translate unique-constraint races.

    on_integrity_error: optional callable returning the exception to raise
    instead of the generic ConcurrencyConflict (e.g. DuplicateCheckNumber).
    """
    try:
        db.session.flush()
    except IntegrityError as exc:
        db.session.rollback()
        if on_integrity_error is not None:
            raise on_integrity_error() from exc
        raise ConcurrencyConflict(
            "Concurrent insert detected, retry the operation",
            {"cause": "IntegrityError"},
        ) from exc


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Caller-side retry policy for operations that raise ConcurrencyConflict.

    The services never call this themselves.
    """
    for attempt in range(attempts):
        try:
            return func()
        except ConcurrencyConflict:
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
