# Overview: Transaction boundaries, row locks and retry for concurrent writers.

from __future__ import annotations

import time
from contextlib import contextmanager

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db

_DEPTH_KEY = "unit_of_work_depth"


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    Mutable aggregates also carry version_id_col, so SQLite still detects
    lost updates as StaleDataError.
    """
    return query.with_for_update()


def in_unit_of_work() -> bool:
    return db.session.info.get(_DEPTH_KEY, 0) > 0


@contextmanager
def unit_of_work():
    """
    Explicit transaction boundary.

    The outermost block commits on success and rolls back on any exception.
    Nested blocks only flush, so an operation called from inside another
    operation joins the caller's transaction instead of committing it early.
    """
    session = db.session
    depth = session.info.get(_DEPTH_KEY, 0)
    session.info[_DEPTH_KEY] = depth + 1
    try:
        yield session
        if depth == 0:
            session.commit()
        else:
            session.flush()
    except Exception:
        if depth == 0:
            session.rollback()
        raise
    finally:
        session.info[_DEPTH_KEY] = depth


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float = 0.1, retry_on: tuple = ()):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks), StaleDataError
    (optimistic locking conflicts) and any extra exception types in
    `retry_on` (e.g. IntegrityError for generated document numbers).

    Inside an enclosing unit of work the call runs once: the enclosing
    operation owns the transaction and therefore the retry.
    """
    if in_unit_of_work():
        return func()

    if attempts is None:
        attempts = current_app.config.get("DB_RETRY_ATTEMPTS", 3)
    retryable = (OperationalError, StaleDataError) + tuple(retry_on)

    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except retryable as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            current_app.logger.warning(
                "Retrying after %s (attempt %d of %d)", type(exc).__name__, attempt + 1, attempts
            )
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc


def run_in_transaction(func, *, retry_on: tuple = ()):
    """Run `func` inside a unit of work, retrying the whole unit on conflicts."""
    def _op():
        with unit_of_work():
            return func()
    return run_with_retry(_op, retry_on=retry_on)
