# Overview: Row locking, conditional updates and retry helpers shared by the services.

from __future__ import annotations

import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    Anything that must hold on SQLite too goes through conditional_update.
    """
    return query.with_for_update()


def conditional_update(stmt) -> int:
    """
    Execute a guarded UPDATE and return the number of rows it touched.

    The WHERE clause carries the precondition (e.g. enough stock, status
    still HELD); 0 means the precondition did not hold at write time.
    """
    result = db.session.execute(stmt.execution_options(synchronize_session=False))
    return result.rowcount or 0


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, "database is locked") and
    StaleDataError (optimistic locking conflicts).
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc

