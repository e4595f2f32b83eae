# Overview: Transaction helpers shared by the write paths (guarded updates and retries).

from __future__ import annotations

import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def guarded_update(statement) -> int:
    """
    Execute a conditional UPDATE and return the number of affected rows.

    The WHERE clause carries the precondition (expected status, enough stock,
    enough refundable balance). Zero rows means the precondition no longer
    holds, usually because a concurrent request changed the row first.
    Loaded instances are expired so the next attribute access re-reads them.
    """
    result = db.session.execute(statement.execution_options(synchronize_session=False))
    db.session.expire_all()
    return result.rowcount


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts).
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
        except Exception:
            # Domain errors abort the unit of work; nothing half-applied stays in the session.
            db.session.rollback()
            raise
    if last_exc:
        raise last_exc
