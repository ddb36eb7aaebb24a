# Overview: Retry and compare-and-swap helpers shared by the ticket workflow.

from __future__ import annotations

import time
from typing import Iterable

from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (locked database, deadlocks) and
    StaleDataError (version_id conflicts on ORM flush). Domain errors raised
    by func propagate immediately.
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


def commit_with_retry(*, attempts: int = 3, backoff_base: float = 0.1):
    """Commit current session with retry handling."""
    def _op():
        db.session.commit()
    return run_with_retry(_op, attempts=attempts, backoff_base=backoff_base)


def compare_and_set_status(
    model,
    row_id: int,
    *,
    expected_statuses: Iterable[str],
    values: dict,
) -> int:
    """
    Atomically move a row's status: UPDATE ... WHERE id = :id AND status IN (...).

    Bumps version_id so ORM instances loaded earlier go stale instead of
    overwriting the transition. Returns the number of rows updated (0 or 1);
    the caller decides what a miss means. Does not commit.
    """
    expected = list(expected_statuses)
    if not expected:
        return 0

    stmt = (
        update(model)
        .where(model.id == row_id, model.status.in_(expected))
        .values(version_id=model.version_id + 1, **values)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    return result.rowcount
