# Overview: Service-layer operations for concurrency; guarded conditional writes and lock retry.

from __future__ import annotations

import logging
import time

from sqlalchemy.exc import OperationalError

from ..extensions import db

_log = logging.getLogger(__name__)


def conditional_update(model, criteria: list, values: dict) -> int:
    """
    UPDATE model SET values WHERE criteria; returns the number of rows changed.

    This is the only way lifecycle state moves: callers pass the expected
    prior state in `criteria` (e.g. status == 'pending', token_used == False)
    so that of two racing writers exactly one sees rowcount == 1. Models with
    a version_id column get it bumped in the same statement.
    """
    values = dict(values)
    version_col = getattr(model, "version_id", None)
    if version_col is not None and "version_id" not in values:
        values[version_col] = version_col + 1
    result = db.session.query(model).filter(*criteria).update(values, synchronize_session=False)
    return result


def retry_on_lock(unit, *, attempts: int = 3, backoff_seconds: float = 0.05):
    """
    Run `unit` (a whole read-check-write-commit step) and run it again when
    the database reports a transient lock ("database is locked", deadlock).

    The session is rolled back before every retry, so `unit` must start from
    a clean read. Domain errors are not retried.
    """
    for attempt in range(1, attempts + 1):
        try:
            return unit()
        except OperationalError:
            db.session.rollback()
            if attempt == attempts:
                raise
            _log.warning("Database busy, retrying (attempt %s of %s)", attempt + 1, attempts)
            time.sleep(backoff_seconds * attempt)
