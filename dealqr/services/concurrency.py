from __future__ import annotations

import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..app_logger import get_logger
from ..models import db

log = get_logger(__name__)


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.05):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, SQLite "database is locked") and
    StaleDataError. The session is rolled back before each retry, so ``func``
    must be safe to run again from scratch.
    """
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise
            log.warning('retrying after %s (attempt %d/%d)', type(exc).__name__, attempt + 1, attempts)
            time.sleep(backoff_base * (2 ** attempt))
