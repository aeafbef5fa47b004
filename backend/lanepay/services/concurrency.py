# Overview: Locking and retry helpers shared by ledger, reconciler and sync services.

from __future__ import annotations

import threading
import time
import weakref
from contextlib import contextmanager

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    Rows already loaded in the session are overwritten with the database
    values, so status checks under the lock never see a stale copy.
    """
    return query.with_for_update().populate_existing()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts on Order/Payment version_id).
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


_keyed_locks: "weakref.WeakValueDictionary[tuple, threading.RLock]" = weakref.WeakValueDictionary()
_keyed_locks_guard = threading.Lock()


def _lock_for(key: tuple) -> threading.RLock:
    with _keyed_locks_guard:
        lock = _keyed_locks.get(key)
        if lock is None:
            lock = threading.RLock()
            _keyed_locks[key] = lock
        return lock


@contextmanager
def order_lock(order_id: int):
    """
    Serialize status transitions for one order within this process.

    Cross-process safety comes from the version_id compare-and-set that
    SQLAlchemy performs on every Order/Payment UPDATE.
    """
    lock = _lock_for(("order", order_id))
    with lock:
        yield


@contextmanager
def sync_lock(order_id: int):
    """One accounting sync per order at a time; independent of ledger transitions."""
    lock = _lock_for(("sync", order_id))
    with lock:
        yield
