"""
Retry and locking helpers for store access.

Only idempotent reads go through ``retry_read``; writes that could duplicate
a physical action (command creation) are never retried here.
"""
import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from relayhub.services.errors import StoreError

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (OperationalError, PoolTimeoutError)


def retry_read(
        operation: Callable[[], Any],
        db: Optional[Session] = None,
        max_retries: int = 2,
        backoff_base: float = 0.05,
        backoff_max: float = 1.0,
        context: Optional[str] = None,
) -> Any:
    """
    Run an idempotent read, retrying transient store errors with exponential backoff.

    Raises:
        StoreError: once retries are exhausted
    """
    last_error = None
    for attempt in range(max_retries + 1):
        if attempt > 0:
            backoff = min(backoff_base * (2 ** (attempt - 1)), backoff_max)
            logger.debug(f"Retry #{attempt} after {backoff:.2f}s" + (f" ({context})" if context else ""))
            time.sleep(backoff)
        try:
            return operation()
        except TRANSIENT_ERRORS as e:
            last_error = e
            logger.warning(f"Store read failed (attempt {attempt + 1}): {e}" + (f" ({context})" if context else ""))
            if db is not None:
                db.rollback()

    raise StoreError(f"Store read failed after {max_retries} retries: {last_error}") from last_error


class KeyedLock:
    """One lock per key (device id, rule id) so unrelated keys never contend."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str, timeout: Optional[float] = None):
        """
        Hold the lock for ``key``. Yields False when it could not be
        acquired within ``timeout`` so callers can fail closed.
        """
        lock = self._lock_for(key)
        acquired = lock.acquire(timeout=timeout) if timeout is not None else lock.acquire()
        try:
            yield acquired
        finally:
            if acquired:
                lock.release()

    def discard(self, key: str):
        with self._guard:
            self._locks.pop(key, None)
