"""
Per-key advisory locks.

Contract: at most one holder per key at a time, bounded wait, and the lock is
gone when the enclosing database transaction ends.

- PostgreSQL: ``pg_try_advisory_xact_lock(hashtext(key))`` polled until the
  deadline. Released by the database at commit/rollback.
- SQLite: a process-local registry of named ``threading.Lock`` objects, taken
  before the transaction opens. The ``BEGIN IMMEDIATE`` that follows waits
  only for what is left of the timeout, so a writer in another process or
  thread cannot stretch the wait past it.
"""

import os
import time
from contextlib import contextmanager
from threading import Lock
from typing import Dict, Generator, List, Optional
import structlog

from ..persistence.database import Database, DatabaseBusy, Transaction
from .errors import LockTimeout

logger = structlog.get_logger()


class NamedLockRegistry:
    """Process-local mutex per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._guard = Lock()
        self._locks: Dict[str, List] = {}  # key -> [Lock, users]

    def acquire(self, key: str, timeout: float) -> bool:
        with self._guard:
            entry = self._locks.setdefault(key, [Lock(), 0])
            entry[1] += 1

        acquired = entry[0].acquire(timeout=max(timeout, 0))
        if not acquired:
            self._release_entry(key)
        return acquired

    def release(self, key: str) -> None:
        with self._guard:
            entry = self._locks[key]
        entry[0].release()
        self._release_entry(key)

    def _release_entry(self, key: str) -> None:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                return
            entry[1] -= 1
            if entry[1] <= 0:
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


_process_locks = NamedLockRegistry()


class AdvisoryLock:
    """
    Named critical section wrapped around one database transaction.

    The whole wait is bounded by ``timeout_seconds``: the named lock and, on
    SQLite, the database write lock behind it.

    Usage:
        lock = AdvisoryLock(timeout_seconds=5)
        with lock.transaction(db, f"monthly-credits:{user_id}") as tx:
            ...
    """

    DEFAULT_TIMEOUT_SECONDS = 5.0
    POLL_INTERVAL_SECONDS = 0.05

    def __init__(
        self,
        timeout_seconds: Optional[float] = None,
        registry: Optional[NamedLockRegistry] = None,
    ):
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else float(
            os.environ.get("LEDGER_LOCK_TIMEOUT_SECONDS", self.DEFAULT_TIMEOUT_SECONDS)
        )
        self.registry = registry or _process_locks

    @contextmanager
    def transaction(self, db: Database, key: str) -> Generator[Transaction, None, None]:
        """Open a transaction on ``db`` holding ``key`` until it ends."""
        started = time.monotonic()
        if db.is_postgres:
            with db.transaction() as tx:
                self._acquire_postgres(tx, key)
                logger.debug("advisory_lock_acquired", key=key, waited_ms=(time.monotonic() - started) * 1000)
                # Transaction-scoped: PostgreSQL releases it at commit/rollback
                yield tx
            return

        if not self.registry.acquire(key, self.timeout_seconds):
            self._timed_out(key)

        try:
            remaining = max(self.timeout_seconds - (time.monotonic() - started), 0)
            try:
                with db.transaction(wait_seconds=remaining) as tx:
                    logger.debug("advisory_lock_acquired", key=key, waited_ms=(time.monotonic() - started) * 1000)
                    yield tx
            except DatabaseBusy as e:
                logger.warning("database_busy", key=key, error=str(e))
                self._timed_out(key)
        finally:
            self.registry.release(key)

    def _acquire_postgres(self, tx: Transaction, key: str) -> None:
        deadline = time.monotonic() + self.timeout_seconds
        while True:
            results = tx.execute("SELECT pg_try_advisory_xact_lock(hashtext(?)) AS locked", (key,))
            if results and results[0]["locked"]:
                return
            if time.monotonic() >= deadline:
                self._timed_out(key)
            time.sleep(self.POLL_INTERVAL_SECONDS)

    def _timed_out(self, key: str) -> None:
        logger.warning("advisory_lock_timeout", key=key, timeout_seconds=self.timeout_seconds)
        raise LockTimeout(key, self.timeout_seconds)
