"""Distributed lock backed by the shared SQLite database.

Acquisition is a single conditional upsert: a row is inserted, or taken
over only when the current holder's lease has expired. Release deletes
the row only if the caller still owns it.
"""

from __future__ import annotations

import logging
import os
import socket
import time
import uuid
from typing import Any, Awaitable, Callable

from yield_reconciler.errors import StorageUnavailable
from yield_reconciler.models.records import Lease, LockOutcome, LockStatus
from yield_reconciler.storage.sqlite import SQLiteStateStore, storage_errors

log = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


def new_owner_token() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex}"


class SQLiteDistributedLock:
    """DistributedLock implementation over the ``locks`` table."""

    def __init__(
        self,
        store: SQLiteStateStore,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._clock = clock

    @property
    def clock(self) -> Callable[[], int]:
        return self._clock

    @storage_errors
    async def acquire(self, lock_key: str, ttl_ms: int) -> Lease | None:
        now = self._clock()
        lease = Lease(lock_key=lock_key, owner=new_owner_token(), expires_at_ms=now + ttl_ms)
        async with self._store.db.execute(
            "INSERT INTO locks (lock_key, owner, expires_at_ms) VALUES (?, ?, ?)"
            " ON CONFLICT(lock_key) DO UPDATE SET"
            " owner=excluded.owner, expires_at_ms=excluded.expires_at_ms"
            " WHERE locks.expires_at_ms <= ?",
            (lease.lock_key, lease.owner, lease.expires_at_ms, now),
        ) as cur:
            acquired = cur.rowcount == 1
        await self._store.db.commit()
        if not acquired:
            log.debug("Lock %s is held by another owner", lock_key)
            return None
        log.debug("Acquired lock %s (ttl %dms)", lock_key, ttl_ms)
        return lease

    @storage_errors
    async def release(self, lease: Lease) -> bool:
        async with self._store.db.execute(
            "DELETE FROM locks WHERE lock_key=? AND owner=?",
            (lease.lock_key, lease.owner),
        ) as cur:
            released = cur.rowcount == 1
        await self._store.db.commit()
        if not released:
            log.warning("Lock %s was no longer owned at release", lease.lock_key)
        return released

    @storage_errors
    async def holder(self, lock_key: str) -> Lease | None:
        """Current unexpired holder of a lock, if any."""
        async with self._store.db.execute(
            "SELECT owner, expires_at_ms FROM locks WHERE lock_key=? AND expires_at_ms > ?",
            (lock_key, self._clock()),
        ) as cur:
            row = await cur.fetchone()
            if row is None:
                return None
            return Lease(lock_key=lock_key, owner=row["owner"], expires_at_ms=row["expires_at_ms"])

    async def run_exclusive(
        self,
        lock_key: str,
        ttl_ms: int,
        fn: Callable[[Lease], Awaitable[Any]],
    ) -> LockOutcome:
        """Run ``fn`` while holding the lock.

        Contention is reported as NOT_ACQUIRED and errors raised by ``fn``
        as EXECUTION_ERROR. The lock is released on every path.
        """
        lease = await self.acquire(lock_key, ttl_ms)
        if lease is None:
            return LockOutcome(status=LockStatus.NOT_ACQUIRED)

        try:
            result = await fn(lease)
            return LockOutcome(status=LockStatus.ACQUIRED, result=result)
        except Exception as exc:
            return LockOutcome(status=LockStatus.EXECUTION_ERROR, error=exc)
        finally:
            try:
                await self.release(lease)
            except StorageUnavailable as exc:
                # the lease still expires on its own
                log.error("Failed to release lock %s: %s", lock_key, exc)
