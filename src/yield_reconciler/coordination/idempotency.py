"""Idempotency ledger backed by the shared SQLite database."""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timezone
from typing import Callable

from yield_reconciler.coordination.lock import now_ms
from yield_reconciler.models.records import MarkResult
from yield_reconciler.storage.sqlite import SQLiteStateStore, storage_errors

log = logging.getLogger(__name__)


def event_fingerprint(
    stream: str,
    block_number: int,
    transaction_hash: str,
    log_index: int,
    record_id: str,
) -> str:
    """Stable identity of one event as applied to one domain record.

    Replaying the same block range always yields the same fingerprints.
    """
    material = f"{block_number}:{transaction_hash.lower()}:{log_index}:{record_id}"
    return f"{stream}:{hashlib.sha256(material.encode('utf-8')).hexdigest()}"


class SQLiteIdempotencyLedger:
    """IdempotencyLedger over the ``idempotency_keys`` table.

    Entries without a TTL never expire. Entries past their expiry count
    as absent and are re-marked by the same atomic statement.
    """

    def __init__(
        self,
        store: SQLiteStateStore,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._clock = clock

    @storage_errors
    async def check_and_mark(
        self, fingerprint: str, ttl_seconds: int | None = None,
    ) -> MarkResult:
        now = self._clock()
        expires_at = now + ttl_seconds * 1000 if ttl_seconds else None
        async with self._store.db.execute(
            "INSERT INTO idempotency_keys (fingerprint, expires_at_ms, created_at)"
            " VALUES (?, ?, ?)"
            " ON CONFLICT(fingerprint) DO UPDATE SET"
            " expires_at_ms=excluded.expires_at_ms, created_at=excluded.created_at"
            " WHERE idempotency_keys.expires_at_ms IS NOT NULL"
            " AND idempotency_keys.expires_at_ms <= ?",
            (fingerprint, expires_at, datetime.now(timezone.utc).isoformat(), now),
        ) as cur:
            is_new = cur.rowcount == 1
        await self._store.db.commit()
        if not is_new:
            log.debug("Fingerprint %s already marked", fingerprint)
        return MarkResult(is_new=is_new, fingerprint=fingerprint)

    @storage_errors
    async def clear(self, fingerprint: str) -> None:
        await self._store.db.execute(
            "DELETE FROM idempotency_keys WHERE fingerprint=?", (fingerprint,)
        )
        await self._store.db.commit()

    @storage_errors
    async def is_marked(self, fingerprint: str) -> bool:
        async with self._store.db.execute(
            "SELECT 1 FROM idempotency_keys WHERE fingerprint=?"
            " AND (expires_at_ms IS NULL OR expires_at_ms > ?)",
            (fingerprint, self._clock()),
        ) as cur:
            return await cur.fetchone() is not None

    @storage_errors
    async def purge_expired(self) -> int:
        """Delete expired TTL entries; returns the number removed."""
        async with self._store.db.execute(
            "DELETE FROM idempotency_keys WHERE expires_at_ms IS NOT NULL AND expires_at_ms <= ?",
            (self._clock(),),
        ) as cur:
            removed = cur.rowcount
        await self._store.db.commit()
        return removed
