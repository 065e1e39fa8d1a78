"""SQLite implementation of the StateStore protocol.

The same database file is the shared store for the distributed lock and
the idempotency ledger, so every process instance must point at it.
"""

from __future__ import annotations

import functools
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

import aiosqlite

from yield_reconciler.chain.abi import hash_loan_id
from yield_reconciler.errors import StorageUnavailable
from yield_reconciler.models.records import (
    ActivityRecord,
    DistributionRecord,
    DistributionStatus,
    LoanMatch,
    PoolStakingStats,
    StakingEventRecord,
)

log = logging.getLogger(__name__)

T = TypeVar("T")

MATCHABLE_LOAN_STATUSES = ("ACTIVE", "DISBURSED")

SCHEMA = """
-- Last processed block per stream
CREATE TABLE IF NOT EXISTS cursors (
    stream_key TEXT PRIMARY KEY,
    last_block INTEGER NOT NULL CHECK (last_block >= 0),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Loans that repayment events resolve to
CREATE TABLE IF NOT EXISTS loans (
    loan_id TEXT PRIMARY KEY,
    loan_hash TEXT NOT NULL,
    pool_id TEXT NOT NULL,
    contract_pool_id TEXT,
    status TEXT NOT NULL DEFAULT 'ACTIVE',
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);
CREATE INDEX IF NOT EXISTS idx_loans_hash ON loans(loan_hash);

-- Yield distributions, one per fingerprint
CREATE TABLE IF NOT EXISTS distributions (
    fingerprint TEXT PRIMARY KEY,
    stream TEXT NOT NULL,
    pool_id TEXT NOT NULL,
    contract_pool_id TEXT,
    loan_id TEXT NOT NULL,
    principal_amount TEXT NOT NULL,
    interest_amount TEXT NOT NULL,
    total_amount TEXT NOT NULL,
    source_block_number INTEGER NOT NULL,
    source_tx_hash TEXT NOT NULL,
    source_log_index INTEGER NOT NULL,
    action_ref TEXT,
    status TEXT NOT NULL DEFAULT 'PENDING',
    error TEXT,
    attempts INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    completed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_distributions_status ON distributions(stream, status);

-- Indexed StakingPool events
CREATE TABLE IF NOT EXISTS staking_events (
    transaction_hash TEXT NOT NULL,
    log_index INTEGER NOT NULL,
    event_type TEXT NOT NULL CHECK (
        event_type IN ('STAKED', 'UNSTAKE_REQUESTED', 'UNSTAKED')
    ),
    pool_id TEXT NOT NULL,
    user_address TEXT NOT NULL,
    amount TEXT NOT NULL,
    shares TEXT,
    fee TEXT,
    unlock_time TEXT,
    block_number INTEGER NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    PRIMARY KEY (transaction_hash, log_index)
);
CREATE INDEX IF NOT EXISTS idx_staking_events_user ON staking_events(user_address);
CREATE INDEX IF NOT EXISTS idx_staking_events_pool ON staking_events(pool_id);

-- Idempotency ledger
CREATE TABLE IF NOT EXISTS idempotency_keys (
    fingerprint TEXT PRIMARY KEY,
    expires_at_ms INTEGER,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Distributed locks
CREATE TABLE IF NOT EXISTS locks (
    lock_key TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    expires_at_ms INTEGER NOT NULL
);

-- Activity log
CREATE TABLE IF NOT EXISTS activity_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_type TEXT NOT NULL,
    stream TEXT,
    block_number INTEGER,
    fingerprint TEXT,
    message TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);
CREATE INDEX IF NOT EXISTS idx_activity_created ON activity_log(created_at);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def storage_errors(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Re-raise any SQLite failure as StorageUnavailable."""

    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return await fn(*args, **kwargs)
        except (sqlite3.Error, ValueError) as exc:
            # aiosqlite raises ValueError once its connection thread is gone
            raise StorageUnavailable(f"{fn.__name__}: {exc}") from exc

    return wrapper


def _int_or_none(value: str | None) -> int | None:
    return int(value) if value is not None else None


class SQLiteStateStore:
    """SQLite-backed implementation of the StateStore protocol."""

    def __init__(self, db_path: str, busy_timeout_ms: int = 5000) -> None:
        self._db_path = db_path
        self._busy_timeout_ms = busy_timeout_ms
        self._db: aiosqlite.Connection | None = None

    @storage_errors
    async def initialize(self) -> None:
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute(f"PRAGMA busy_timeout = {int(self._busy_timeout_ms)}")
        if self._db_path != ":memory:":
            await self._db.execute("PRAGMA journal_mode = WAL")
        await self._db.executescript(SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StorageUnavailable("Store not initialized. Call initialize() first.")
        return self._db

    # ── Cursor ─────────────────────────────────────────────

    @storage_errors
    async def get_cursor(self, stream: str, default: int = 0) -> int:
        async with self.db.execute(
            "SELECT last_block FROM cursors WHERE stream_key=?", (stream,)
        ) as cur:
            row = await cur.fetchone()
            return row["last_block"] if row else default

    @storage_errors
    async def set_cursor(self, stream: str, block: int) -> None:
        await self.db.execute(
            "INSERT INTO cursors (stream_key, last_block, updated_at) VALUES (?, ?, ?)"
            " ON CONFLICT(stream_key) DO UPDATE SET"
            " last_block=MAX(cursors.last_block, excluded.last_block),"
            " updated_at=excluded.updated_at",
            (stream, block, _now()),
        )
        await self.db.commit()

    @storage_errors
    async def reset_cursor(self, stream: str, block: int) -> None:
        """Operator override: set the cursor even if it moves backwards."""
        await self.db.execute(
            "INSERT INTO cursors (stream_key, last_block, updated_at) VALUES (?, ?, ?)"
            " ON CONFLICT(stream_key) DO UPDATE SET last_block=excluded.last_block,"
            " updated_at=excluded.updated_at",
            (stream, block, _now()),
        )
        await self.db.commit()

    @storage_errors
    async def get_all_cursors(self) -> dict[str, int]:
        async with self.db.execute("SELECT stream_key, last_block FROM cursors") as cur:
            return {row["stream_key"]: row["last_block"] async for row in cur}

    # ── Loans ──────────────────────────────────────────────

    @storage_errors
    async def save_loan(self, loan: LoanMatch) -> None:
        if not loan.loan_hash:
            loan.loan_hash = hash_loan_id(loan.loan_id)
        await self.db.execute(
            "INSERT OR REPLACE INTO loans"
            " (loan_id, loan_hash, pool_id, contract_pool_id, status, updated_at)"
            " VALUES (?, ?, ?, ?, ?, ?)",
            (
                loan.loan_id, loan.loan_hash.lower(), loan.pool_id,
                loan.contract_pool_id, loan.status, _now(),
            ),
        )
        await self.db.commit()

    @storage_errors
    async def find_loan_by_hash(self, loan_hash: str) -> LoanMatch | None:
        placeholders = ",".join("?" for _ in MATCHABLE_LOAN_STATUSES)
        async with self.db.execute(
            f"SELECT * FROM loans WHERE loan_hash=? AND status IN ({placeholders})"
            " ORDER BY loan_id LIMIT 1",
            (loan_hash.lower(), *MATCHABLE_LOAN_STATUSES),
        ) as cur:
            row = await cur.fetchone()
            if row is None:
                return None
            return LoanMatch(
                loan_id=row["loan_id"],
                pool_id=row["pool_id"],
                contract_pool_id=row["contract_pool_id"],
                status=row["status"],
                loan_hash=row["loan_hash"],
            )

    # ── Distributions ──────────────────────────────────────

    @storage_errors
    async def begin_distribution(self, record: DistributionRecord) -> DistributionRecord:
        """Insert a PENDING record, or re-open a FAILED one for a retry.

        A COMPLETED record is never re-opened; the stored row is returned
        unchanged so the caller can see it.
        """
        now = _now()
        await self.db.execute(
            "INSERT INTO distributions"
            " (fingerprint, stream, pool_id, contract_pool_id, loan_id,"
            "  principal_amount, interest_amount, total_amount,"
            "  source_block_number, source_tx_hash, source_log_index,"
            "  status, attempts, created_at, updated_at)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'PENDING', 1, ?, ?)"
            " ON CONFLICT(fingerprint) DO UPDATE SET"
            " status='PENDING', error=NULL, attempts=distributions.attempts+1,"
            " updated_at=excluded.updated_at"
            " WHERE distributions.status != 'COMPLETED'",
            (
                record.fingerprint, record.stream, record.pool_id,
                record.contract_pool_id, record.loan_id,
                str(record.principal_amount), str(record.interest_amount),
                str(record.total_amount), record.source_block_number,
                record.source_tx_hash, record.source_log_index, now, now,
            ),
        )
        await self.db.commit()
        stored = await self.get_distribution(record.fingerprint)
        if stored is None:
            raise StorageUnavailable(f"distribution {record.fingerprint} vanished after write")
        return stored

    @storage_errors
    async def complete_distribution(self, fingerprint: str, action_ref: str | None) -> None:
        now = _now()
        await self.db.execute(
            "UPDATE distributions SET status='COMPLETED', action_ref=?, error=NULL,"
            " completed_at=?, updated_at=? WHERE fingerprint=?",
            (action_ref, now, now, fingerprint),
        )
        await self.db.commit()

    @storage_errors
    async def fail_distribution(self, fingerprint: str, error: str) -> None:
        await self.db.execute(
            "UPDATE distributions SET status='FAILED', error=?, updated_at=?"
            " WHERE fingerprint=? AND status != 'COMPLETED'",
            (error, _now(), fingerprint),
        )
        await self.db.commit()

    @storage_errors
    async def get_distribution(self, fingerprint: str) -> DistributionRecord | None:
        async with self.db.execute(
            "SELECT * FROM distributions WHERE fingerprint=?", (fingerprint,)
        ) as cur:
            row = await cur.fetchone()
            return _row_to_distribution(row) if row else None

    @storage_errors
    async def get_distributions(
        self, stream: str | None = None, status: DistributionStatus | None = None,
    ) -> list[DistributionRecord]:
        clauses = []
        params: list = []
        if stream is not None:
            clauses.append("stream=?")
            params.append(stream)
        if status is not None:
            clauses.append("status=?")
            params.append(DistributionStatus(status).value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        async with self.db.execute(
            f"SELECT * FROM distributions{where}"
            " ORDER BY source_block_number, source_log_index",
            params,
        ) as cur:
            return [_row_to_distribution(row) async for row in cur]

    # ── Staking events ─────────────────────────────────────

    @storage_errors
    async def save_staking_event(self, record: StakingEventRecord) -> bool:
        """Insert an event; returns False if (tx hash, log index) already exists."""
        async with self.db.execute(
            "INSERT OR IGNORE INTO staking_events"
            " (transaction_hash, log_index, event_type, pool_id, user_address,"
            "  amount, shares, fee, unlock_time, block_number, created_at)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                record.transaction_hash, record.log_index, record.event_type,
                record.pool_id, record.user_address.lower(), str(record.amount),
                None if record.shares is None else str(record.shares),
                None if record.fee is None else str(record.fee),
                record.unlock_time, record.block_number, _now(),
            ),
        ) as cur:
            inserted = cur.rowcount == 1
        await self.db.commit()
        return inserted

    @storage_errors
    async def get_staking_events(
        self, user_address: str | None = None, pool_id: str | None = None,
    ) -> list[StakingEventRecord]:
        clauses = []
        params: list = []
        if user_address:
            clauses.append("user_address=?")
            params.append(user_address.lower())
        if pool_id:
            clauses.append("pool_id=?")
            params.append(pool_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        async with self.db.execute(
            f"SELECT * FROM staking_events{where} ORDER BY block_number DESC, log_index DESC",
            params,
        ) as cur:
            return [
                StakingEventRecord(
                    event_type=row["event_type"],
                    pool_id=row["pool_id"],
                    user_address=row["user_address"],
                    amount=int(row["amount"]),
                    transaction_hash=row["transaction_hash"],
                    log_index=row["log_index"],
                    block_number=row["block_number"],
                    shares=_int_or_none(row["shares"]),
                    fee=_int_or_none(row["fee"]),
                    unlock_time=row["unlock_time"],
                    created_at=row["created_at"],
                )
                async for row in cur
            ]

    @storage_errors
    async def get_pool_staking_stats(self, pool_id: str) -> PoolStakingStats:
        """Stake/unstake counts and distinct stakers of one pool."""
        async with self.db.execute(
            "SELECT"
            " SUM(event_type='STAKED') AS stakes,"
            " SUM(event_type='UNSTAKED') AS unstakes,"
            " COUNT(DISTINCT CASE WHEN event_type='STAKED' THEN user_address END) AS stakers"
            " FROM staking_events WHERE pool_id=?",
            (pool_id,),
        ) as cur:
            row = await cur.fetchone()
        return PoolStakingStats(
            pool_id=pool_id,
            total_stake_events=row["stakes"] or 0,
            total_unstake_events=row["unstakes"] or 0,
            unique_stakers=row["stakers"] or 0,
        )

    # ── Activity log ───────────────────────────────────────

    @storage_errors
    async def log_activity(
        self,
        event_type: str,
        message: str,
        stream: str | None = None,
        block_number: int | None = None,
        fingerprint: str | None = None,
    ) -> None:
        await self.db.execute(
            "INSERT INTO activity_log"
            " (event_type, stream, block_number, fingerprint, message, created_at)"
            " VALUES (?, ?, ?, ?, ?, ?)",
            (event_type, stream, block_number, fingerprint, message, _now()),
        )
        await self.db.commit()

    @storage_errors
    async def get_recent_activity(self, limit: int = 50) -> list[ActivityRecord]:
        async with self.db.execute(
            "SELECT * FROM activity_log ORDER BY id DESC LIMIT ?", (limit,)
        ) as cur:
            return [
                ActivityRecord(
                    id=row["id"],
                    event_type=row["event_type"],
                    stream=row["stream"],
                    block_number=row["block_number"],
                    fingerprint=row["fingerprint"],
                    message=row["message"],
                    created_at=row["created_at"],
                )
                async for row in cur
            ]


# ── Row converters ─────────────────────────────────────────


def _row_to_distribution(row: aiosqlite.Row) -> DistributionRecord:
    return DistributionRecord(
        fingerprint=row["fingerprint"],
        stream=row["stream"],
        pool_id=row["pool_id"],
        contract_pool_id=row["contract_pool_id"],
        loan_id=row["loan_id"],
        principal_amount=int(row["principal_amount"]),
        interest_amount=int(row["interest_amount"]),
        total_amount=int(row["total_amount"]),
        source_block_number=row["source_block_number"],
        source_tx_hash=row["source_tx_hash"],
        source_log_index=row["source_log_index"],
        action_ref=row["action_ref"],
        status=DistributionStatus(row["status"]),
        error=row["error"],
        attempts=row["attempts"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        completed_at=row["completed_at"],
    )
