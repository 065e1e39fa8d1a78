"""StateStore protocol - durable cursor, records and activity for the reconciler."""

from __future__ import annotations

from typing import Protocol

from yield_reconciler.models.records import (
    ActivityRecord,
    DistributionRecord,
    DistributionStatus,
    LoanMatch,
    PoolStakingStats,
    StakingEventRecord,
)


class CursorStore(Protocol):
    """Last processed block per logical stream."""

    async def get_cursor(self, stream: str, default: int = 0) -> int:
        """Return the stored block, or ``default`` when the stream has none."""
        ...

    async def set_cursor(self, stream: str, block: int) -> None:
        """Atomic upsert. Never moves a cursor backwards."""
        ...


class StateStore(CursorStore, Protocol):
    """Persists reconciler state for crash recovery and operator follow-up."""

    # ── Lifecycle ──────────────────────────────────────────

    async def initialize(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def reset_cursor(self, stream: str, block: int) -> None:
        ...

    # ── Domain records ─────────────────────────────────────

    async def find_loan_by_hash(self, loan_hash: str) -> LoanMatch | None:
        ...

    # ── Distributions ──────────────────────────────────────

    async def begin_distribution(self, record: DistributionRecord) -> DistributionRecord:
        ...

    async def complete_distribution(self, fingerprint: str, action_ref: str | None) -> None:
        ...

    async def fail_distribution(self, fingerprint: str, error: str) -> None:
        ...

    async def get_distribution(self, fingerprint: str) -> DistributionRecord | None:
        ...

    async def get_distributions(
        self, stream: str | None = None, status: DistributionStatus | None = None,
    ) -> list[DistributionRecord]:
        ...

    # ── Staking events ─────────────────────────────────────

    async def save_staking_event(self, record: StakingEventRecord) -> bool:
        ...

    async def get_pool_staking_stats(self, pool_id: str) -> PoolStakingStats:
        ...

    # ── Activity log ───────────────────────────────────────

    async def log_activity(
        self,
        event_type: str,
        message: str,
        stream: str | None = None,
        block_number: int | None = None,
        fingerprint: str | None = None,
    ) -> None:
        ...

    async def get_recent_activity(self, limit: int = 50) -> list[ActivityRecord]:
        ...
