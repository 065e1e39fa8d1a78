"""DistributedLock protocol - single-writer coordination across processes."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol

from yield_reconciler.models.records import Lease, LockOutcome


class DistributedLock(Protocol):
    """Mutual exclusion with TTL against a shared store."""

    async def acquire(self, lock_key: str, ttl_ms: int) -> Lease | None:
        """Return a lease, or None if another owner holds an unexpired lock."""
        ...

    async def release(self, lease: Lease) -> bool:
        ...

    async def run_exclusive(
        self,
        lock_key: str,
        ttl_ms: int,
        fn: Callable[[Lease], Awaitable[Any]],
    ) -> LockOutcome:
        ...
