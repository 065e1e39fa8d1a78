"""IdempotencyLedger protocol - at most one side effect per fingerprint."""

from __future__ import annotations

from typing import Protocol

from yield_reconciler.models.records import MarkResult


class IdempotencyLedger(Protocol):
    """Durable set of fingerprints with an explicit escape hatch."""

    async def check_and_mark(
        self, fingerprint: str, ttl_seconds: int | None = None,
    ) -> MarkResult:
        """Atomically record the fingerprint; ``is_new`` is False if already present."""
        ...

    async def clear(self, fingerprint: str) -> None:
        """Forget a fingerprint whose side effect failed so it can be retried."""
        ...

    async def is_marked(self, fingerprint: str) -> bool:
        ...
