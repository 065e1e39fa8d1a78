"""TransferAction protocol - the external value-transfer side effect."""

from __future__ import annotations

from typing import Any, Mapping, Protocol

from yield_reconciler.models.records import ActionResult


class TransferAction(Protocol):
    """Applies an effect on the ledger/transfer service.

    Not required to be idempotent itself; the idempotency ledger guards it.
    """

    async def apply_effect(
        self, pool_id: str, amount: int, metadata: Mapping[str, Any],
    ) -> ActionResult:
        ...
