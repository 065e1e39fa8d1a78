"""EventSource protocol - reads raw logs from an RPC node."""

from __future__ import annotations

from typing import Any, Mapping, Protocol

from yield_reconciler.models.events import EventSpec, RawEvent


class EventSource(Protocol):
    """Block head and log queries over an RPC client."""

    async def get_current_head(self) -> int:
        ...

    async def query_logs(
        self,
        contract: str,
        event: EventSpec,
        from_block: int,
        to_block: int,
        indexed_filter: Mapping[str, Any] | None = None,
    ) -> list[RawEvent]:
        """Return decoded logs in ``[from_block, to_block]`` (both inclusive).

        Raises RpcTransient for retryable failures and RpcRejected when the
        node refuses the range.
        """
        ...
