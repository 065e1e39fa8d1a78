"""Mock implementations of all external-facing components."""

from __future__ import annotations

import asyncio
from typing import Any, Mapping

from yield_reconciler.errors import RpcError
from yield_reconciler.models.events import EventSpec, RawEvent
from yield_reconciler.models.records import ActionResult


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, now_ms: int = 1_700_000_000_000) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


class MockEventSource:
    """Implements EventSource protocol over pre-loaded events."""

    def __init__(self, head: int = 150) -> None:
        self.head = head
        self.events: list[RawEvent] = []
        self.head_error: RpcError | None = None
        self.logs_error: RpcError | None = None
        self.query_calls: list[tuple[str, str, int, int, Mapping[str, Any] | None]] = []

    def add(self, *events: RawEvent) -> None:
        """Test helper: make events visible on chain."""
        self.events.extend(events)

    async def get_current_head(self) -> int:
        if self.head_error is not None:
            raise self.head_error
        return self.head

    async def query_logs(
        self,
        contract: str,
        event: EventSpec,
        from_block: int,
        to_block: int,
        indexed_filter: Mapping[str, Any] | None = None,
    ) -> list[RawEvent]:
        self.query_calls.append((contract, event.name, from_block, to_block, indexed_filter))
        if self.logs_error is not None:
            raise self.logs_error
        matched = []
        for e in self.events:
            if e.event_name != event.name or not from_block <= e.block_number <= to_block:
                continue
            if indexed_filter and any(e.arg(k) != v for k, v in indexed_filter.items()):
                continue
            matched.append(e)
        return matched


class MockTransferAction:
    """Implements TransferAction protocol."""

    def __init__(
        self,
        succeed: bool = True,
        error: str | None = None,
        delay: float = 0.0,
        fail_amounts: set[int] | None = None,
        raises: Exception | None = None,
    ) -> None:
        self.succeed = succeed
        self.raises = raises
        self.fail_amounts = fail_amounts or set()
        self._error = error
        self.delay = delay
        self.calls: list[tuple[str, int, dict]] = []
        self._counter = 0

    async def apply_effect(
        self, pool_id: str, amount: int, metadata: Mapping[str, Any],
    ) -> ActionResult:
        self.calls.append((pool_id, amount, dict(metadata)))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.raises is not None:
            raise self.raises
        if self.succeed and amount not in self.fail_amounts:
            self._counter += 1
            return ActionResult(
                success=True,
                action_ref=f"0xmocktx{self._counter:04d}",
                duration_ms=5,
            )
        return ActionResult(
            success=False,
            error=self._error or "mock transfer failure",
            duration_ms=5,
        )
