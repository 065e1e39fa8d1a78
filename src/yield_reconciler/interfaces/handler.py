"""StreamHandler protocol - per-stream matching and side effects."""

from __future__ import annotations

from typing import Any, Mapping, Protocol

from yield_reconciler.models.events import EventSpec, RawEvent
from yield_reconciler.models.records import ApplyOutcome, Effect


class StreamHandler(Protocol):
    """Knows which events a stream reads and what each one should cause."""

    events: tuple[EventSpec, ...]

    def indexed_filter(self, event: EventSpec) -> Mapping[str, Any] | None:
        """Indexed argument values to filter ``event`` logs by, if any."""
        ...

    async def match(self, event: RawEvent) -> Effect | None:
        """Resolve the event to an effect, or None if it concerns nothing we track."""
        ...

    async def apply(self, effect: Effect) -> ApplyOutcome:
        """Perform the effect and record its result.

        Action failures are reported in the outcome. Storage failures raise.
        """
        ...
