"""Reconciliation engine - one bounded pass from the cursor towards the head."""

from __future__ import annotations

import logging
import time
from typing import Callable

from yield_reconciler.coordination.lock import now_ms
from yield_reconciler.engine.chunks import BlockRange, iter_block_ranges
from yield_reconciler.errors import LeaseExpired, StorageUnavailable
from yield_reconciler.interfaces.handler import StreamHandler
from yield_reconciler.interfaces.ledger import IdempotencyLedger
from yield_reconciler.interfaces.source import EventSource
from yield_reconciler.interfaces.store import StateStore
from yield_reconciler.models.events import RawEvent
from yield_reconciler.models.records import (
    DistributionStatus,
    Lease,
    RunCounters,
    RunState,
    RunSummary,
)

log = logging.getLogger(__name__)


class ReconciliationEngine:
    """Processes one stream's events exactly once each.

    A pass reads the cursor and the head, fetches at most one chunk of
    logs, matches and applies every event in block order and finally
    advances the cursor to the end of the chunk. Per-event action
    failures are recorded and cleared from the idempotency ledger without
    holding the cursor back. Storage errors, RPC errors and an expired
    lease abort the pass before the cursor moves.
    """

    def __init__(
        self,
        stream: str,
        contract_address: str,
        store: StateStore,
        source: EventSource,
        ledger: IdempotencyLedger,
        handler: StreamHandler,
        chunk_size: int,
        deployment_block: int = 0,
        confirmations: int = 0,
        escalate_after_attempts: int = 5,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.stream = stream
        self._contract = contract_address
        self._store = store
        self._source = source
        self._ledger = ledger
        self._handler = handler
        self._chunk_size = max(1, chunk_size)
        self._deployment_block = deployment_block
        self._confirmations = max(0, confirmations)
        self._escalate_after = escalate_after_attempts
        self._clock = clock
        self.state = RunState.IDLE

    # ── Passes ─────────────────────────────────────────────

    async def run_once(self, lease: Lease | None = None) -> RunSummary:
        """Run one pass over the next chunk after the cursor."""
        start = time.monotonic()
        self.state = RunState.LOCK_ACQUIRED if lease else RunState.IDLE
        try:
            cursor = await self._store.get_cursor(self.stream, default=self._deployment_block)
            head = await self._safe_head()

            chunk = next(iter_block_ranges(cursor, head, self._chunk_size), None)
            if chunk is None:
                self.state = RunState.IDLE
                log.debug("[%s] No new blocks (cursor %d, head %d)", self.stream, cursor, head)
                return RunSummary(
                    stream=self.stream,
                    from_block=cursor + 1,
                    to_block=cursor,
                    duration_ms=_elapsed_ms(start),
                    state=self.state,
                    message="No new blocks to process",
                )

            log.info(
                "[%s] Processing blocks %d-%d (%d blocks, head %d)",
                self.stream, chunk.start, chunk.end, chunk.size, head,
            )
            counters = RunCounters()
            events = await self._fetch(chunk)
            await self._process(events, counters, lease)

            self._check_lease(lease)
            await self._store.set_cursor(self.stream, chunk.end)
            self.state = RunState.CURSOR_ADVANCED
        except Exception as exc:
            self.state = RunState.ABORTED
            log.error("[%s] Pass aborted: %s", self.stream, exc)
            raise

        summary = RunSummary(
            stream=self.stream,
            from_block=chunk.start,
            to_block=chunk.end,
            counters=counters,
            duration_ms=_elapsed_ms(start),
            state=self.state,
            message="" if events else "No events found",
        )
        await self._record_summary(summary, "run_completed")
        return summary

    async def replay(
        self, from_block: int, to_block: int, lease: Lease | None = None,
    ) -> RunSummary:
        """Re-process an already scanned range. The cursor is left alone.

        Fingerprints already in the ledger are skipped, so only events that
        were never applied (or whose application failed) cause side effects.
        """
        if from_block < 0 or to_block < from_block:
            raise ValueError(f"invalid block range {from_block}-{to_block}")

        start = time.monotonic()
        self.state = RunState.LOCK_ACQUIRED if lease else RunState.IDLE
        counters = RunCounters()
        try:
            for chunk in iter_block_ranges(from_block - 1, to_block, self._chunk_size):
                log.info("[%s] Replaying blocks %d-%d", self.stream, chunk.start, chunk.end)
                events = await self._fetch(chunk)
                await self._process(events, counters, lease)
        except Exception as exc:
            self.state = RunState.ABORTED
            log.error("[%s] Replay aborted: %s", self.stream, exc)
            raise

        self.state = RunState.IDLE
        summary = RunSummary(
            stream=self.stream,
            from_block=from_block,
            to_block=to_block,
            counters=counters,
            duration_ms=_elapsed_ms(start),
            state=self.state,
            message="Replay",
        )
        await self._record_summary(summary, "replay_completed")
        return summary

    async def retry(self, fingerprint: str, lease: Lease | None = None) -> RunSummary | None:
        """Re-apply one FAILED distribution from its preserved source block.

        Returns None when no FAILED record exists for the fingerprint.
        """
        record = await self._store.get_distribution(fingerprint)
        if record is None or record.status != DistributionStatus.FAILED:
            return None

        start = time.monotonic()
        block = record.source_block_number
        log.info("[%s] Retrying %s from block %d (attempt %d)",
                 self.stream, fingerprint, block, record.attempts + 1)
        counters = RunCounters()
        try:
            events = await self._fetch(BlockRange(block, block))
            source = [
                e for e in events
                if e.transaction_hash.lower() == record.source_tx_hash.lower()
                and e.log_index == record.source_log_index
            ]
            if not source:
                log.error("[%s] Source event of %s not found in block %d",
                          self.stream, fingerprint, block)
                return RunSummary(
                    stream=self.stream, from_block=block, to_block=block,
                    duration_ms=_elapsed_ms(start), state=RunState.ABORTED,
                    message="Source event not found",
                )
            await self._process(source, counters, lease)
        except Exception as exc:
            self.state = RunState.ABORTED
            log.error("[%s] Retry of %s aborted: %s", self.stream, fingerprint, exc)
            raise

        self.state = RunState.IDLE
        summary = RunSummary(
            stream=self.stream,
            from_block=block,
            to_block=block,
            counters=counters,
            duration_ms=_elapsed_ms(start),
            state=self.state,
            message=f"Retry of {fingerprint}",
        )
        await self._store.log_activity(
            "retry_completed" if counters.applied else "retry_failed",
            f"Retry of {fingerprint}: {counters.as_dict()}",
            stream=self.stream, block_number=block, fingerprint=fingerprint,
        )
        return summary

    # ── Pipeline ───────────────────────────────────────────

    async def _safe_head(self) -> int:
        head = await self._source.get_current_head()
        return max(0, head - self._confirmations)

    async def _fetch(self, chunk: BlockRange) -> list[RawEvent]:
        self.state = RunState.SCANNING
        events: list[RawEvent] = []
        for spec in self._handler.events:
            events.extend(await self._source.query_logs(
                self._contract, spec, chunk.start, chunk.end,
                self._handler.indexed_filter(spec),
            ))
        events.sort(key=lambda e: e.sort_key)
        log.debug("[%s] Found %d events in %d-%d",
                  self.stream, len(events), chunk.start, chunk.end)
        return events

    async def _process(
        self, events: list[RawEvent], counters: RunCounters, lease: Lease | None,
    ) -> None:
        for event in events:
            self._check_lease(lease)
            await self._process_event(event, counters)

    async def _process_event(self, event: RawEvent, counters: RunCounters) -> None:
        counters.processed += 1
        self.state = RunState.MATCHING

        effect = await self._handler.match(event)
        if effect is None:
            counters.skipped += 1
            return
        if effect.noop:
            log.info("[%s] Zero-value %s in tx %s, skipping",
                     self.stream, event.event_name, event.transaction_hash)
            counters.skipped += 1
            return

        mark = await self._ledger.check_and_mark(effect.fingerprint)
        if not mark.is_new:
            log.debug("[%s] %s already processed", self.stream, effect.fingerprint)
            counters.skipped += 1
            return

        self.state = RunState.APPLYING
        # A storage error here leaves the fingerprint marked: whether the
        # action ran is unknown, so the record stays PENDING for an operator.
        outcome = await self._handler.apply(effect)

        if outcome.duplicate:
            counters.skipped += 1
        elif outcome.result.success:
            counters.applied += 1
        else:
            counters.failed += 1
            await self._ledger.clear(effect.fingerprint)
            await self._store.log_activity(
                "action_failed",
                f"{event.event_name} in tx {event.transaction_hash}: {outcome.result.error}",
                stream=self.stream, block_number=event.block_number,
                fingerprint=effect.fingerprint,
            )
            if outcome.attempts >= self._escalate_after:
                log.error(
                    "[%s] %s has failed %d times, needs operator attention",
                    self.stream, effect.fingerprint, outcome.attempts,
                )
                await self._store.log_activity(
                    "action_escalated",
                    f"Failed {outcome.attempts} times: {outcome.result.error}",
                    stream=self.stream, block_number=event.block_number,
                    fingerprint=effect.fingerprint,
                )

    def _check_lease(self, lease: Lease | None) -> None:
        if lease is not None and lease.is_expired(self._clock()):
            raise LeaseExpired(f"lease on {lease.lock_key} expired")

    async def _record_summary(self, summary: RunSummary, event_type: str) -> None:
        c = summary.counters
        log.info(
            "[%s] Blocks %d-%d: %d processed, %d applied, %d failed, %d skipped (%dms)",
            self.stream, summary.from_block, summary.to_block,
            c.processed, c.applied, c.failed, c.skipped, summary.duration_ms,
        )
        try:
            await self._store.log_activity(
                event_type,
                f"Blocks {summary.from_block}-{summary.to_block}: {c.as_dict()}",
                stream=self.stream, block_number=summary.to_block,
            )
        except StorageUnavailable as exc:
            # the pass itself is complete and the cursor already moved
            log.warning("[%s] Could not record run summary: %s", self.stream, exc)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
