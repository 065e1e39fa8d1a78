"""Service wiring - builds the components and runs passes under the lock."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from yield_reconciler.action.transfer import HttpTransferAction
from yield_reconciler.chain.source import Web3EventSource
from yield_reconciler.coordination.idempotency import SQLiteIdempotencyLedger
from yield_reconciler.coordination.lock import SQLiteDistributedLock
from yield_reconciler.engine.handlers import StakingEventsHandler, YieldDistributionHandler
from yield_reconciler.engine.reconciler import ReconciliationEngine
from yield_reconciler.errors import UnknownStream
from yield_reconciler.interfaces.action import TransferAction
from yield_reconciler.interfaces.handler import StreamHandler
from yield_reconciler.interfaces.source import EventSource
from yield_reconciler.models.config import ReconcilerConfig, StreamKind
from yield_reconciler.models.records import DistributionRecord, LockStatus, RunState, RunSummary
from yield_reconciler.storage.sqlite import SQLiteStateStore

log = logging.getLogger(__name__)


class TriggerStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"  # another instance holds the lock
    DISABLED = "disabled"
    NOT_FOUND = "not_found"  # retry: no FAILED record
    FAILED = "failed"


@dataclass
class TriggerResult:
    """Outcome of one scheduled or manual invocation."""

    status: TriggerStatus
    summary: RunSummary | None = None
    record: DistributionRecord | None = None
    error: BaseException | None = None

    @property
    def state(self) -> RunState:
        """Terminal state of the invocation."""
        if self.status == TriggerStatus.SKIPPED:
            return RunState.LOCK_NOT_ACQUIRED
        if self.status == TriggerStatus.FAILED:
            return RunState.ABORTED
        if self.summary is not None:
            return self.summary.state
        return RunState.IDLE


def lock_key_for(stream: str) -> str:
    return f"reconcile:{stream}"


class ReconcilerService:
    """Owns the store, chain source, ledger, lock and per-stream engines.

    Components are public attributes so tests can swap in fakes before
    the first engine is built.
    """

    def __init__(self, cfg: ReconcilerConfig) -> None:
        self.cfg = cfg
        self.store = SQLiteStateStore(cfg.db_path)
        self.source: EventSource = Web3EventSource(cfg.rpc_url, cfg.rpc_timeout)
        self.ledger = SQLiteIdempotencyLedger(self.store)
        self.lock = SQLiteDistributedLock(self.store)
        self.action: TransferAction = HttpTransferAction(
            cfg.action_url, cfg.action_token, cfg.action_timeout,
        )
        self._engines: dict[str, ReconciliationEngine] = {}

    async def initialize(self) -> None:
        await self.store.initialize()

    async def close(self) -> None:
        await self.store.close()

    # ── Engines ────────────────────────────────────────────

    def engine(self, stream: str) -> ReconciliationEngine:
        if stream not in self._engines:
            stream_cfg = self.cfg.stream(stream)
            if stream_cfg is None:
                raise UnknownStream(stream)
            self._engines[stream] = ReconciliationEngine(
                stream=stream,
                contract_address=stream_cfg.contract_address,
                store=self.store,
                source=self.source,
                ledger=self.ledger,
                handler=self._build_handler(stream),
                chunk_size=self.cfg.chunk_size_for(stream),
                deployment_block=self.cfg.deployment_block_for(stream),
                confirmations=stream_cfg.confirmations,
                escalate_after_attempts=self.cfg.escalate_after_attempts,
                clock=self.lock.clock,
            )
        return self._engines[stream]

    def _build_handler(self, stream: str) -> StreamHandler:
        stream_cfg = self.cfg.streams[stream]
        if stream_cfg.kind == StreamKind.YIELD_DISTRIBUTION:
            return YieldDistributionHandler(
                stream, self.store, self.action, self.cfg.action_timeout,
            )
        return StakingEventsHandler(stream, self.store, stream_cfg.pool_filter)

    # ── Operations ─────────────────────────────────────────

    async def trigger(self, stream: str, source: str = "manual") -> TriggerResult:
        """Run one pass for ``stream`` if no other instance is running one."""
        engine = self.engine(stream)
        if not self.cfg.enabled:
            log.info("[%s] Reconciliation is disabled, ignoring %s trigger", stream, source)
            return TriggerResult(status=TriggerStatus.DISABLED)

        log.info("[%s] Pass triggered by %s", stream, source)
        outcome = await self.lock.run_exclusive(
            lock_key_for(stream), self.cfg.lock_ttl_ms, engine.run_once,
        )
        return self._to_result(stream, outcome)

    async def catch_up(self, stream: str, max_passes: int | None = None) -> list[TriggerResult]:
        """Run passes until the stream reaches the head, a pass fails or the lock is busy."""
        results: list[TriggerResult] = []
        while max_passes is None or len(results) < max_passes:
            result = await self.trigger(stream, source="catch-up")
            results.append(result)
            if result.status != TriggerStatus.COMPLETED or result.summary.nothing_to_do:
                break
        return results

    async def replay(self, stream: str, from_block: int, to_block: int) -> TriggerResult:
        engine = self.engine(stream)

        async def _replay(lease):
            return await engine.replay(from_block, to_block, lease)

        outcome = await self.lock.run_exclusive(
            lock_key_for(stream), self.cfg.lock_ttl_ms, _replay,
        )
        return self._to_result(stream, outcome)

    async def retry(self, stream: str, fingerprint: str) -> TriggerResult:
        """Re-apply one FAILED distribution under the stream's lock."""
        engine = self.engine(stream)

        async def _retry(lease):
            return await engine.retry(fingerprint, lease)

        outcome = await self.lock.run_exclusive(
            lock_key_for(stream), self.cfg.lock_ttl_ms, _retry,
        )
        result = self._to_result(stream, outcome)
        if result.status == TriggerStatus.COMPLETED and result.summary is None:
            return TriggerResult(status=TriggerStatus.NOT_FOUND)
        if result.status == TriggerStatus.COMPLETED:
            result.record = await self.store.get_distribution(fingerprint)
        return result

    def _to_result(self, stream: str, outcome) -> TriggerResult:
        if outcome.status == LockStatus.NOT_ACQUIRED:
            log.info("[%s] Skipped - another instance is processing", stream)
            return TriggerResult(status=TriggerStatus.SKIPPED)
        if outcome.status == LockStatus.EXECUTION_ERROR:
            log.error("[%s] Pass failed: %s", stream, outcome.error, exc_info=outcome.error)
            return TriggerResult(status=TriggerStatus.FAILED, error=outcome.error)
        return TriggerResult(status=TriggerStatus.COMPLETED, summary=outcome.result)
