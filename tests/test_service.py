"""Service: lock-guarded triggers, catch-up, retry and replay."""

from __future__ import annotations

import asyncio

import pytest

from yield_reconciler.errors import RpcTransient, UnknownStream
from yield_reconciler.models.records import DistributionStatus, RunState
from yield_reconciler.service import TriggerStatus, lock_key_for

from tests.conftest import STAKING, YIELD
from tests.factories import make_repayment_event, make_staked_event
from tests.mocks import MockTransferAction


async def test_trigger_runs_one_pass(service, store, mock_source, loan):
    mock_source.add(make_repayment_event(block_number=130))

    result = await service.trigger(YIELD)

    assert result.status == TriggerStatus.COMPLETED
    assert result.state == RunState.CURSOR_ADVANCED
    assert result.summary.counters.applied == 1
    # the lock is released afterwards
    assert await service.lock.holder(lock_key_for(YIELD)) is None


async def test_unknown_stream(service):
    with pytest.raises(UnknownStream):
        await service.trigger("nope")


async def test_disabled_takes_no_lock_and_reads_nothing(service, store, mock_source):
    service.cfg.enabled = False

    result = await service.trigger(YIELD)

    assert result.status == TriggerStatus.DISABLED
    assert mock_source.query_calls == []
    assert await store.get_cursor(YIELD, default=-1) == -1


async def test_concurrent_triggers_run_one_pass(service, store, mock_source, loan):
    """Two overlapping invocations: one runs, the other is skipped."""
    service.action = MockTransferAction(delay=0.2)
    mock_source.add(make_repayment_event(block_number=130))

    first, second = await asyncio.gather(service.trigger(YIELD), service.trigger(YIELD))

    statuses = sorted([first.status, second.status], key=lambda s: s.value)
    assert statuses == [TriggerStatus.COMPLETED, TriggerStatus.SKIPPED]
    skipped = first if first.status == TriggerStatus.SKIPPED else second
    assert skipped.state == RunState.LOCK_NOT_ACQUIRED
    assert len(service.action.calls) == 1
    assert await store.get_cursor(YIELD) == 150


async def test_streams_have_independent_locks(service, mock_source, loan):
    await service.lock.acquire(lock_key_for(YIELD), 60_000)
    mock_source.add(make_staked_event(block_number=120))

    assert (await service.trigger(YIELD)).status == TriggerStatus.SKIPPED
    assert (await service.trigger(STAKING)).status == TriggerStatus.COMPLETED


async def test_catch_up_runs_until_head(service, store, mock_source, loan):
    mock_source.head = 260
    mock_source.add(
        make_repayment_event(block_number=130),
        make_repayment_event(block_number=255),
    )

    results = await service.catch_up(YIELD)

    # 101-150, 151-200, 201-250, 251-260, then nothing to do
    assert len(results) == 5
    assert results[-1].summary.nothing_to_do
    assert await store.get_cursor(YIELD) == 260
    assert sum(r.summary.counters.applied for r in results) == 2


async def test_catch_up_respects_max_passes(service, store, mock_source):
    mock_source.head = 1000
    results = await service.catch_up(YIELD, max_passes=2)
    assert len(results) == 2
    assert await store.get_cursor(YIELD) == 200


async def test_failed_pass_is_reported(service, store, mock_source):
    mock_source.head_error = RpcTransient("down")

    result = await service.trigger(YIELD)

    assert result.status == TriggerStatus.FAILED
    assert isinstance(result.error, RpcTransient)
    assert result.state == RunState.ABORTED
    assert await service.lock.holder(lock_key_for(YIELD)) is None


async def test_retry_returns_updated_record(service, store, mock_source, loan):
    service.action = MockTransferAction(succeed=False)
    mock_source.add(make_repayment_event(block_number=130))
    await service.trigger(YIELD)
    [failed] = await store.get_distributions(status=DistributionStatus.FAILED)

    service.action.succeed = True
    result = await service.retry(YIELD, failed.fingerprint)

    assert result.status == TriggerStatus.COMPLETED
    assert result.record.status == DistributionStatus.COMPLETED
    assert result.record.attempts == 2


async def test_retry_without_failed_record(service):
    result = await service.retry(YIELD, "yield_distribution:missing")
    assert result.status == TriggerStatus.NOT_FOUND


async def test_replay_under_lock(service, store, mock_source, loan):
    mock_source.add(make_repayment_event(block_number=130))
    await store.set_cursor(YIELD, 150)

    result = await service.replay(YIELD, 101, 150)

    assert result.status == TriggerStatus.COMPLETED
    assert result.summary.counters.applied == 1
    assert await store.get_cursor(YIELD) == 150
