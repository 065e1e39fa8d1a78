"""Distributed lock: exclusivity, ownership, expiry, run_exclusive."""

from __future__ import annotations

import asyncio

import pytest

from yield_reconciler.coordination.lock import SQLiteDistributedLock
from yield_reconciler.models.records import Lease, LockStatus
from yield_reconciler.storage.sqlite import SQLiteStateStore

KEY = "reconcile:yield_distribution"
TTL = 300_000


async def test_acquire_then_contend(lock):
    lease = await lock.acquire(KEY, TTL)
    assert lease is not None
    assert lease.lock_key == KEY
    assert await lock.acquire(KEY, TTL) is None


async def test_different_keys_are_independent(lock):
    assert await lock.acquire(KEY, TTL) is not None
    assert await lock.acquire("reconcile:staking_events", TTL) is not None


async def test_release_requires_ownership(lock):
    lease = await lock.acquire(KEY, TTL)
    impostor = Lease(lock_key=KEY, owner="someone-else", expires_at_ms=lease.expires_at_ms)

    assert await lock.release(impostor) is False
    assert await lock.acquire(KEY, TTL) is None

    assert await lock.release(lease) is True
    assert await lock.acquire(KEY, TTL) is not None


async def test_expired_lock_can_be_taken_over(lock, clock):
    stale = await lock.acquire(KEY, 1000)
    clock.advance(1000)
    fresh = await lock.acquire(KEY, TTL)
    assert fresh is not None
    assert fresh.owner != stale.owner
    # the previous owner can no longer release it
    assert await lock.release(stale) is False
    assert (await lock.holder(KEY)).owner == fresh.owner


async def test_run_exclusive_returns_result_and_releases(lock):
    async def work(lease):
        assert (await lock.holder(KEY)).owner == lease.owner
        return 42

    outcome = await lock.run_exclusive(KEY, TTL, work)
    assert outcome.status == LockStatus.ACQUIRED
    assert outcome.success
    assert outcome.result == 42
    assert await lock.holder(KEY) is None


async def test_run_exclusive_reports_contention(lock):
    await lock.acquire(KEY, TTL)
    called = False

    async def work(lease):
        nonlocal called
        called = True

    outcome = await lock.run_exclusive(KEY, TTL, work)
    assert outcome.status == LockStatus.NOT_ACQUIRED
    assert not called


async def test_run_exclusive_reports_execution_error_and_releases(lock):
    async def work(lease):
        raise RuntimeError("boom")

    outcome = await lock.run_exclusive(KEY, TTL, work)
    assert outcome.status == LockStatus.EXECUTION_ERROR
    assert isinstance(outcome.error, RuntimeError)
    assert await lock.holder(KEY) is None


async def test_exclusive_across_processes_sharing_one_database(tmp_path):
    """Two stores on the same file behave like two process instances."""
    db = str(tmp_path / "shared.db")
    store_a, store_b = SQLiteStateStore(db), SQLiteStateStore(db)
    await store_a.initialize()
    await store_b.initialize()
    lock_a, lock_b = SQLiteDistributedLock(store_a), SQLiteDistributedLock(store_b)

    entered = asyncio.Event()
    proceed = asyncio.Event()
    runs: list[str] = []

    async def slow(lease):
        runs.append("a")
        entered.set()
        await proceed.wait()
        return "a"

    async def fast(lease):
        runs.append("b")
        return "b"

    try:
        task = asyncio.create_task(lock_a.run_exclusive(KEY, TTL, slow))
        await entered.wait()
        contended = await lock_b.run_exclusive(KEY, TTL, fast)
        proceed.set()
        first = await task

        assert first.status == LockStatus.ACQUIRED
        assert contended.status == LockStatus.NOT_ACQUIRED
        assert runs == ["a"]

        # once released, the other instance gets it
        after = await lock_b.run_exclusive(KEY, TTL, fast)
        assert after.status == LockStatus.ACQUIRED
    finally:
        await store_a.close()
        await store_b.close()


@pytest.mark.parametrize("contenders", [2, 8])
async def test_concurrent_acquire_grants_one_lease(lock, contenders):
    leases = await asyncio.gather(*(lock.acquire(KEY, TTL) for _ in range(contenders)))
    assert sum(lease is not None for lease in leases) == 1
