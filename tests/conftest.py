"""Shared fixtures for yield_reconciler tests."""

from __future__ import annotations

import pytest
from pytest_metadata.plugin import metadata_key

from yield_reconciler.coordination.idempotency import SQLiteIdempotencyLedger
from yield_reconciler.coordination.lock import SQLiteDistributedLock
from yield_reconciler.models.config import ReconcilerConfig, StreamConfig, StreamKind
from yield_reconciler.service import ReconcilerService
from yield_reconciler.storage.sqlite import SQLiteStateStore

from tests.factories import LOAN_POOL_ADDRESS, STAKING_POOL_ADDRESS, make_loan
from tests.mocks import FakeClock, MockEventSource, MockTransferAction

TEST_SECRET = "test-cron-secret-0123456789"
YIELD = "yield_distribution"
STAKING = "staking_events"


# ── Report metadata ──────────────────────────────────────────────


def pytest_configure(config):
    """Add contract info to the HTML report Environment table."""
    meta = config.stash.setdefault(metadata_key, {})
    meta["Loan Pool"] = LOAN_POOL_ADDRESS
    meta["Staking Pool"] = STAKING_POOL_ADDRESS


def make_test_config(**overrides) -> ReconcilerConfig:
    """Build a ReconcilerConfig suitable for testing.

    Cursor starts at the deployment block 100; with chunk size 50 the
    first pass covers blocks 101-150.
    """
    defaults = dict(
        enabled=True,
        chunk_size=50,
        deployment_block=100,
        escalate_after_attempts=5,
        cron_secret=TEST_SECRET,
        rpc_url="http://127.0.0.1:8545",
        action_url="http://transfer.test",
        action_token="test-action-token",
        action_timeout=5.0,
        db_path=":memory:",
        streams={
            YIELD: StreamConfig(
                kind=StreamKind.YIELD_DISTRIBUTION, contract_address=LOAN_POOL_ADDRESS,
            ),
            STAKING: StreamConfig(
                kind=StreamKind.STAKING_EVENTS, contract_address=STAKING_POOL_ADDRESS,
            ),
        },
    )
    defaults.update(overrides)
    return ReconcilerConfig(**defaults)


@pytest.fixture
def test_config():
    """Default ReconcilerConfig for tests."""
    return make_test_config()


@pytest.fixture
async def store():
    """Initialized in-memory SQLiteStateStore."""
    s = SQLiteStateStore(":memory:")
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(store, clock):
    return SQLiteIdempotencyLedger(store, clock)


@pytest.fixture
def lock(store, clock):
    return SQLiteDistributedLock(store, clock)


@pytest.fixture
def mock_source():
    return MockEventSource(head=150)


@pytest.fixture
def mock_action():
    return MockTransferAction(succeed=True)


@pytest.fixture
async def loan(store):
    """An ACTIVE loan whose pool is known to the staking contract."""
    loan = make_loan()
    await store.save_loan(loan)
    return loan


def wire_service(cfg, store, clock, source, action) -> ReconcilerService:
    """ReconcilerService with its components swapped for test doubles."""
    svc = ReconcilerService(cfg)
    svc.store = store
    svc.ledger = SQLiteIdempotencyLedger(store, clock)
    svc.lock = SQLiteDistributedLock(store, clock)
    svc.source = source
    svc.action = action
    return svc


@pytest.fixture
def service(test_config, store, clock, mock_source, mock_action):
    """Fully wired ReconcilerService with mocked chain and transfer service."""
    return wire_service(test_config, store, clock, mock_source, mock_action)


@pytest.fixture
def yield_engine(service):
    return service.engine(YIELD)


@pytest.fixture
def staking_engine(service):
    return service.engine(STAKING)
