"""HTTP trigger endpoints."""

from __future__ import annotations

import httpx
import pytest

from yield_reconciler.api.app import create_app
from yield_reconciler.errors import RpcTransient
from yield_reconciler.models.records import DistributionStatus
from yield_reconciler.service import lock_key_for

from tests.conftest import TEST_SECRET, YIELD
from tests.factories import make_repayment_event
from tests.mocks import MockTransferAction

AUTH = {"Authorization": f"Bearer {TEST_SECRET}"}


@pytest.fixture
async def client(service):
    # ASGITransport does not run the lifespan; the store fixture is already open
    app = create_app(service)
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test",
    ) as c:
        yield c


@pytest.mark.parametrize("headers", [
    {},
    {"Authorization": "Bearer wrong"},
    {"Authorization": TEST_SECRET},
    {"x-vercel-cron": "1"},
])
async def test_unauthorized(client, store, headers):
    resp = await client.get(f"/reconcile/{YIELD}", headers=headers)
    assert resp.status_code == 401
    assert resp.json() == {"error": "Unauthorized"}
    assert await store.get_cursor(YIELD, default=-1) == -1


async def test_missing_secret_fails_closed(client, service):
    service.cfg.cron_secret = ""
    resp = await client.get(f"/reconcile/{YIELD}", headers={"Authorization": "Bearer anything"})
    assert resp.status_code == 401


async def test_unknown_stream(client):
    resp = await client.get("/reconcile/nope", headers=AUTH)
    assert resp.status_code == 404
    assert "error" in resp.json()


@pytest.mark.parametrize("method", ["GET", "POST"])
async def test_successful_pass(client, store, mock_source, loan, method):
    mock_source.add(make_repayment_event(block_number=130))

    resp = await client.request(method, f"/reconcile/{YIELD}", headers=AUTH)

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["fromBlock"] == 101
    assert body["toBlock"] == 150
    assert body["results"] == {"processed": 1, "applied": 1, "failed": 0, "skipped": 0}
    assert isinstance(body["durationMs"], int)
    assert await store.get_cursor(YIELD) == 150


async def test_scheduler_header_still_needs_bearer(client, mock_source):
    resp = await client.get(f"/reconcile/{YIELD}", headers={**AUTH, "x-vercel-cron": "1"})
    assert resp.status_code == 200


async def test_nothing_to_do(client, store):
    await store.set_cursor(YIELD, 150)
    resp = await client.get(f"/reconcile/{YIELD}", headers=AUTH)
    body = resp.json()
    assert resp.status_code == 200
    assert body["message"] == "No new blocks to process"
    assert body["results"]["processed"] == 0


async def test_disabled_does_nothing(client, service, store, mock_source):
    service.cfg.enabled = False
    resp = await client.get(f"/reconcile/{YIELD}", headers=AUTH)
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "message": "Reconciliation is disabled"}
    assert mock_source.query_calls == []
    assert await store.get_cursor(YIELD, default=-1) == -1


async def test_lock_held_is_skipped(client, service, mock_source):
    await service.lock.acquire(lock_key_for(YIELD), 60_000)

    resp = await client.get(f"/reconcile/{YIELD}", headers=AUTH)

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["skipped"] is True
    assert "another instance" in body["message"]
    assert mock_source.query_calls == []


async def test_rpc_failure_is_500_without_details(client, store, mock_source):
    mock_source.head_error = RpcTransient("node 10.0.0.5 refused connection")

    resp = await client.get(f"/reconcile/{YIELD}", headers=AUTH)

    assert resp.status_code == 500
    body = resp.json()
    assert body["success"] is False
    assert body["error"] == "Reconciliation failed"
    assert "10.0.0.5" not in resp.text
    assert await store.get_cursor(YIELD, default=-1) == -1


async def test_retry_endpoint(client, service, store, mock_source, loan):
    service.action = MockTransferAction(succeed=False)
    mock_source.add(make_repayment_event(block_number=130))
    await client.post(f"/reconcile/{YIELD}", headers=AUTH)
    [failed] = await store.get_distributions(status=DistributionStatus.FAILED)

    service.action.succeed = True
    resp = await client.post(f"/reconcile/{YIELD}/retry/{failed.fingerprint}", headers=AUTH)

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "COMPLETED"
    assert body["attempts"] == 2


async def test_retry_unknown_fingerprint(client):
    resp = await client.post(f"/reconcile/{YIELD}/retry/yield_distribution:nope", headers=AUTH)
    assert resp.status_code == 404


async def test_retry_requires_auth(client):
    resp = await client.post(f"/reconcile/{YIELD}/retry/x")
    assert resp.status_code == 401


async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
