"""HTTP transfer action - asks the ledger/transfer service to move funds."""

from __future__ import annotations

import logging
import time
from typing import Any, Mapping

import httpx

from yield_reconciler.models.records import ActionResult

log = logging.getLogger(__name__)


class HttpTransferAction:
    """Posts yield distributions to the transfer service.

    The request carries the event fingerprint as ``Idempotency-Key`` so
    a service that supports it can drop duplicates on its side too.
    The service answers with a reference (usually the transaction hash)
    that is stored on the distribution record.
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = timeout
        self._transport = transport

    def _headers(self, metadata: Mapping[str, Any]) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        if metadata.get("fingerprint"):
            headers["Idempotency-Key"] = str(metadata["fingerprint"])
        return headers

    async def apply_effect(
        self, pool_id: str, amount: int, metadata: Mapping[str, Any],
    ) -> ActionResult:
        """Distribute ``amount`` (smallest token unit) to ``pool_id``."""
        start = time.monotonic()
        payload = {
            "poolId": pool_id,
            "amount": str(amount),  # JSON numbers lose precision past 2**53
            "metadata": {k: v for k, v in metadata.items() if v is not None},
        }
        log.info("Distributing %s to pool %s", amount, pool_id)

        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout, connect=10),
                transport=self._transport,
            ) as client:
                resp = await client.post(
                    f"{self._base_url}/transfers",
                    json=payload,
                    headers=self._headers(metadata),
                )
                resp.raise_for_status()
                body = resp.json() if resp.content else {}

        except httpx.TimeoutException:
            duration = int((time.monotonic() - start) * 1000)
            log.error("Transfer to pool %s timed out after %ds", pool_id, self._timeout)
            return ActionResult(
                success=False, error=f"timeout after {self._timeout}s", duration_ms=duration,
            )
        except httpx.HTTPStatusError as exc:
            duration = int((time.monotonic() - start) * 1000)
            detail = exc.response.text[:200]
            log.error("Transfer to pool %s failed: HTTP %d %s",
                      pool_id, exc.response.status_code, detail)
            return ActionResult(
                success=False,
                error=f"transfer service HTTP {exc.response.status_code}",
                duration_ms=duration,
            )
        except (httpx.HTTPError, ValueError) as exc:
            duration = int((time.monotonic() - start) * 1000)
            log.error("Transfer to pool %s failed: %s", pool_id, exc)
            return ActionResult(success=False, error=str(exc), duration_ms=duration)

        duration = int((time.monotonic() - start) * 1000)
        if not isinstance(body, dict):
            log.error("Transfer to pool %s returned an unexpected body: %r", pool_id, body)
            return ActionResult(
                success=False, error="unexpected transfer service response", duration_ms=duration,
            )
        if body.get("success") is False:
            error = str(body.get("error") or "transfer rejected")
            log.error("Transfer to pool %s rejected: %s", pool_id, error)
            return ActionResult(success=False, error=error, duration_ms=duration)

        action_ref = body.get("txHash") or body.get("id")
        log.info("Distributed %s to pool %s (ref %s, %dms)", amount, pool_id, action_ref, duration)
        return ActionResult(success=True, action_ref=action_ref, duration_ms=duration)
