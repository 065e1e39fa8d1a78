"""FastAPI application exposing the scheduler trigger endpoints."""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from yield_reconciler import __version__
from yield_reconciler.api.auth import verify_bearer
from yield_reconciler.service import ReconcilerService, TriggerStatus

log = logging.getLogger(__name__)


def _unauthorized() -> JSONResponse:
    return JSONResponse({"error": "Unauthorized"}, status_code=401)


def _unknown_stream(stream: str) -> JSONResponse:
    return JSONResponse({"error": f"Unknown stream: {stream}"}, status_code=404)


def create_app(service: ReconcilerService) -> FastAPI:
    """Build the app around an existing service.

    The lifespan opens and closes the service's store.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.initialize()
        log.info("Reconciler API ready (streams: %s)", ", ".join(service.cfg.streams) or "none")
        try:
            yield
        finally:
            await service.close()

    app = FastAPI(title="yield-reconciler", version=__version__, lifespan=lifespan)
    app.state.service = service

    def _source(request: Request) -> str:
        header = service.cfg.scheduler_header
        return "scheduler" if header and request.headers.get(header) else "manual"

    async def reconcile(stream: str, request: Request) -> JSONResponse:
        if not verify_bearer(request.headers.get("authorization"), service.cfg.cron_secret):
            return _unauthorized()
        if service.cfg.stream(stream) is None:
            return _unknown_stream(stream)

        start = time.monotonic()
        result = await service.trigger(stream, source=_source(request))
        duration_ms = int((time.monotonic() - start) * 1000)

        if result.status == TriggerStatus.DISABLED:
            return JSONResponse({"success": True, "message": "Reconciliation is disabled"})
        if result.status == TriggerStatus.SKIPPED:
            return JSONResponse({
                "success": True,
                "skipped": True,
                "message": "Skipped - another instance is processing",
                "durationMs": duration_ms,
            })
        if result.status == TriggerStatus.FAILED:
            # details stay in the logs
            return JSONResponse(
                {"success": False, "error": "Reconciliation failed", "durationMs": duration_ms},
                status_code=500,
            )
        return JSONResponse(result.summary.to_response())

    app.add_api_route("/reconcile/{stream}", reconcile, methods=["GET", "POST"])

    @app.post("/reconcile/{stream}/retry/{fingerprint}")
    async def retry(stream: str, fingerprint: str, request: Request) -> JSONResponse:
        if not verify_bearer(request.headers.get("authorization"), service.cfg.cron_secret):
            return _unauthorized()
        if service.cfg.stream(stream) is None:
            return _unknown_stream(stream)

        result = await service.retry(stream, fingerprint)
        if result.status == TriggerStatus.NOT_FOUND:
            return JSONResponse({"error": "No failed record for fingerprint"}, status_code=404)
        if result.status == TriggerStatus.SKIPPED:
            return JSONResponse({
                "success": True,
                "skipped": True,
                "message": "Skipped - another instance is processing",
            })
        if result.status == TriggerStatus.FAILED:
            return JSONResponse(
                {"success": False, "error": "Retry failed"}, status_code=500,
            )
        record = result.record
        return JSONResponse({
            "success": True,
            "fingerprint": fingerprint,
            "status": record.status.value if record else None,
            "attempts": record.attempts if record else None,
            "actionRef": record.action_ref if record else None,
            "error": record.error if record else None,
        })

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok", "version": __version__, "enabled": service.cfg.enabled}

    return app
