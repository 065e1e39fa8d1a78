"""CLI entry point for the yield reconciler."""

from __future__ import annotations

import asyncio
import logging
import sys

import click
import httpx
import uvicorn

from yield_reconciler.api.app import create_app
from yield_reconciler.config import load_config
from yield_reconciler.coordination.idempotency import SQLiteIdempotencyLedger
from yield_reconciler.errors import ConfigError, ReconcilerError, UnknownStream
from yield_reconciler.models.records import DistributionStatus, LoanMatch, RunSummary
from yield_reconciler.service import ReconcilerService, TriggerResult, TriggerStatus
from yield_reconciler.storage.sqlite import SQLiteStateStore


def _load(ctx: click.Context, validate: bool = False):
    try:
        cfg = load_config(ctx.obj["config_path"])
        if validate:
            cfg.validate()
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    return cfg


def _echo_summary(summary: RunSummary) -> None:
    c = summary.counters
    if summary.nothing_to_do:
        click.echo(f"[{summary.stream}] {summary.message or 'Nothing to do'}")
        return
    click.echo(
        f"[{summary.stream}] blocks {summary.from_block}-{summary.to_block}: "
        f"processed={c.processed} applied={c.applied} failed={c.failed} "
        f"skipped={c.skipped} ({summary.duration_ms}ms)"
    )


def _echo_result(result: TriggerResult) -> None:
    if result.status == TriggerStatus.COMPLETED and result.summary is not None:
        _echo_summary(result.summary)
    elif result.status == TriggerStatus.SKIPPED:
        click.echo(f"Skipped - another instance is processing ({result.state.value})")
    elif result.status == TriggerStatus.DISABLED:
        click.echo("Reconciliation is disabled")
    elif result.status == TriggerStatus.FAILED:
        click.echo(f"Failed: {result.error}", err=True)


async def _with_service(cfg, fn):
    service = ReconcilerService(cfg)
    await service.initialize()
    try:
        return await fn(service)
    finally:
        await service.close()


@click.group()
@click.option("-c", "--config", "config_path", default=None, help="Path to config TOML file")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """yield-reconciler - chain event reconciliation and yield distribution."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose

    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# ── Server ─────────────────────────────────────────────


@cli.command()
@click.option("--host", default=None, help="Bind address (default from config)")
@click.option("--port", type=int, default=None, help="Bind port (default from config)")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Serve the scheduler trigger endpoints."""
    cfg = _load(ctx, validate=True)
    app = create_app(ReconcilerService(cfg))
    click.echo(f"Serving on {host or cfg.host}:{port or cfg.port}")
    uvicorn.run(
        app,
        host=host or cfg.host,
        port=port or cfg.port,
        log_level="debug" if ctx.obj["verbose"] else cfg.log_level,
    )


# ── Passes ─────────────────────────────────────────────


@cli.command()
@click.argument("stream")
@click.option("--until-caught-up", is_flag=True, help="Keep running passes until the head")
@click.pass_context
def run(ctx: click.Context, stream: str, until_caught_up: bool) -> None:
    """Run reconciliation for STREAM once (or until caught up)."""
    cfg = _load(ctx, validate=True)

    async def _run(service: ReconcilerService) -> list[TriggerResult]:
        if until_caught_up:
            return await service.catch_up(stream)
        return [await service.trigger(stream, source="cli")]

    try:
        results = asyncio.run(_with_service(cfg, _run))
    except UnknownStream:
        click.echo(f"Error: unknown stream {stream!r}", err=True)
        sys.exit(1)
    for result in results:
        _echo_result(result)
    if any(r.status == TriggerStatus.FAILED for r in results):
        sys.exit(1)


@cli.command()
@click.argument("stream")
@click.argument("from_block", type=int)
@click.argument("to_block", type=int)
@click.pass_context
def replay(ctx: click.Context, stream: str, from_block: int, to_block: int) -> None:
    """Re-process blocks FROM_BLOCK..TO_BLOCK of STREAM without moving the cursor."""
    cfg = _load(ctx, validate=True)

    async def _replay(service: ReconcilerService) -> TriggerResult:
        return await service.replay(stream, from_block, to_block)

    try:
        result = asyncio.run(_with_service(cfg, _replay))
    except UnknownStream:
        click.echo(f"Error: unknown stream {stream!r}", err=True)
        sys.exit(1)
    _echo_result(result)
    if result.status == TriggerStatus.FAILED:
        sys.exit(1)


@cli.command()
@click.argument("stream")
@click.argument("fingerprint")
@click.pass_context
def retry(ctx: click.Context, stream: str, fingerprint: str) -> None:
    """Retry the FAILED distribution FINGERPRINT of STREAM."""
    cfg = _load(ctx, validate=True)

    async def _retry(service: ReconcilerService) -> TriggerResult:
        return await service.retry(stream, fingerprint)

    try:
        result = asyncio.run(_with_service(cfg, _retry))
    except UnknownStream:
        click.echo(f"Error: unknown stream {stream!r}", err=True)
        sys.exit(1)

    if result.status == TriggerStatus.NOT_FOUND:
        click.echo(f"No failed record for {fingerprint}", err=True)
        sys.exit(1)
    _echo_result(result)
    if result.record is not None:
        click.echo(f"Status:   {result.record.status.value} (attempt {result.record.attempts})")
        if result.record.error:
            click.echo(f"Error:    {result.record.error}")


@cli.command()
@click.argument("stream")
@click.option("--url", default=None, help="Server base URL (default from config)")
@click.pass_context
def trigger(ctx: click.Context, stream: str, url: str | None) -> None:
    """Trigger a pass on a running server, as the scheduler would."""
    cfg = _load(ctx)
    if not cfg.cron_secret:
        click.echo("Error: No cron secret configured.", err=True)
        click.echo("Set RECONCILER_CRON_SECRET env var or cron_secret in config.", err=True)
        sys.exit(1)

    base = (url or f"http://{cfg.host}:{cfg.port}").rstrip("/")
    try:
        resp = httpx.post(
            f"{base}/reconcile/{stream}",
            headers={"Authorization": f"Bearer {cfg.cron_secret}"},
            timeout=cfg.lock_ttl_ms / 1000,
        )
    except httpx.HTTPError as exc:
        click.echo(f"Request failed: {exc}", err=True)
        sys.exit(1)

    click.echo(f"HTTP {resp.status_code}: {resp.text}")
    if resp.status_code != 200:
        sys.exit(1)


# ── Info ───────────────────────────────────────────────


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show configuration, cursors and recent activity."""
    cfg = _load(ctx)
    click.echo(f"Enabled:    {cfg.enabled}")
    click.echo(f"RPC URL:    {cfg.rpc_url or '(not set)'}")
    click.echo(f"Action URL: {cfg.action_url or '(not set)'}")
    click.echo(f"Chunk size: {cfg.chunk_size}")
    click.echo(f"Lock TTL:   {cfg.lock_ttl_ms}ms")
    click.echo(f"DB path:    {cfg.db_path}")
    click.echo(f"Secret:     {'***configured***' if cfg.cron_secret else '(not set)'}")

    async def _status():
        store = SQLiteStateStore(cfg.db_path)
        await store.initialize()
        try:
            cursors = await store.get_all_cursors()
            click.echo("")
            click.echo("Streams:")
            for name, stream in cfg.streams.items():
                cursor = cursors.get(name)
                shown = cursor if cursor is not None else f"(unset, starts after {cfg.deployment_block_for(name)})"
                click.echo(f"  {name:<20} kind={stream.kind.value} contract={stream.contract_address or '(not set)'} cursor={shown}")

            failed = await store.get_distributions(status=DistributionStatus.FAILED)
            click.echo(f"\nFailed distributions: {len(failed)}")

            activity = await store.get_recent_activity(10)
            if activity:
                click.echo("\nRecent activity:")
                for a in activity:
                    click.echo(f"  {a.created_at} {a.event_type:<18} {a.message}")
        finally:
            await store.close()

    asyncio.run(_status())


@cli.command()
@click.option("--stream", default=None, help="Only records of this stream")
@click.option(
    "--status", "status_", default=None,
    type=click.Choice([s.value for s in DistributionStatus], case_sensitive=False),
    help="Only records with this status",
)
@click.pass_context
def records(ctx: click.Context, stream: str | None, status_: str | None) -> None:
    """List distribution records."""
    cfg = _load(ctx)

    async def _records():
        store = SQLiteStateStore(cfg.db_path)
        await store.initialize()
        try:
            rows = await store.get_distributions(
                stream=stream,
                status=DistributionStatus(status_.upper()) if status_ else None,
            )
            if not rows:
                click.echo("No distribution records.")
                return
            for r in rows:
                click.echo(
                    f"  {r.fingerprint} {r.status.value:<9} loan={r.loan_id} "
                    f"interest={r.interest_amount} block={r.source_block_number} "
                    f"attempts={r.attempts}" + (f" error={r.error}" if r.error else "")
                )
        finally:
            await store.close()

    asyncio.run(_records())


@cli.command("staking-stats")
@click.argument("pool_id")
@click.pass_context
def staking_stats(ctx: click.Context, pool_id: str) -> None:
    """Show indexed stake/unstake counts for POOL_ID (bytes32 hex)."""
    cfg = _load(ctx)

    async def _stats():
        store = SQLiteStateStore(cfg.db_path)
        await store.initialize()
        try:
            return await store.get_pool_staking_stats(pool_id.lower())
        finally:
            await store.close()

    stats = asyncio.run(_stats())
    click.echo(f"Pool:           {stats.pool_id}")
    click.echo(f"Stake events:   {stats.total_stake_events}")
    click.echo(f"Unstake events: {stats.total_unstake_events}")
    click.echo(f"Unique stakers: {stats.unique_stakers}")


# ── Operator ───────────────────────────────────────────


@cli.command("add-loan")
@click.argument("loan_id")
@click.argument("pool_id")
@click.option("--contract-pool-id", default=None, help="bytes32 pool id on the staking contract")
@click.option("--status", "loan_status", default="ACTIVE", help="Loan status (ACTIVE, DISBURSED, ...)")
@click.pass_context
def add_loan(
    ctx: click.Context, loan_id: str, pool_id: str,
    contract_pool_id: str | None, loan_status: str,
) -> None:
    """Register LOAN_ID (belonging to POOL_ID) so its repayments can be matched."""
    cfg = _load(ctx)

    async def _add():
        store = SQLiteStateStore(cfg.db_path)
        await store.initialize()
        try:
            loan = LoanMatch(
                loan_id=loan_id, pool_id=pool_id,
                contract_pool_id=contract_pool_id, status=loan_status.upper(),
            )
            await store.save_loan(loan)
            return loan
        finally:
            await store.close()

    loan = asyncio.run(_add())
    click.echo(f"Saved loan {loan.loan_id} (on-chain id {loan.loan_hash})")


@cli.command("reset-cursor")
@click.argument("stream")
@click.argument("block", type=int)
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
@click.pass_context
def reset_cursor(ctx: click.Context, stream: str, block: int, yes: bool) -> None:
    """Set the cursor of STREAM to BLOCK, even backwards."""
    cfg = _load(ctx)
    if cfg.stream(stream) is None:
        click.echo(f"Error: unknown stream {stream!r}", err=True)
        sys.exit(1)
    if block < 0:
        click.echo("Error: block must be >= 0", err=True)
        sys.exit(1)
    if not yes:
        click.confirm(f"Set cursor of {stream} to {block}?", abort=True)

    async def _reset():
        store = SQLiteStateStore(cfg.db_path)
        await store.initialize()
        try:
            await store.reset_cursor(stream, block)
            await store.log_activity(
                "cursor_reset", f"Cursor set to {block} by operator", stream=stream,
                block_number=block,
            )
        finally:
            await store.close()

    try:
        asyncio.run(_reset())
    except ReconcilerError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    click.echo(f"Cursor of {stream} set to {block}")


@cli.command("purge-keys")
@click.pass_context
def purge_keys(ctx: click.Context) -> None:
    """Delete expired idempotency keys. Keys without a TTL are kept."""
    cfg = _load(ctx)

    async def _purge() -> int:
        store = SQLiteStateStore(cfg.db_path)
        await store.initialize()
        try:
            removed = await SQLiteIdempotencyLedger(store).purge_expired()
            if removed:
                await store.log_activity("keys_purged", f"Purged {removed} expired idempotency keys")
            return removed
        finally:
            await store.close()

    removed = asyncio.run(_purge())
    click.echo(f"Purged {removed} expired idempotency keys")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
