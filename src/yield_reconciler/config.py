"""Configuration loading: TOML file + environment variables."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

try:
    import tomllib  # Python 3.11+
except ModuleNotFoundError:
    import tomli as tomllib  # type: ignore[no-redef]

from yield_reconciler.errors import ConfigError
from yield_reconciler.models.config import (
    DEFAULT_CHUNK_SIZE,
    ReconcilerConfig,
    StreamConfig,
    StreamKind,
)

log = logging.getLogger(__name__)

# Stream names used when contracts are configured through the environment only
YIELD_STREAM = "yield_distribution"
STAKING_STREAM = "staking_events"


def parse_chunk_size(value: Any, default: int = DEFAULT_CHUNK_SIZE) -> int:
    """Malformed values fall back to ``default``; the result is at least 1."""
    try:
        size = int(str(value).strip())
    except (TypeError, ValueError):
        log.warning("Invalid chunk size %r, using %d", value, default)
        size = default
    return max(1, size)


def parse_enabled(value: Any) -> bool:
    """Only an explicit false disables the job."""
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() != "false"


def _int(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from exc


def _float(value: Any, name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a number, got {value!r}") from exc


def load_config(
    config_path: str | Path | None = None,
    env_prefix: str = "RECONCILER_",
) -> ReconcilerConfig:
    """Load reconciler configuration from a TOML file and env vars.

    Priority (highest wins):
        1. Environment variables (RECONCILER_CRON_SECRET, etc.)
        2. TOML config file
        3. Defaults from ReconcilerConfig
    """
    raw: dict = {}
    if config_path is not None:
        p = Path(config_path).expanduser()
        if p.exists():
            with open(p, "rb") as f:
                raw = tomllib.load(f)
        else:
            log.warning("Config file %s not found, using defaults", p)

    cfg = ReconcilerConfig()

    # ── Reconciler section ─────────────────────────────────
    job = raw.get("reconciler", {})
    if "enabled" in job:
        cfg.enabled = parse_enabled(job["enabled"])
    if "chunk_size" in job:
        cfg.chunk_size = parse_chunk_size(job["chunk_size"])
    if v := job.get("lock_ttl_ms"):
        cfg.lock_ttl_ms = _int(v, "lock_ttl_ms")
    if v := job.get("deployment_block"):
        cfg.deployment_block = _int(v, "deployment_block")
    if v := job.get("escalate_after_attempts"):
        cfg.escalate_after_attempts = _int(v, "escalate_after_attempts")
    if v := job.get("log_level"):
        cfg.log_level = str(v)

    # ── Server section ─────────────────────────────────────
    server = raw.get("server", {})
    if v := server.get("cron_secret"):
        cfg.cron_secret = str(v)
    if v := server.get("scheduler_header"):
        cfg.scheduler_header = str(v).lower()
    if v := server.get("host"):
        cfg.host = str(v)
    if v := server.get("port"):
        cfg.port = _int(v, "port")

    # ── Chain section ──────────────────────────────────────
    chain = raw.get("chain", {})
    if v := chain.get("rpc_url"):
        cfg.rpc_url = str(v)
    if v := chain.get("rpc_timeout"):
        cfg.rpc_timeout = _float(v, "rpc_timeout")

    # ── Action section ─────────────────────────────────────
    action = raw.get("action", {})
    if v := action.get("url"):
        cfg.action_url = str(v)
    if v := action.get("token"):
        cfg.action_token = str(v)
    if v := action.get("timeout"):
        cfg.action_timeout = _float(v, "action timeout")

    # ── Storage section ────────────────────────────────────
    storage = raw.get("storage", {})
    if v := storage.get("db_path"):
        cfg.db_path = str(v)

    # ── Streams ────────────────────────────────────────────
    for name, stream_raw in raw.get("streams", {}).items():
        cfg.streams[name] = _parse_stream(name, stream_raw)

    # ── Environment variable overrides (highest priority) ──
    env = os.environ
    if (v := env.get(f"{env_prefix}ENABLED")) is not None:
        cfg.enabled = parse_enabled(v)
    if (v := env.get(f"{env_prefix}CHUNK_SIZE")) is not None:
        cfg.chunk_size = parse_chunk_size(v)
    if v := env.get(f"{env_prefix}LOCK_TTL_MS"):
        cfg.lock_ttl_ms = _int(v, f"{env_prefix}LOCK_TTL_MS")
    if v := env.get(f"{env_prefix}DEPLOYMENT_BLOCK"):
        cfg.deployment_block = _int(v, f"{env_prefix}DEPLOYMENT_BLOCK")
    if v := env.get(f"{env_prefix}CRON_SECRET"):
        cfg.cron_secret = v
    if v := env.get(f"{env_prefix}RPC_URL"):
        cfg.rpc_url = v
    if v := env.get(f"{env_prefix}ACTION_URL"):
        cfg.action_url = v
    if v := env.get(f"{env_prefix}ACTION_TOKEN"):
        cfg.action_token = v
    if v := env.get(f"{env_prefix}DB_PATH"):
        cfg.db_path = v
    if v := env.get(f"{env_prefix}LOG_LEVEL"):
        cfg.log_level = v
    if v := env.get(f"{env_prefix}LOAN_POOL_ADDRESS"):
        _stream_for(cfg, YIELD_STREAM, StreamKind.YIELD_DISTRIBUTION).contract_address = v
    if v := env.get(f"{env_prefix}STAKING_POOL_ADDRESS"):
        _stream_for(cfg, STAKING_STREAM, StreamKind.STAKING_EVENTS).contract_address = v

    # Expand ~ in paths
    if cfg.db_path != ":memory:":
        cfg.db_path = str(Path(cfg.db_path).expanduser())

    return cfg


def _parse_stream(name: str, raw: dict) -> StreamConfig:
    kind_str = raw.get("kind", name)
    try:
        kind = StreamKind(kind_str)
    except ValueError as exc:
        raise ConfigError(f"stream {name!r}: unknown kind {kind_str!r}") from exc

    stream = StreamConfig(kind=kind)
    if v := raw.get("contract_address"):
        stream.contract_address = str(v)
    if (v := raw.get("deployment_block")) is not None:
        stream.deployment_block = _int(v, f"{name}.deployment_block")
    if (v := raw.get("chunk_size")) is not None:
        stream.chunk_size = parse_chunk_size(v)
    if (v := raw.get("confirmations")) is not None:
        stream.confirmations = max(0, _int(v, f"{name}.confirmations"))
    if v := raw.get("pool_filter"):
        stream.pool_filter = str(v)
    return stream


def _stream_for(cfg: ReconcilerConfig, name: str, kind: StreamKind) -> StreamConfig:
    """Return the configured stream of ``kind`` named ``name``, creating it if needed."""
    if name not in cfg.streams:
        cfg.streams[name] = StreamConfig(kind=kind)
    return cfg.streams[name]
