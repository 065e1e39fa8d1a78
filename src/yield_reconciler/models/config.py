"""Configuration models for the reconciler."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from yield_reconciler.errors import ConfigError

DEFAULT_CHUNK_SIZE = 1000
DEFAULT_LOCK_TTL_MS = 5 * 60 * 1000  # longer than the slowest observed pass


class StreamKind(str, Enum):
    """Which handler processes a stream's events."""

    YIELD_DISTRIBUTION = "yield_distribution"
    STAKING_EVENTS = "staking_events"


@dataclass
class StreamConfig:
    """Per-stream settings. Unset values fall back to the global ones."""

    kind: StreamKind
    contract_address: str = ""
    deployment_block: int | None = None
    chunk_size: int | None = None
    confirmations: int = 0  # blocks behind head that are never scanned
    pool_filter: str | None = None  # staking: restrict to one bytes32 pool id


@dataclass
class ReconcilerConfig:
    """Complete process configuration, built once at startup."""

    # Job
    enabled: bool = True
    chunk_size: int = DEFAULT_CHUNK_SIZE
    lock_ttl_ms: int = DEFAULT_LOCK_TTL_MS
    deployment_block: int = 0
    escalate_after_attempts: int = 5
    log_level: str = "info"

    # Trigger endpoint
    cron_secret: str = ""
    scheduler_header: str = "x-vercel-cron"
    host: str = "127.0.0.1"
    port: int = 8080

    # Chain
    rpc_url: str = ""
    rpc_timeout: float = 30.0  # seconds

    # Ledger transfer service
    action_url: str = ""
    action_token: str = ""
    action_timeout: float = 60.0  # seconds

    # Storage
    db_path: str = "~/.yield_reconciler/state.db"

    streams: dict[str, StreamConfig] = field(default_factory=dict)

    def stream(self, name: str) -> StreamConfig | None:
        return self.streams.get(name)

    def chunk_size_for(self, name: str) -> int:
        stream = self.streams[name]
        return max(1, stream.chunk_size or self.chunk_size)

    def deployment_block_for(self, name: str) -> int:
        stream = self.streams[name]
        if stream.deployment_block is not None:
            return stream.deployment_block
        return self.deployment_block

    def validate(self) -> None:
        """Raise ConfigError if the process cannot run safely."""
        if not self.cron_secret:
            raise ConfigError("cron_secret is not configured")
        if not self.rpc_url:
            raise ConfigError("rpc_url is not configured")
        if not self.streams:
            raise ConfigError("no streams configured")
        for name, stream in self.streams.items():
            if not stream.contract_address:
                raise ConfigError(f"stream {name!r} has no contract_address")
            if stream.kind == StreamKind.YIELD_DISTRIBUTION and not self.action_url:
                raise ConfigError(f"stream {name!r} needs action_url")
        if self.lock_ttl_ms <= 0:
            raise ConfigError("lock_ttl_ms must be positive")
