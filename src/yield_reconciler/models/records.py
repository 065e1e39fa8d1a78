"""Internal record types for state persistence and operation results."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from yield_reconciler.models.events import RawEvent


class DistributionStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"  # retryable


@dataclass
class LoanMatch:
    """Internal loan record an on-chain loan id resolves to."""

    loan_id: str
    pool_id: str
    contract_pool_id: str | None = None  # bytes32 hex of the pool on the staking contract
    status: str = "ACTIVE"
    loan_hash: str = ""  # keccak256(loan_id), lowercase hex


@dataclass
class DistributionRecord:
    """One yield distribution triggered by one repayment event."""

    fingerprint: str
    stream: str
    pool_id: str
    loan_id: str
    principal_amount: int
    interest_amount: int
    total_amount: int
    source_block_number: int
    source_tx_hash: str
    source_log_index: int
    contract_pool_id: str | None = None
    action_ref: str | None = None
    status: DistributionStatus = DistributionStatus.PENDING
    error: str | None = None
    attempts: int = 0
    created_at: str = ""
    updated_at: str = ""
    completed_at: str | None = None


@dataclass
class StakingEventRecord:
    """A StakingPool event as persisted by the staking stream."""

    event_type: str  # STAKED, UNSTAKE_REQUESTED, UNSTAKED
    pool_id: str
    user_address: str
    amount: int
    transaction_hash: str
    log_index: int
    block_number: int
    shares: int | None = None
    fee: int | None = None
    unlock_time: str | None = None  # ISO 8601
    created_at: str = ""


@dataclass
class PoolStakingStats:
    """Event counts of one staking pool."""

    pool_id: str
    total_stake_events: int = 0
    total_unstake_events: int = 0
    unique_stakers: int = 0


@dataclass
class ActivityRecord:
    """A single activity log entry."""

    id: int
    event_type: str
    stream: str | None
    block_number: int | None
    fingerprint: str | None
    message: str
    created_at: str


@dataclass
class ActionResult:
    """Result of one call to the external ledger transfer service."""

    success: bool
    action_ref: str | None = None
    error: str | None = None
    duration_ms: int = 0


@dataclass
class ApplyOutcome:
    """What a handler did with one effect."""

    result: ActionResult
    attempts: int = 1  # including this one
    duplicate: bool = False  # the effect was already recorded as applied


@dataclass
class MarkResult:
    """Result of an idempotency check-and-mark."""

    is_new: bool
    fingerprint: str


@dataclass
class Effect:
    """A matched event together with the side effect it calls for."""

    fingerprint: str
    event: RawEvent
    amount: int
    noop: bool = False
    subject: Any = None  # handler-specific, e.g. LoanMatch


@dataclass
class Lease:
    """Ownership token for a held lock."""

    lock_key: str
    owner: str
    expires_at_ms: int

    def is_expired(self, now_ms: int) -> bool:
        return now_ms >= self.expires_at_ms

    def remaining_ms(self, now_ms: int) -> int:
        return max(0, self.expires_at_ms - now_ms)


class LockStatus(str, Enum):
    ACQUIRED = "acquired"
    NOT_ACQUIRED = "lock_not_acquired"
    EXECUTION_ERROR = "execution_error"


@dataclass
class LockOutcome:
    """Tagged result of running a function under the distributed lock."""

    status: LockStatus
    result: Any = None
    error: BaseException | None = None

    @property
    def success(self) -> bool:
        return self.status == LockStatus.ACQUIRED


class RunState(str, Enum):
    """States a reconciliation pass moves through."""

    IDLE = "IDLE"
    LOCK_ACQUIRED = "LOCK_ACQUIRED"
    LOCK_NOT_ACQUIRED = "LOCK_NOT_ACQUIRED"
    SCANNING = "SCANNING"
    MATCHING = "MATCHING"
    APPLYING = "APPLYING"
    CURSOR_ADVANCED = "CURSOR_ADVANCED"
    ABORTED = "ABORTED"


@dataclass
class RunCounters:
    processed: int = 0
    applied: int = 0
    failed: int = 0
    skipped: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "applied": self.applied,
            "failed": self.failed,
            "skipped": self.skipped,
        }


@dataclass
class RunSummary:
    """Structured result of one reconciliation pass."""

    stream: str
    from_block: int
    to_block: int
    counters: RunCounters = field(default_factory=RunCounters)
    duration_ms: int = 0
    state: RunState = RunState.IDLE
    message: str = ""

    @property
    def nothing_to_do(self) -> bool:
        return self.to_block < self.from_block

    def to_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": True,
            "fromBlock": self.from_block,
            "toBlock": self.to_block,
            "results": self.counters.as_dict(),
            "durationMs": self.duration_ms,
        }
        if self.message:
            body["message"] = self.message
        return body
