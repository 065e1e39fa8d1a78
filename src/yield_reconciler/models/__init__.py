"""Data models for the yield reconciler."""

from yield_reconciler.models.events import EventInput, EventSpec, RawEvent
from yield_reconciler.models.records import (
    ActionResult,
    ApplyOutcome,
    ActivityRecord,
    DistributionRecord,
    DistributionStatus,
    Effect,
    Lease,
    LoanMatch,
    LockOutcome,
    LockStatus,
    MarkResult,
    PoolStakingStats,
    RunCounters,
    RunState,
    RunSummary,
    StakingEventRecord,
)
from yield_reconciler.models.config import ReconcilerConfig, StreamConfig, StreamKind

__all__ = [
    "EventInput", "EventSpec", "RawEvent",
    "ActionResult", "ApplyOutcome", "ActivityRecord", "DistributionRecord", "DistributionStatus",
    "Effect", "Lease", "LoanMatch", "LockOutcome", "LockStatus", "MarkResult", "PoolStakingStats",
    "RunCounters", "RunState", "RunSummary", "StakingEventRecord",
    "ReconcilerConfig", "StreamConfig", "StreamKind",
]
