"""Protocol interfaces for all reconciler components."""

from yield_reconciler.interfaces.action import TransferAction
from yield_reconciler.interfaces.handler import StreamHandler
from yield_reconciler.interfaces.ledger import IdempotencyLedger
from yield_reconciler.interfaces.lock import DistributedLock
from yield_reconciler.interfaces.source import EventSource
from yield_reconciler.interfaces.store import CursorStore, StateStore

__all__ = [
    "TransferAction",
    "StreamHandler",
    "IdempotencyLedger",
    "DistributedLock",
    "EventSource",
    "CursorStore", "StateStore",
]
