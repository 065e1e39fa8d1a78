"""Error taxonomy for the reconciler.

Lock contention is not represented here: it is reported through
``LockOutcome`` because a held lock is an expected outcome.
"""

from __future__ import annotations


class ReconcilerError(Exception):
    """Base class for all reconciler errors."""


class ConfigError(ReconcilerError):
    """Configuration is missing or invalid. Fatal, nothing is executed."""


class UnknownStream(ReconcilerError):
    """The requested stream is not configured."""


class StorageUnavailable(ReconcilerError):
    """The backing datastore could not be reached or rejected the operation."""


class RpcError(ReconcilerError):
    """Base class for event source failures."""


class RpcTransient(RpcError):
    """Retryable RPC failure (timeout, connection reset, node error)."""


class RpcRejected(RpcError):
    """The node refused the request, usually because the block range is too large."""


class ActionFailure(ReconcilerError):
    """The external action failed for a single event."""


class LeaseExpired(ReconcilerError):
    """The lock lease ran out while the pass still had work to do."""
