"""On-chain event reconciliation and yield distribution engine."""

__version__ = "0.1.0"
