"""External side effects triggered by reconciled events."""
