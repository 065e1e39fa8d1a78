"""Cross-process coordination: distributed lock and idempotency ledger."""
