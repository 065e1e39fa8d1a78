"""Reconciliation engine and per-stream handlers."""
