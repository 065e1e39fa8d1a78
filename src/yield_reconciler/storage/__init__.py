"""SQLite-backed state storage."""
