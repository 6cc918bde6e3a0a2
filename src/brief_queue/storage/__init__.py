"""SQLite persistence for briefs and queue jobs."""
