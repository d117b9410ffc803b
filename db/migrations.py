"""SQLite migrations for the source registry."""

from __future__ import annotations

import sqlite3


def ensure_sources_table(conn: sqlite3.Connection) -> None:
    """Ensure the source script table and its ordering index exist."""
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS sources (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            category TEXT NOT NULL DEFAULT 'music',
            script TEXT NOT NULL,
            enabled INTEGER NOT NULL DEFAULT 1,
            priority INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_sources_enabled_priority "
        "ON sources (enabled, priority DESC, name ASC)"
    )
    conn.commit()
