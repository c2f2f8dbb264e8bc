"""SQLite migrations for the versioned entity store."""

from __future__ import annotations

import sqlite3


def ensure_entity_tables(conn: sqlite3.Connection) -> None:
    """Ensure the entity table and its partition index exist."""
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS kv_entities (
            table_name TEXT NOT NULL,
            partition_key TEXT NOT NULL,
            row_key TEXT NOT NULL,
            version INTEGER NOT NULL,
            payload TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (table_name, partition_key, row_key)
        )
        """
    )
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_kv_entities_partition "
        "ON kv_entities (table_name, partition_key)"
    )
    conn.commit()


def ensure_oauth_token_table(conn: sqlite3.Connection) -> None:
    """Ensure per-administrator Spotify token storage exists."""
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS spotify_oauth_tokens (
            administrator_id TEXT PRIMARY KEY,
            access_token TEXT NOT NULL,
            refresh_token TEXT NOT NULL,
            expires_at INTEGER NOT NULL,
            scope TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.commit()
