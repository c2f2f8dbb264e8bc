"""Versioned key-value entity store on SQLite.

Every entity lives at ``(table, partition_key, row_key)`` and carries an integer
``version`` that is bumped on each write. Writers read an entity, decide, and
write back conditioned on the version they read; a mismatch raises
``VersionConflict`` and nothing is committed.
"""

from __future__ import annotations

import json
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from db.migrations import ensure_entity_tables

_DEFAULT_DB_ENV_KEY = "PLAYLIST_VOTE_DB_PATH"


def _resolve_db_path() -> str:
    return os.environ.get(_DEFAULT_DB_ENV_KEY, os.path.join(os.getcwd(), "playlist_vote.sqlite3"))


class VersionConflict(Exception):
    """A conditional write observed a different version than it expected."""

    def __init__(self, table: str, partition_key: str, row_key: str) -> None:
        super().__init__(f"version conflict on {table}/{partition_key}/{row_key}")
        self.table = table
        self.partition_key = partition_key
        self.row_key = row_key


@dataclass(frozen=True)
class Entity:
    partition_key: str
    row_key: str
    data: dict[str, Any]
    version: int


@dataclass(frozen=True)
class Write:
    """One conditional mutation inside a batch.

    ``if_version`` makes the write conditional on the stored version;
    ``if_absent`` makes an insert fail when the row already exists. With
    neither set a put is an unconditional upsert (last write wins).
    """

    table: str
    partition_key: str
    row_key: str
    data: dict[str, Any] | None = None
    if_version: int | None = None
    if_absent: bool = False
    delete: bool = False


class KeyValueStore:
    """Point get/put/delete with version tokens, partition scans, atomic batches."""

    def __init__(self, db_path: str | os.PathLike | None = None) -> None:
        self.db_path = str(db_path or _resolve_db_path())
        conn = self._connect()
        conn.close()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        ensure_entity_tables(conn)
        return conn

    def table(self, name: str) -> "EntityTable":
        return EntityTable(self, name)

    def get(self, table: str, partition_key: str, row_key: str) -> Entity | None:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT partition_key, row_key, version, payload
                FROM kv_entities
                WHERE table_name=? AND partition_key=? AND row_key=?
                LIMIT 1
                """,
                (table, partition_key, row_key),
            )
            return _row_to_entity(cur.fetchone())
        finally:
            conn.close()

    def scan(self, table: str, partition_key: str) -> list[Entity]:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT partition_key, row_key, version, payload
                FROM kv_entities
                WHERE table_name=? AND partition_key=?
                ORDER BY row_key ASC
                """,
                (table, partition_key),
            )
            return [_row_to_entity(row) for row in cur.fetchall()]
        finally:
            conn.close()

    def commit(self, writes: Iterable[Write]) -> list[int | None]:
        """Apply all writes atomically; raise ``VersionConflict`` if any condition fails.

        Returns the new version per write (``None`` for deletes).
        """
        ops = list(writes)
        if not ops:
            return []
        updated_at = datetime.now(timezone.utc).isoformat()
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                versions = [_apply_write(cur, op, updated_at) for op in ops]
            except Exception:
                conn.rollback()
                raise
            conn.commit()
            return versions
        finally:
            conn.close()


class EntityTable:
    """Convenience view over one table of a ``KeyValueStore``."""

    def __init__(self, store: KeyValueStore, name: str) -> None:
        self.store = store
        self.name = name

    def get(self, partition_key: str, row_key: str) -> Entity | None:
        return self.store.get(self.name, partition_key, row_key)

    def scan(self, partition_key: str) -> list[Entity]:
        return self.store.scan(self.name, partition_key)

    def write(
        self,
        partition_key: str,
        row_key: str,
        data: dict[str, Any],
        *,
        if_version: int | None = None,
        if_absent: bool = False,
    ) -> Write:
        return Write(
            table=self.name,
            partition_key=partition_key,
            row_key=row_key,
            data=data,
            if_version=if_version,
            if_absent=if_absent,
        )

    def delete_write(self, partition_key: str, row_key: str, *, if_version: int | None = None) -> Write:
        return Write(
            table=self.name,
            partition_key=partition_key,
            row_key=row_key,
            if_version=if_version,
            delete=True,
        )

    def put(
        self,
        partition_key: str,
        row_key: str,
        data: dict[str, Any],
        *,
        if_version: int | None = None,
        if_absent: bool = False,
    ) -> Entity:
        op = self.write(partition_key, row_key, data, if_version=if_version, if_absent=if_absent)
        (version,) = self.store.commit([op])
        return Entity(partition_key=partition_key, row_key=row_key, data=dict(data), version=int(version))

    def delete(self, partition_key: str, row_key: str, *, if_version: int | None = None) -> None:
        self.store.commit([self.delete_write(partition_key, row_key, if_version=if_version)])


def _row_to_entity(row: sqlite3.Row | None) -> Entity | None:
    if row is None:
        return None
    return Entity(
        partition_key=str(row["partition_key"]),
        row_key=str(row["row_key"]),
        data=json.loads(row["payload"]),
        version=int(row["version"]),
    )


def _apply_write(cur: sqlite3.Cursor, op: Write, updated_at: str) -> int | None:
    key = (op.table, op.partition_key, op.row_key)
    if op.delete:
        if op.if_version is None:
            cur.execute(
                "DELETE FROM kv_entities WHERE table_name=? AND partition_key=? AND row_key=?",
                key,
            )
        else:
            cur.execute(
                "DELETE FROM kv_entities WHERE table_name=? AND partition_key=? AND row_key=? AND version=?",
                (*key, int(op.if_version)),
            )
            if cur.rowcount != 1:
                raise VersionConflict(*key)
        return None

    payload = json.dumps(op.data or {}, ensure_ascii=True, sort_keys=True)
    if op.if_absent:
        try:
            cur.execute(
                """
                INSERT INTO kv_entities (table_name, partition_key, row_key, version, payload, updated_at)
                VALUES (?, ?, ?, 1, ?, ?)
                """,
                (*key, payload, updated_at),
            )
        except sqlite3.IntegrityError as exc:
            raise VersionConflict(*key) from exc
        return 1

    if op.if_version is not None:
        cur.execute(
            """
            UPDATE kv_entities
            SET version=version + 1, payload=?, updated_at=?
            WHERE table_name=? AND partition_key=? AND row_key=? AND version=?
            """,
            (payload, updated_at, *key, int(op.if_version)),
        )
        if cur.rowcount != 1:
            raise VersionConflict(*key)
        return int(op.if_version) + 1

    cur.execute(
        """
        INSERT INTO kv_entities (table_name, partition_key, row_key, version, payload, updated_at)
        VALUES (?, ?, ?, 1, ?, ?)
        ON CONFLICT(table_name, partition_key, row_key) DO UPDATE SET
            version=kv_entities.version + 1,
            payload=excluded.payload,
            updated_at=excluded.updated_at
        """,
        (*key, payload, updated_at),
    )
    cur.execute(
        "SELECT version FROM kv_entities WHERE table_name=? AND partition_key=? AND row_key=?",
        key,
    )
    return int(cur.fetchone()[0])
