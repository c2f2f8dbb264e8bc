"""Database helpers for the playlist vote engine."""

from db.kv_store import Entity, EntityTable, KeyValueStore, VersionConflict, Write

__all__ = ["Entity", "EntityTable", "KeyValueStore", "VersionConflict", "Write"]
