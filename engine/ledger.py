"""Per-chat ledger of track sharing events.

Records live in ``track_records`` under ``(chat_id, record_id)``. A companion
index in ``chat_track_index`` under ``(chat_id, track_id)`` names the chat's
active record for a track, or marks the track as removed for good. The index
row is claimed with a conditional insert in the same batch that writes the
new record, which is what keeps a single active record per (chat, track)
even when two shares of the same link race.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

from db.kv_store import KeyValueStore
from engine.concurrency import run_with_retry
from engine.errors import RecordNotFound
from engine.models import (
    CatalogEntry,
    Member,
    PlaylistStatus,
    ShareResult,
    ShareStatus,
    TrackRecord,
    parse_timestamp,
)

RECORDS_TABLE = "track_records"
TRACK_INDEX_TABLE = "chat_track_index"

SLOT_ACTIVE = "active"
SLOT_REMOVED = "removed"

logger = logging.getLogger(__name__)


class TrackLedger:
    def __init__(self, store: KeyValueStore) -> None:
        self.store = store
        self.records = store.table(RECORDS_TABLE)
        self.index = store.table(TRACK_INDEX_TABLE)

    def get_record(self, chat_id: str, record_id: str) -> TrackRecord | None:
        entity = self.records.get(str(chat_id), str(record_id))
        if entity is None:
            return None
        return TrackRecord.from_entity(entity)

    def require_record(self, chat_id: str, record_id: str) -> TrackRecord:
        record = self.get_record(chat_id, record_id)
        if record is None:
            raise RecordNotFound(str(chat_id), str(record_id))
        return record

    def get_active(self, chat_id: str, track_id: str) -> TrackRecord | None:
        slot = self.index.get(str(chat_id), str(track_id))
        if slot is None or slot.data.get("state") != SLOT_ACTIVE:
            return None
        record = self.get_record(chat_id, slot.data["record_id"])
        if record is None or not record.is_active:
            return None
        return record

    def is_removed(self, chat_id: str, track_id: str) -> bool:
        slot = self.index.get(str(chat_id), str(track_id))
        return slot is not None and slot.data.get("state") == SLOT_REMOVED

    def all_records(self, chat_id: str) -> list[TrackRecord]:
        return [TrackRecord.from_entity(entity) for entity in self.records.scan(str(chat_id))]

    def list_records(self, chat_id: str, *, skip: int = 0, take: int = 100) -> list[TrackRecord]:
        """Chat history, newest share first."""
        records = self.all_records(chat_id)
        records.sort(key=lambda record: (record.shared_at, record.record_id), reverse=True)
        skip = max(0, int(skip))
        take = max(0, int(take))
        return records[skip : skip + take]

    def records_for_track(self, chat_id: str, track_id: str) -> list[TrackRecord]:
        return [
            record
            for record in self.all_records(chat_id)
            if record.track_id == track_id
        ]

    def records_for_message(self, chat_id: str, message_ref: str) -> list[TrackRecord]:
        return [
            record
            for record in self.all_records(chat_id)
            if record.message_ref == str(message_ref)
        ]

    def record_share(
        self,
        chat_id: str,
        track_id: str,
        sharer: Member,
        message_ref: str | None,
        timestamp: datetime | str,
        *,
        catalog: CatalogEntry | None = None,
    ) -> ShareResult:
        """Record one share of ``track_id`` in ``chat_id``.

        Returns ``CREATED`` with a new active record, ``ALREADY_ACTIVE`` with a
        duplicate tombstone (the active record id is carried along), or
        ``WAS_PREVIOUSLY_REMOVED`` without writing anything.
        """
        chat_id = str(chat_id)
        track_id = str(track_id)
        shared_at = parse_timestamp(timestamp)

        def new_record(*, duplicate: bool) -> TrackRecord:
            return TrackRecord(
                chat_id=chat_id,
                record_id=str(uuid.uuid4()),
                track_id=track_id,
                sharer_id=str(sharer.user_id),
                sharer_name=sharer.display_name,
                sharer_avatar_url=sharer.avatar_url,
                message_ref=None if message_ref is None else str(message_ref),
                shared_at=shared_at,
                track_name=catalog.name if catalog else "",
                artist_name=catalog.artist_name if catalog else "",
                album_name=catalog.album_name if catalog else "",
                album_image_url=catalog.album_image_url if catalog else None,
                is_duplicate=duplicate,
                playlist_status=PlaylistStatus.NOT_APPLICABLE if duplicate else PlaylistStatus.PENDING,
            )

        def attempt() -> ShareResult:
            slot = self.index.get(chat_id, track_id)
            if slot is None:
                record = new_record(duplicate=False)
                self.store.commit(
                    [
                        self.index.write(
                            chat_id,
                            track_id,
                            {"state": SLOT_ACTIVE, "record_id": record.record_id},
                            if_absent=True,
                        ),
                        self.records.write(chat_id, record.record_id, record.to_payload(), if_absent=True),
                    ]
                )
                record.version = 1
                return ShareResult(ShareStatus.CREATED, record, record.record_id)

            if slot.data.get("state") == SLOT_REMOVED:
                return ShareResult(ShareStatus.WAS_PREVIOUSLY_REMOVED, None, None)

            duplicate = new_record(duplicate=True)
            # Re-assert the slot so a concurrent removal turns this into a retry.
            self.store.commit(
                [
                    self.index.write(chat_id, track_id, slot.data, if_version=slot.version),
                    self.records.write(chat_id, duplicate.record_id, duplicate.to_payload(), if_absent=True),
                ]
            )
            duplicate.version = 1
            return ShareResult(ShareStatus.ALREADY_ACTIVE, duplicate, str(slot.data.get("record_id")))

        result = run_with_retry(attempt, label=f"record share {chat_id}/{track_id}")
        logger.info(
            "Share chat=%s track=%s sharer=%s -> %s",
            chat_id,
            track_id,
            sharer.user_id,
            result.status.value,
        )
        return result

    def mark_deleted(
        self,
        chat_id: str,
        record_id: str,
        *,
        playlist_status: PlaylistStatus = PlaylistStatus.REMOVED,
    ) -> TrackRecord:
        """Tombstone a record and retire its track from the chat. Idempotent."""
        chat_id = str(chat_id)
        record_id = str(record_id)

        def attempt() -> TrackRecord:
            record = self.require_record(chat_id, record_id)
            if record.is_deleted:
                return record
            updated = record.evolve(
                is_deleted=True,
                removal_pending=False,
                removal_claim=None,
                removal_claimed_at=None,
                playlist_status=playlist_status,
            )
            writes = [self.records.write(chat_id, record_id, updated.to_payload(), if_version=record.version)]
            if not record.is_duplicate:
                slot = self.index.get(chat_id, record.track_id)
                removed = {"state": SLOT_REMOVED, "record_id": record_id}
                if slot is None:
                    writes.append(self.index.write(chat_id, record.track_id, removed, if_absent=True))
                elif slot.data.get("record_id") == record_id or slot.data.get("state") == SLOT_ACTIVE:
                    writes.append(self.index.write(chat_id, record.track_id, removed, if_version=slot.version))
            versions = self.store.commit(writes)
            updated.version = versions[0]
            return updated

        record = run_with_retry(attempt, label=f"mark deleted {chat_id}/{record_id}")
        logger.info("Track record %s in chat %s marked deleted (track %s)", record_id, chat_id, record.track_id)
        return record

    def set_playlist_status(self, chat_id: str, record_id: str, status: PlaylistStatus) -> TrackRecord:
        """Record the playlist mutator's outcome on a live record; deleted records are left as-is."""
        chat_id = str(chat_id)
        record_id = str(record_id)

        def attempt() -> TrackRecord:
            record = self.require_record(chat_id, record_id)
            if record.is_deleted or record.playlist_status is status:
                return record
            updated = record.evolve(playlist_status=status)
            entity = self.records.put(chat_id, record_id, updated.to_payload(), if_version=record.version)
            updated.version = entity.version
            return updated

        return run_with_retry(attempt, label=f"playlist status {chat_id}/{record_id}")

    def clear_removal_pending(self, chat_id: str, record_id: str, *, claim: str | None = None) -> TrackRecord:
        """Release a removal claim after the playlist removal did not go through.

        With ``claim`` set, a claim that has since changed hands is left alone.
        """
        chat_id = str(chat_id)
        record_id = str(record_id)

        def attempt() -> TrackRecord:
            record = self.require_record(chat_id, record_id)
            if record.is_deleted or not record.removal_pending:
                return record
            if claim is not None and record.removal_claim != claim:
                return record
            updated = record.evolve(removal_pending=False, removal_claim=None, removal_claimed_at=None)
            entity = self.records.put(chat_id, record_id, updated.to_payload(), if_version=record.version)
            updated.version = entity.version
            return updated

        return run_with_retry(attempt, label=f"release removal {chat_id}/{record_id}")
