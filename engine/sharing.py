"""Single-track share pipeline: normalize, record, then add to the playlist when new."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime

from engine.catalog import MetadataNormalizer
from engine.chat_settings import ChatSettingsStore
from engine.errors import TrackNotFound, UpstreamUnavailable
from engine.ledger import TrackLedger
from engine.models import (
    AddStatus,
    Member,
    PlaylistStatus,
    ShareStatus,
    TrackShareOutcome,
)
from engine.playlist_mutator import PlaylistMutator

ERROR_TRACK_NOT_FOUND = "track_not_found"
ERROR_UPSTREAM_UNAVAILABLE = "upstream_unavailable"
ERROR_CONCURRENCY_CONFLICT = "concurrency_conflict"


class SharePipeline:
    def __init__(
        self,
        normalizer: MetadataNormalizer,
        ledger: TrackLedger,
        chat_settings: ChatSettingsStore,
        mutator: PlaylistMutator,
    ) -> None:
        self.normalizer = normalizer
        self.ledger = ledger
        self.chat_settings = chat_settings
        self.mutator = mutator

    def share(
        self,
        chat_id: str,
        track_id: str,
        sharer: Member,
        message_ref: str | None,
        timestamp: datetime | str,
        *,
        deadline: float | None = None,
    ) -> TrackShareOutcome:
        """Run one track through the pipeline.

        Only a ``CREATED`` share reaches the playlist; duplicates and
        previously removed tracks never call the mutator. A catalog failure
        stops before the ledger is touched.
        """
        try:
            catalog = self.normalizer.ensure(track_id, deadline=deadline)
        except TrackNotFound:
            return TrackShareOutcome(track_id, error=ERROR_TRACK_NOT_FOUND)
        except UpstreamUnavailable as exc:
            logging.warning("Share of %s in chat %s skipped: %s", track_id, chat_id, exc)
            return TrackShareOutcome(track_id, error=ERROR_UPSTREAM_UNAVAILABLE)

        share = self.ledger.record_share(chat_id, track_id, sharer, message_ref, timestamp, catalog=catalog)
        if share.status is not ShareStatus.CREATED:
            return TrackShareOutcome(track_id, share=share, catalog=catalog)

        settings = self.chat_settings.get(chat_id)
        if settings is None or not settings.playlist_id:
            logging.info("Chat %s has no playlist configured; track %s recorded only", chat_id, track_id)
            return TrackShareOutcome(track_id, share=share, catalog=catalog)

        add_status = self.mutator.add(
            settings.playlist_id,
            track_id,
            settings.administrator_id,
            deadline=deadline,
        )
        record = self.ledger.set_playlist_status(chat_id, share.record.record_id, PlaylistStatus(add_status.value))
        share = replace(share, record=record)
        error = None if add_status in (AddStatus.ADDED, AddStatus.ALREADY_PRESENT) else add_status.value
        return TrackShareOutcome(track_id, share=share, add_status=add_status, catalog=catalog, error=error)
