"""Entry points the webhook and command handlers call into."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable

from config.settings import DEFAULT_DOWNVOTE_THRESHOLD
from db.kv_store import KeyValueStore
from engine.catalog import MetadataNormalizer
from engine.chat_settings import ChatSettingsStore
from engine.concurrency import set_retry_attempts
from engine.core import conflict_retry_attempts, default_threshold, spotify_settings
from engine.errors import ConcurrencyConflict
from engine.history_sync import HistorySyncMerger
from engine.ledger import TrackLedger
from engine.models import (
    AddStatus,
    ChatSettings,
    HistoryEvent,
    Member,
    PlaylistStatus,
    RemovalResult,
    SyncSummary,
    TrackRecord,
    TrackShareOutcome,
    VoteResult,
    VoteStatus,
    VoteType,
)
from engine.playlist_mutator import CredentialProvider, PlaylistMutator
from engine.sharing import ERROR_CONCURRENCY_CONFLICT, SharePipeline
from engine.votes import VoteTallyEngine
from input.track_links import extract_track_ids
from spotify.client import SpotifyClient
from spotify.oauth_store import SpotifyOAuthStore

_RETRYABLE_PLAYLIST_STATUS = {PlaylistStatus.PENDING, PlaylistStatus.FAILED, PlaylistStatus.AUTH_EXPIRED}


@dataclass
class ReconcileReport:
    checked: int = 0
    repaired: list[str] = field(default_factory=list)
    removals: list[RemovalResult] = field(default_factory=list)
    readded: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "checked": self.checked,
            "repaired": list(self.repaired),
            "removals": [
                {
                    "record_id": removal.record_id,
                    "track_id": removal.track_id,
                    "status": removal.status.value,
                    "deleted": removal.deleted,
                }
                for removal in self.removals
            ],
            "readded": list(self.readded),
        }


def _deadline(timeout_sec: float | None) -> float | None:
    if timeout_sec is None:
        return None
    return time.monotonic() + float(timeout_sec)


class CurationEngine:
    def __init__(
        self,
        store: KeyValueStore,
        spotify_client,
        credential_provider: CredentialProvider,
        *,
        default_threshold: int = DEFAULT_DOWNVOTE_THRESHOLD,
        event_timeout_sec: float | None = None,
    ) -> None:
        self.store = store
        self.chat_settings = ChatSettingsStore(store, default_threshold=default_threshold)
        self.normalizer = MetadataNormalizer(store, spotify_client)
        self.ledger = TrackLedger(store)
        self.mutator = PlaylistMutator(spotify_client, credential_provider)
        self.pipeline = SharePipeline(self.normalizer, self.ledger, self.chat_settings, self.mutator)
        self.votes = VoteTallyEngine(store, self.ledger, self.chat_settings, self.mutator)
        self.history = HistorySyncMerger(self.pipeline, self.ledger, event_timeout_sec=event_timeout_sec)

    def configure_chat(self, chat_id: str, **changes) -> ChatSettings:
        return self.chat_settings.configure(chat_id, **changes)

    def share_detected(
        self,
        chat_id: str,
        raw_text: str,
        sharer: Member,
        message_ref: str | None,
        timestamp: datetime | str,
        *,
        timeout_sec: float | None = None,
    ) -> list[TrackShareOutcome]:
        """One outcome per distinct track link in ``raw_text``, in message order."""
        deadline = _deadline(timeout_sec)
        outcomes = []
        for track_id in extract_track_ids(raw_text):
            try:
                outcome = self.pipeline.share(chat_id, track_id, sharer, message_ref, timestamp, deadline=deadline)
            except ConcurrencyConflict as exc:
                logging.warning("Share of %s in chat %s failed: %s", track_id, chat_id, exc)
                outcome = TrackShareOutcome(track_id, error=ERROR_CONCURRENCY_CONFLICT)
            outcomes.append(outcome)
        return outcomes

    def vote_received(
        self,
        chat_id: str,
        record_id: str,
        voter: Member,
        vote_type: VoteType,
        *,
        timeout_sec: float | None = None,
    ) -> VoteResult:
        return self.votes.apply_vote(chat_id, record_id, voter, vote_type, deadline=_deadline(timeout_sec))

    def vote_retracted(
        self,
        chat_id: str,
        record_id: str,
        voter_id: str,
        *,
        timeout_sec: float | None = None,
    ) -> VoteResult:
        return self.votes.retract_vote(chat_id, record_id, voter_id, deadline=_deadline(timeout_sec))

    def trigger_history_sync(
        self,
        chat_id: str,
        events: Iterable[HistoryEvent],
        *,
        start_index: int = 0,
        summary: SyncSummary | None = None,
        stop_event: threading.Event | None = None,
        on_checkpoint: Callable[[SyncSummary], None] | None = None,
    ) -> SyncSummary:
        return self.history.replay(
            chat_id,
            events,
            start_index=start_index,
            summary=summary,
            stop_event=stop_event,
            on_checkpoint=on_checkpoint,
        )

    def list_records(self, chat_id: str, *, skip: int = 0, take: int = 100) -> list[TrackRecord]:
        return self.ledger.list_records(chat_id, skip=skip, take=take)

    def reconcile(self, chat_id: str, *, timeout_sec: float | None = None) -> ReconcileReport:
        """Repair counters, finish interrupted removals and retry failed playlist adds."""
        chat_id = str(chat_id)
        report = ReconcileReport()
        settings = self.chat_settings.get(chat_id)
        for record in self.ledger.all_records(chat_id):
            if record.is_deleted or record.is_duplicate:
                continue
            report.checked += 1
            result = self.votes.reconcile_counters(chat_id, record.record_id, deadline=_deadline(timeout_sec))
            if result.status is VoteStatus.APPLIED and (
                result.upvote_count != record.upvote_count or result.downvote_count != record.downvote_count
            ):
                report.repaired.append(record.record_id)
            if result.removal is not None:
                report.removals.append(result.removal)
                if result.removal.deleted:
                    continue
            if settings is None or not settings.playlist_id:
                continue
            current = self.ledger.get_record(chat_id, record.record_id)
            if current is None or not current.is_active or current.playlist_status not in _RETRYABLE_PLAYLIST_STATUS:
                continue
            if current.removal_pending:
                continue
            add_status = self.mutator.add(
                settings.playlist_id,
                current.track_id,
                settings.administrator_id,
                deadline=_deadline(timeout_sec),
            )
            self.ledger.set_playlist_status(chat_id, current.record_id, PlaylistStatus(add_status.value))
            if add_status in (AddStatus.ADDED, AddStatus.ALREADY_PRESENT):
                report.readded.append(current.record_id)
        logging.info("Reconciled chat %s: %s", chat_id, report.as_dict())
        return report


def build_engine(config: dict, db_path: str) -> CurationEngine:
    """Wire the engine against SQLite at ``db_path`` and the Spotify credentials in ``config``."""
    set_retry_attempts(conflict_retry_attempts(config))
    spotify = spotify_settings(config)
    client = SpotifyClient(**spotify)
    provider = SpotifyOAuthStore(
        db_path,
        client_id=spotify["client_id"] or "",
        client_secret=spotify["client_secret"] or "",
    )
    return CurationEngine(
        KeyValueStore(db_path),
        client,
        provider,
        default_threshold=default_threshold(config),
        event_timeout_sec=spotify["timeout_sec"] * 3,
    )
