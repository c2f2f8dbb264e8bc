"""Chronological replay of a chat's historical shares."""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import Callable, Iterable, Iterator

from engine.errors import CurationError
from engine.ledger import TrackLedger
from engine.models import (
    AddStatus,
    HistoryEvent,
    ShareStatus,
    SyncOutcome,
    SyncStatus,
    SyncSummary,
    parse_timestamp,
)
from engine.sharing import SharePipeline
from input.track_links import extract_track_ids

ERROR_NO_TRACK_LINK = "no_track_link"

logger = logging.getLogger(__name__)


class HistorySyncMerger:
    """Feed historical shares through the live share pipeline, in order.

    The merger sends no notifications and does not serialize itself; callers
    run at most one replay per chat and keep live shares out while it runs.
    """

    def __init__(self, pipeline: SharePipeline, ledger: TrackLedger, *, event_timeout_sec: float | None = None) -> None:
        self.pipeline = pipeline
        self.ledger = ledger
        self.event_timeout_sec = event_timeout_sec

    def iter_replay(
        self,
        chat_id: str,
        events: Iterable[HistoryEvent],
        *,
        start_index: int = 0,
        stop_event: threading.Event | None = None,
    ) -> Iterator[SyncOutcome]:
        """Yield one outcome per track link, event by event.

        Events before ``start_index`` are only checked for ordering. The
        event at ``start_index`` of a resumed replay may have been partly
        processed, so tracks it already recorded under the same message are
        skipped rather than recorded twice. Raises ``ValueError`` on the first
        event whose timestamp goes backwards.
        """
        chat_id = str(chat_id)
        start_index = max(0, int(start_index))
        previous: datetime | None = None
        for index, event in enumerate(events):
            timestamp = parse_timestamp(event.timestamp)
            if previous is not None and timestamp < previous:
                raise ValueError(f"history events out of order at index {index}")
            previous = timestamp
            if index < start_index:
                continue
            if stop_event is not None and stop_event.is_set():
                logger.info("History sync for chat %s stopped before event %s", chat_id, index)
                return

            track_ids = _event_track_ids(event)
            if not track_ids:
                yield SyncOutcome(index, None, SyncStatus.FAILED, error=ERROR_NO_TRACK_LINK)
                continue
            resumed = set()
            if index == start_index and start_index > 0 and event.message_ref is not None:
                resumed = self._already_recorded(chat_id, str(event.message_ref))
            for position, track_id in enumerate(track_ids):
                final = position == len(track_ids) - 1
                if track_id in resumed:
                    yield SyncOutcome(index, track_id, SyncStatus.SKIPPED_DUPLICATE, final=final)
                    continue
                yield self._replay_one(chat_id, index, track_id, event, timestamp, final)

    def replay(
        self,
        chat_id: str,
        events: Iterable[HistoryEvent],
        *,
        start_index: int = 0,
        summary: SyncSummary | None = None,
        stop_event: threading.Event | None = None,
        on_checkpoint: Callable[[SyncSummary], None] | None = None,
    ) -> SyncSummary:
        """Drain ``iter_replay`` into a summary whose ``next_index`` is the resume checkpoint."""
        summary = summary or SyncSummary(next_index=start_index)
        summary.next_index = max(summary.next_index, start_index)
        for outcome in self.iter_replay(chat_id, events, start_index=start_index, stop_event=stop_event):
            summary.record(outcome)
            if outcome.final:
                summary.processed_events += 1
                summary.next_index = outcome.index + 1
                if on_checkpoint is not None:
                    on_checkpoint(summary)
        logger.info("History sync for chat %s: %s", chat_id, summary.as_dict())
        return summary

    def _replay_one(
        self,
        chat_id: str,
        index: int,
        track_id: str,
        event: HistoryEvent,
        timestamp: datetime,
        final: bool,
    ) -> SyncOutcome:
        deadline = None
        if self.event_timeout_sec is not None:
            deadline = time.monotonic() + float(self.event_timeout_sec)
        try:
            outcome = self.pipeline.share(
                chat_id,
                track_id,
                event.sharer,
                event.message_ref,
                timestamp,
                deadline=deadline,
            )
        except (CurationError, ValueError) as exc:
            logger.warning("History event %s (%s) in chat %s failed: %s", index, track_id, chat_id, exc)
            return SyncOutcome(index, track_id, SyncStatus.FAILED, error=str(exc), final=final)

        if outcome.share is None:
            return SyncOutcome(index, track_id, SyncStatus.FAILED, error=outcome.error, final=final)
        if outcome.share.status is ShareStatus.ALREADY_ACTIVE:
            return SyncOutcome(index, track_id, SyncStatus.SKIPPED_DUPLICATE, final=final)
        if outcome.share.status is ShareStatus.WAS_PREVIOUSLY_REMOVED:
            return SyncOutcome(index, track_id, SyncStatus.SKIPPED_PREVIOUSLY_REMOVED, final=final)
        if outcome.add_status in (None, AddStatus.ADDED, AddStatus.ALREADY_PRESENT):
            return SyncOutcome(index, track_id, SyncStatus.ADDED, final=final)
        return SyncOutcome(index, track_id, SyncStatus.FAILED, error=outcome.error, final=final)

    def _already_recorded(self, chat_id: str, message_ref: str) -> set[str]:
        return {record.track_id for record in self.ledger.records_for_message(chat_id, message_ref)}


def _event_track_ids(event: HistoryEvent) -> list[str]:
    if event.text:
        return extract_track_ids(event.text)
    track_id = str(event.track_id or "").strip()
    return [track_id] if track_id else []
