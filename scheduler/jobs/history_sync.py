"""Scheduler job that replays a chat's share history off the request path."""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Iterable
from uuid import uuid4

from apscheduler.triggers.date import DateTrigger

from db.kv_store import KeyValueStore
from engine.models import HistoryEvent, SyncSummary, parse_timestamp

CHECKPOINT_TABLE = "sync_checkpoints"
_CHECKPOINT_PARTITION = "HISTORY_SYNC"
HISTORY_SYNC_JOB_PREFIX = "history_sync"

STATE_SCHEDULED = "scheduled"
STATE_RUNNING = "running"
STATE_COMPLETED = "completed"
STATE_STOPPED = "stopped"
STATE_FAILED = "failed"


class SyncAlreadyRunning(RuntimeError):
    def __init__(self, chat_id: str) -> None:
        super().__init__(f"history sync already running for chat {chat_id}")
        self.chat_id = chat_id


def order_events(events: Iterable[HistoryEvent]) -> list[HistoryEvent]:
    """Sort by timestamp; events sharing a timestamp keep their input order."""
    return sorted(events, key=lambda event: parse_timestamp(event.timestamp))


def events_fingerprint(events: list[HistoryEvent]) -> str:
    rows = [
        [
            parse_timestamp(event.timestamp).isoformat(),
            event.message_ref,
            event.track_id,
            event.text,
            str(event.sharer.user_id),
        ]
        for event in events
    ]
    return hashlib.sha256(json.dumps(rows, sort_keys=True).encode("utf-8")).hexdigest()


class HistorySyncJobRunner:
    """Single-flight history sync per chat with a persisted checkpoint.

    The per-chat lock is taken when a sync is submitted and released by the
    job when it finishes, so ``is_running`` is true for the whole window in
    which live shares must stay out. A sync resubmitted with the same events
    resumes from the stored ``next_index`` unless ``restart`` is set.
    """

    def __init__(self, engine, store: KeyValueStore, scheduler=None) -> None:
        self.engine = engine
        self.checkpoints = store.table(CHECKPOINT_TABLE)
        self.scheduler = scheduler
        self._locks: dict[str, threading.Lock] = {}
        self._locks_lock = threading.Lock()
        self._stop_events: dict[str, threading.Event] = {}

    def _get_chat_lock(self, chat_id: str) -> threading.Lock:
        with self._locks_lock:
            lock = self._locks.get(chat_id)
            if not lock:
                lock = threading.Lock()
                self._locks[chat_id] = lock
            return lock

    def is_running(self, chat_id: str) -> bool:
        return self._get_chat_lock(str(chat_id)).locked()

    def get_status(self, chat_id: str) -> dict[str, Any] | None:
        entity = self.checkpoints.get(_CHECKPOINT_PARTITION, str(chat_id))
        if entity is None:
            return None
        status = dict(entity.data)
        status["running"] = self.is_running(chat_id)
        return status

    def stop(self, chat_id: str) -> bool:
        stop_event = self._stop_events.get(str(chat_id))
        if stop_event is None:
            return False
        stop_event.set()
        return True

    def submit(self, chat_id: str, events: Iterable[HistoryEvent], *, restart: bool = False) -> dict[str, Any]:
        """Queue a sync as a one-shot scheduler job; runs inline without a scheduler."""
        chat_id = str(chat_id)
        ordered = order_events(events)
        lock = self._get_chat_lock(chat_id)
        if not lock.acquire(blocking=False):
            raise SyncAlreadyRunning(chat_id)
        try:
            summary, fingerprint = self._starting_point(chat_id, ordered, restart=restart)
            self._save(chat_id, STATE_SCHEDULED, summary, fingerprint, len(ordered))
            self._stop_events[chat_id] = threading.Event()
            if self.scheduler is None:
                self._run_locked(chat_id, ordered, summary, fingerprint, lock)
            else:
                self.scheduler.add_job(
                    self._run_locked,
                    trigger=DateTrigger(run_date=datetime.now(timezone.utc)),
                    args=[chat_id, ordered, summary, fingerprint, lock],
                    id=f"{HISTORY_SYNC_JOB_PREFIX}_{chat_id}_{uuid4()}",
                    replace_existing=False,
                    max_instances=1,
                    misfire_grace_time=300,
                )
        except Exception:
            if lock.locked():
                lock.release()
            raise
        return self.get_status(chat_id) or {}

    def _starting_point(self, chat_id: str, events: list[HistoryEvent], *, restart: bool) -> tuple[SyncSummary, str]:
        fingerprint = events_fingerprint(events)
        previous = self.checkpoints.get(_CHECKPOINT_PARTITION, chat_id)
        if (
            not restart
            and previous is not None
            and previous.data.get("fingerprint") == fingerprint
            and previous.data.get("state") != STATE_COMPLETED
        ):
            summary = SyncSummary.from_dict(previous.data.get("summary"))
            logging.info("Resuming history sync for chat %s at event %s", chat_id, summary.next_index)
            return summary, fingerprint
        return SyncSummary(), fingerprint

    def _run_locked(
        self,
        chat_id: str,
        events: list[HistoryEvent],
        summary: SyncSummary,
        fingerprint: str,
        lock: threading.Lock,
    ) -> None:
        stop_event = self._stop_events.get(chat_id) or threading.Event()
        total = len(events)
        try:
            self._save(chat_id, STATE_RUNNING, summary, fingerprint, total)
            summary = self.engine.trigger_history_sync(
                chat_id,
                events,
                start_index=summary.next_index,
                summary=summary,
                stop_event=stop_event,
                on_checkpoint=lambda current: self._save(chat_id, STATE_RUNNING, current, fingerprint, total),
            )
            state = STATE_STOPPED if summary.next_index < total else STATE_COMPLETED
            self._save(chat_id, state, summary, fingerprint, total)
            logging.info("History sync for chat %s %s: %s", chat_id, state, summary.as_dict())
        except Exception as exc:
            logging.exception("History sync for chat %s failed", chat_id)
            self._save(chat_id, STATE_FAILED, summary, fingerprint, total, error=str(exc))
        finally:
            self._stop_events.pop(chat_id, None)
            lock.release()

    def _save(
        self,
        chat_id: str,
        state: str,
        summary: SyncSummary,
        fingerprint: str,
        total: int,
        *,
        error: str | None = None,
    ) -> None:
        self.checkpoints.put(
            _CHECKPOINT_PARTITION,
            chat_id,
            {
                "chat_id": chat_id,
                "state": state,
                "total_events": total,
                "summary": summary.as_dict(),
                "fingerprint": fingerprint,
                "error": error,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            },
        )
