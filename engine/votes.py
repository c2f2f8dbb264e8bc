"""Vote tallying and threshold-triggered removal.

Votes live in ``track_votes`` under ``(record_id, voter_id)``. A vote row and
the counters on its track record are written in one conditional batch, so the
counters always match the live votes. The batch that first takes
``downvote_count`` to the chat threshold also sets ``removal_pending`` on the
record together with a claim token and timestamp; only the writer that commits
that claim talks to the playlist, which makes removal happen once no matter how
many downvotes race. A claim is only taken over by reconcile once its lease has
run out, again through a conditional write.
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import timedelta

from config.settings import REMOVAL_CLAIM_LEASE_SECONDS
from db.kv_store import KeyValueStore
from engine.chat_settings import ChatSettingsStore
from engine.concurrency import run_with_retry
from engine.errors import RecordNotFound
from engine.ledger import TrackLedger
from engine.models import (
    REJECTED_TRACK_DELETED,
    Member,
    PlaylistStatus,
    RemovalResult,
    RemoveStatus,
    TrackRecord,
    Vote,
    VoteResult,
    VoteStatus,
    VoteType,
    utc_now,
)
from engine.playlist_mutator import PlaylistMutator

VOTES_TABLE = "track_votes"
ERROR_CLAIM_LOST = "removal_claim_lost"

logger = logging.getLogger(__name__)


def _new_claim() -> dict:
    return {"removal_pending": True, "removal_claim": uuid.uuid4().hex, "removal_claimed_at": utc_now()}


@dataclass
class _Tally:
    status: VoteStatus
    record: TrackRecord
    claimed_removal: bool = False
    reason: str | None = None


class VoteTallyEngine:
    def __init__(
        self,
        store: KeyValueStore,
        ledger: TrackLedger,
        chat_settings: ChatSettingsStore,
        mutator: PlaylistMutator,
        *,
        claim_lease_sec: float = REMOVAL_CLAIM_LEASE_SECONDS,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.chat_settings = chat_settings
        self.mutator = mutator
        self.claim_lease = timedelta(seconds=claim_lease_sec)
        self.votes = store.table(VOTES_TABLE)

    def get_vote(self, record_id: str, voter_id: str) -> Vote | None:
        entity = self.votes.get(str(record_id), str(voter_id))
        if entity is None:
            return None
        return Vote.from_entity(entity)

    def list_votes(self, record_id: str) -> list[Vote]:
        return [Vote.from_entity(entity) for entity in self.votes.scan(str(record_id))]

    def apply_vote(
        self,
        chat_id: str,
        record_id: str,
        voter: Member,
        vote_type: VoteType,
        *,
        deadline: float | None = None,
    ) -> VoteResult:
        """Insert, keep or flip ``voter``'s vote on a record.

        Deleted records reject every vote. A vote on a duplicate share counts
        toward the chat's active record for the same track.
        """
        chat_id = str(chat_id)
        voter_id = str(voter.user_id)
        vote_type = VoteType(vote_type)

        def attempt() -> _Tally:
            record = self._target(chat_id, record_id)
            if record.is_deleted:
                return _Tally(VoteStatus.REJECTED, record, reason=REJECTED_TRACK_DELETED)

            existing_entity = self.votes.get(record.record_id, voter_id)
            existing = Vote.from_entity(existing_entity) if existing_entity else None
            if existing is not None and existing.vote_type is vote_type:
                return _Tally(VoteStatus.NOOP, record)

            counts = {"upvote_count": record.upvote_count, "downvote_count": record.downvote_count}
            if existing is not None:
                counts[existing.vote_type.counter_field] -= 1
            counts[vote_type.counter_field] += 1
            updated, claimed = self._with_counts(record, counts)

            now = utc_now()
            vote = Vote(
                record_id=record.record_id,
                voter_id=voter_id,
                vote_type=vote_type,
                voter_name=voter.display_name,
                voter_avatar_url=voter.avatar_url,
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            if existing is None:
                vote_write = self.votes.write(record.record_id, voter_id, vote.to_payload(), if_absent=True)
            else:
                vote_write = self.votes.write(
                    record.record_id, voter_id, vote.to_payload(), if_version=existing_entity.version
                )
            versions = self.store.commit(
                [
                    self.ledger.records.write(chat_id, record.record_id, updated.to_payload(), if_version=record.version),
                    vote_write,
                ]
            )
            updated.version = versions[0]
            return _Tally(VoteStatus.APPLIED, updated, claimed_removal=claimed)

        tally = run_with_retry(attempt, label=f"apply vote {chat_id}/{record_id}/{voter_id}")
        logger.info(
            "Vote %s by %s on record %s in chat %s -> %s (up=%s down=%s)",
            vote_type.value,
            voter_id,
            tally.record.record_id,
            chat_id,
            tally.status.value,
            tally.record.upvote_count,
            tally.record.downvote_count,
        )
        return self._finish(tally, deadline)

    def retract_vote(
        self,
        chat_id: str,
        record_id: str,
        voter_id: str,
        *,
        deadline: float | None = None,
    ) -> VoteResult:
        """Delete ``voter_id``'s vote; ``NOOP`` when there is none."""
        chat_id = str(chat_id)
        voter_id = str(voter_id)

        def attempt() -> _Tally:
            record = self._target(chat_id, record_id)
            if record.is_deleted:
                return _Tally(VoteStatus.REJECTED, record, reason=REJECTED_TRACK_DELETED)
            existing_entity = self.votes.get(record.record_id, voter_id)
            if existing_entity is None:
                return _Tally(VoteStatus.NOOP, record)
            existing = Vote.from_entity(existing_entity)

            counts = {"upvote_count": record.upvote_count, "downvote_count": record.downvote_count}
            counts[existing.vote_type.counter_field] -= 1
            updated, claimed = self._with_counts(record, counts)
            versions = self.store.commit(
                [
                    self.ledger.records.write(chat_id, record.record_id, updated.to_payload(), if_version=record.version),
                    self.votes.delete_write(record.record_id, voter_id, if_version=existing_entity.version),
                ]
            )
            updated.version = versions[0]
            return _Tally(VoteStatus.APPLIED, updated, claimed_removal=claimed)

        tally = run_with_retry(attempt, label=f"retract vote {chat_id}/{record_id}/{voter_id}")
        logger.info(
            "Vote retracted by %s on record %s in chat %s -> %s",
            voter_id,
            tally.record.record_id,
            chat_id,
            tally.status.value,
        )
        return self._finish(tally, deadline)

    def reconcile_counters(self, chat_id: str, record_id: str, *, deadline: float | None = None) -> VoteResult:
        """Recount a record's votes and repair its counters.

        Also resumes a removal that never completed. A record at or over the
        threshold without a claim is claimed here. A record whose claim is
        older than the lease is re-claimed with a new token, so the original
        remover, if it is still running, backs off. A live claim is left to
        its owner.
        """
        chat_id = str(chat_id)

        def attempt() -> _Tally:
            record = self.ledger.require_record(chat_id, record_id)
            if record.is_deleted:
                return _Tally(VoteStatus.NOOP, record)
            tally = Counter(Vote.from_entity(entity).vote_type for entity in self.votes.scan(record.record_id))
            counts = {
                "upvote_count": tally[VoteType.UPVOTE],
                "downvote_count": tally[VoteType.DOWNVOTE],
            }
            updated, claimed = self._with_counts(record, counts)
            takeover = record.removal_pending and self._claim_expired(record)
            if takeover:
                logger.warning(
                    "Taking over abandoned removal claim on record %s in chat %s",
                    record.record_id,
                    chat_id,
                )
                updated = updated.evolve(**_new_claim())
            if (
                updated.upvote_count == record.upvote_count
                and updated.downvote_count == record.downvote_count
                and not claimed
                and not takeover
            ):
                return _Tally(VoteStatus.NOOP, record)
            entity = self.ledger.records.put(chat_id, record.record_id, updated.to_payload(), if_version=record.version)
            updated.version = entity.version
            if counts["upvote_count"] != record.upvote_count or counts["downvote_count"] != record.downvote_count:
                logger.warning(
                    "Repaired counters on record %s in chat %s: up %s->%s down %s->%s",
                    record.record_id,
                    chat_id,
                    record.upvote_count,
                    updated.upvote_count,
                    record.downvote_count,
                    updated.downvote_count,
                )
            return _Tally(VoteStatus.APPLIED, updated, claimed_removal=claimed or takeover)

        return self._finish(run_with_retry(attempt, label=f"reconcile {chat_id}/{record_id}"), deadline)

    def _target(self, chat_id: str, record_id: str) -> TrackRecord:
        record = self.ledger.require_record(chat_id, record_id)
        if not record.is_duplicate:
            return record
        active = self.ledger.get_active(chat_id, record.track_id)
        if active is not None:
            return active
        # Track already retired; surface it as deleted so the vote is rejected.
        return record.evolve(is_deleted=True)

    def _with_counts(self, record: TrackRecord, counts: dict[str, int]) -> tuple[TrackRecord, bool]:
        if counts["upvote_count"] < 0 or counts["downvote_count"] < 0:
            raise ValueError(f"negative vote counter on record {record.record_id}")
        threshold = self.chat_settings.threshold_for(record.chat_id)
        claimed = not record.removal_pending and counts["downvote_count"] >= threshold
        changes = dict(counts)
        if claimed:
            changes.update(_new_claim())
        return record.evolve(**changes), claimed

    def _claim_expired(self, record: TrackRecord) -> bool:
        if record.removal_claimed_at is None:
            return True
        return utc_now() - record.removal_claimed_at >= self.claim_lease

    def _finish(self, tally: _Tally, deadline: float | None) -> VoteResult:
        if not tally.claimed_removal:
            return VoteResult(tally.status, tally.record, tally.reason)
        removal, record = self._remove(tally.record, deadline)
        return VoteResult(tally.status, record, tally.reason, removal)

    def _remove(self, record: TrackRecord, deadline: float | None) -> tuple[RemovalResult, TrackRecord]:
        current = self.ledger.get_record(record.chat_id, record.record_id)
        if current is None:
            raise RecordNotFound(record.chat_id, record.record_id)
        if current.is_deleted:
            return RemovalResult(current.record_id, current.track_id, RemoveStatus.NOT_PRESENT, True), current
        if current.removal_claim != record.removal_claim:
            logger.warning(
                "Removal claim on record %s in chat %s was taken over; leaving it to the new owner",
                current.record_id,
                current.chat_id,
            )
            return (
                RemovalResult(current.record_id, current.track_id, RemoveStatus.FAILED, False, error=ERROR_CLAIM_LOST),
                current,
            )

        settings = self.chat_settings.get(current.chat_id)
        if settings is None or not settings.playlist_id:
            status = RemoveStatus.NOT_PRESENT
        else:
            status = self.mutator.remove(
                settings.playlist_id,
                current.track_id,
                settings.administrator_id,
                deadline=deadline,
            )

        if status in (RemoveStatus.REMOVED, RemoveStatus.NOT_PRESENT):
            deleted = self.ledger.mark_deleted(
                current.chat_id, current.record_id, playlist_status=PlaylistStatus.REMOVED
            )
            logger.info(
                "Track %s retired from chat %s at %s downvotes",
                current.track_id,
                current.chat_id,
                current.downvote_count,
            )
            return RemovalResult(current.record_id, current.track_id, status, True), deleted

        released = self.ledger.clear_removal_pending(current.chat_id, current.record_id, claim=current.removal_claim)
        logger.warning(
            "Removal of track %s from chat %s did not complete (%s); record left active",
            current.track_id,
            current.chat_id,
            status.value,
        )
        return (
            RemovalResult(
                current.record_id,
                current.track_id,
                status,
                False,
                error=f"playlist removal {status.value}",
            ),
            released,
        )

