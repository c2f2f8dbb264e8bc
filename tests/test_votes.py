from __future__ import annotations

import random
import threading
from collections import Counter
from datetime import datetime, timedelta, timezone

import pytest

from engine.concurrency import set_retry_attempts
from engine.errors import ConcurrencyConflict, RecordNotFound
from engine.models import (
    REJECTED_TRACK_DELETED,
    Member,
    PlaylistStatus,
    RemoveStatus,
    ShareStatus,
    VoteStatus,
    VoteType,
    utc_now,
)

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
UP = VoteType.UPVOTE
DOWN = VoteType.DOWNVOTE


def _share(engine, track_id="T1", chat_id="chat-1"):
    (outcome,) = engine.share_detected(chat_id, f"https://open.spotify.com/track/{track_id}", Member("sharer"), "m1", T0)
    assert outcome.share.status is ShareStatus.CREATED
    return outcome.share.record


def _assert_counters_match_votes(engine, record_id, chat_id="chat-1"):
    record = engine.ledger.get_record(chat_id, record_id)
    tally = Counter(vote.vote_type for vote in engine.votes.list_votes(record_id))
    assert record.upvote_count == tally[UP]
    assert record.downvote_count == tally[DOWN]


def test_first_vote_inserts_and_repeat_is_noop(configured_engine) -> None:
    record = _share(configured_engine)

    first = configured_engine.vote_received("chat-1", record.record_id, Member("u1", "Ana"), UP)
    again = configured_engine.vote_received("chat-1", record.record_id, Member("u1", "Ana"), UP)

    assert first.status is VoteStatus.APPLIED
    assert first.upvote_count == 1
    assert again.status is VoteStatus.NOOP
    assert again.upvote_count == 1
    vote = configured_engine.votes.get_vote(record.record_id, "u1")
    assert vote.voter_name == "Ana"


def test_changing_vote_replaces_in_place(configured_engine) -> None:
    record = _share(configured_engine)

    configured_engine.vote_received("chat-1", record.record_id, Member("U"), UP)
    result = configured_engine.vote_received("chat-1", record.record_id, Member("U"), DOWN)

    assert result.status is VoteStatus.APPLIED
    assert result.upvote_count == 0
    assert result.downvote_count == 1
    votes = configured_engine.votes.list_votes(record.record_id)
    assert len(votes) == 1
    assert votes[0].vote_type is DOWN


def test_retract_deletes_vote_and_decrements(configured_engine) -> None:
    record = _share(configured_engine)
    configured_engine.vote_received("chat-1", record.record_id, Member("u1"), DOWN)

    retracted = configured_engine.vote_retracted("chat-1", record.record_id, "u1")
    again = configured_engine.vote_retracted("chat-1", record.record_id, "u1")

    assert retracted.status is VoteStatus.APPLIED
    assert retracted.downvote_count == 0
    assert again.status is VoteStatus.NOOP
    assert configured_engine.votes.get_vote(record.record_id, "u1") is None


def test_threshold_removes_track_and_blocks_reshare(configured_engine, fake_spotify) -> None:
    record = _share(configured_engine)
    assert fake_spotify.playlists["playlist-1"] == ["T1"]

    results = [
        configured_engine.vote_received("chat-1", record.record_id, Member(f"u{n}"), DOWN) for n in range(3)
    ]

    assert [result.removal_triggered for result in results] == [False, False, True]
    removal = results[-1].removal
    assert removal.status is RemoveStatus.REMOVED
    assert removal.deleted
    assert results[-1].record.is_deleted
    assert results[-1].record.playlist_status is PlaylistStatus.REMOVED
    assert fake_spotify.playlists["playlist-1"] == []
    assert len(fake_spotify.calls_named("remove_tracks")) == 1

    adds_before = len(fake_spotify.calls_named("add_tracks"))
    (reshare,) = configured_engine.share_detected(
        "chat-1", "spotify:track:T1", Member("u4"), "m5", T0
    )
    assert reshare.share.status is ShareStatus.WAS_PREVIOUSLY_REMOVED
    assert len(fake_spotify.calls_named("add_tracks")) == adds_before


def test_upvotes_do_not_offset_downvote_threshold(configured_engine) -> None:
    record = _share(configured_engine)
    for n in range(5):
        configured_engine.vote_received("chat-1", record.record_id, Member(f"fan{n}"), UP)

    results = [
        configured_engine.vote_received("chat-1", record.record_id, Member(f"u{n}"), DOWN) for n in range(3)
    ]

    assert results[-1].removal_triggered
    assert results[-1].record.is_deleted


def test_deleted_record_rejects_every_vote_mutation(configured_engine) -> None:
    record = _share(configured_engine)
    configured_engine.vote_received("chat-1", record.record_id, Member("keeper"), UP)
    for n in range(3):
        configured_engine.vote_received("chat-1", record.record_id, Member(f"u{n}"), DOWN)

    apply = configured_engine.vote_received("chat-1", record.record_id, Member("late"), DOWN)
    retract = configured_engine.vote_retracted("chat-1", record.record_id, "keeper")

    assert apply.status is VoteStatus.REJECTED
    assert apply.reason == REJECTED_TRACK_DELETED
    assert retract.status is VoteStatus.REJECTED
    final = configured_engine.ledger.get_record("chat-1", record.record_id)
    assert (final.upvote_count, final.downvote_count) == (1, 3)


def test_failed_removal_keeps_record_active_and_retries_on_next_downvote(configured_engine, fake_spotify) -> None:
    configured_engine.configure_chat("chat-1", downvote_threshold=2)
    record = _share(configured_engine)
    fake_spotify.fail_mutations = True

    configured_engine.vote_received("chat-1", record.record_id, Member("u1"), DOWN)
    failed = configured_engine.vote_received("chat-1", record.record_id, Member("u2"), DOWN)

    assert failed.removal.status is RemoveStatus.FAILED
    assert not failed.removal.deleted
    assert not failed.record.is_deleted
    assert not failed.record.removal_pending

    fake_spotify.fail_mutations = False
    retried = configured_engine.vote_received("chat-1", record.record_id, Member("u3"), DOWN)

    assert retried.removal.deleted
    assert retried.record.is_deleted


def test_vote_on_duplicate_share_counts_toward_active_record(configured_engine) -> None:
    active = _share(configured_engine)
    (dup,) = configured_engine.share_detected("chat-1", "spotify:track:T1", Member("u9"), "m2", T0)
    assert dup.share.status is ShareStatus.ALREADY_ACTIVE

    result = configured_engine.vote_received("chat-1", dup.share.record.record_id, Member("u1"), UP)

    assert result.record.record_id == active.record_id
    assert result.upvote_count == 1


def test_unknown_record_raises(configured_engine) -> None:
    with pytest.raises(RecordNotFound):
        configured_engine.vote_received("chat-1", "nope", Member("u1"), UP)


def test_random_vote_sequences_keep_one_vote_per_voter_and_exact_counters(configured_engine) -> None:
    configured_engine.configure_chat("chat-1", downvote_threshold=1000)
    record = _share(configured_engine)
    rng = random.Random(20260301)
    voters = [f"u{n}" for n in range(6)]

    for _ in range(200):
        voter = rng.choice(voters)
        if rng.random() < 0.3:
            configured_engine.vote_retracted("chat-1", record.record_id, voter)
        else:
            configured_engine.vote_received("chat-1", record.record_id, Member(voter), rng.choice([UP, DOWN]))

    votes = configured_engine.votes.list_votes(record.record_id)
    assert len({vote.voter_id for vote in votes}) == len(votes)
    _assert_counters_match_votes(configured_engine, record.record_id)


def test_concurrent_downvotes_remove_exactly_once(configured_engine, fake_spotify) -> None:
    set_retry_attempts(50)
    try:
        record = _share(configured_engine)
        barrier = threading.Barrier(8)
        results = []
        lock = threading.Lock()

        def downvote(n):
            barrier.wait()
            result = configured_engine.vote_received("chat-1", record.record_id, Member(f"u{n}"), DOWN)
            with lock:
                results.append(result)

        threads = [threading.Thread(target=downvote, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
    finally:
        set_retry_attempts(8)

    assert sum(1 for result in results if result.removal_triggered) == 1
    assert len(fake_spotify.calls_named("remove_tracks")) == 1
    final = configured_engine.ledger.get_record("chat-1", record.record_id)
    assert final.is_deleted
    assert final.downvote_count >= 3
    applied = [result for result in results if result.status is VoteStatus.APPLIED]
    rejected = [result for result in results if result.status is VoteStatus.REJECTED]
    assert len(applied) + len(rejected) == 8
    assert final.downvote_count == len(applied)
    _assert_counters_match_votes(configured_engine, record.record_id)


def test_reconcile_repairs_counters(configured_engine) -> None:
    record = _share(configured_engine)
    configured_engine.vote_received("chat-1", record.record_id, Member("u1"), UP)
    stored = configured_engine.ledger.get_record("chat-1", record.record_id)
    broken = stored.evolve(upvote_count=7, downvote_count=2)
    configured_engine.ledger.records.put("chat-1", record.record_id, broken.to_payload(), if_version=stored.version)

    report = configured_engine.reconcile("chat-1")

    assert report.repaired == [record.record_id]
    _assert_counters_match_votes(configured_engine, record.record_id)


def test_reconcile_finishes_interrupted_removal(configured_engine, fake_spotify) -> None:
    record = _share(configured_engine)
    stored = configured_engine.ledger.get_record("chat-1", record.record_id)
    stuck = stored.evolve(removal_pending=True)
    configured_engine.ledger.records.put("chat-1", record.record_id, stuck.to_payload(), if_version=stored.version)

    report = configured_engine.reconcile("chat-1")

    assert len(report.removals) == 1
    assert report.removals[0].deleted
    assert configured_engine.ledger.get_record("chat-1", record.record_id).is_deleted
    assert fake_spotify.playlists["playlist-1"] == []


def test_reconcile_leaves_live_removal_claim_to_its_owner(configured_engine, fake_spotify) -> None:
    record = _share(configured_engine)
    configured_engine.vote_received("chat-1", record.record_id, Member("u1"), DOWN)
    configured_engine.vote_received("chat-1", record.record_id, Member("u2"), DOWN)
    fake_spotify.remove_gate = threading.Event()
    results = []

    voter = threading.Thread(
        target=lambda: results.append(
            configured_engine.vote_received("chat-1", record.record_id, Member("u3"), DOWN)
        )
    )
    voter.start()
    try:
        assert fake_spotify.remove_started.wait(5)
        report = configured_engine.reconcile("chat-1")
    finally:
        fake_spotify.remove_gate.set()
        voter.join()

    assert report.removals == []
    assert results[0].removal_triggered
    assert len(fake_spotify.calls_named("remove_tracks")) == 1
    assert configured_engine.ledger.get_record("chat-1", record.record_id).is_deleted


def test_reconcile_takes_over_expired_removal_claim(configured_engine, fake_spotify) -> None:
    record = _share(configured_engine)
    stored = configured_engine.ledger.get_record("chat-1", record.record_id)
    stale = stored.evolve(removal_pending=True, removal_claim="old", removal_claimed_at=utc_now() - timedelta(hours=1))
    configured_engine.ledger.records.put("chat-1", record.record_id, stale.to_payload(), if_version=stored.version)

    report = configured_engine.reconcile("chat-1")

    assert len(report.removals) == 1
    assert report.removals[0].deleted
    final = configured_engine.ledger.get_record("chat-1", record.record_id)
    assert final.is_deleted
    assert final.removal_claim is None
    assert len(fake_spotify.calls_named("remove_tracks")) == 1


def test_releasing_removal_needs_the_matching_claim(configured_engine) -> None:
    record = _share(configured_engine)
    stored = configured_engine.ledger.get_record("chat-1", record.record_id)
    claimed = stored.evolve(removal_pending=True, removal_claim="new", removal_claimed_at=utc_now())
    configured_engine.ledger.records.put("chat-1", record.record_id, claimed.to_payload(), if_version=stored.version)

    kept = configured_engine.ledger.clear_removal_pending("chat-1", record.record_id, claim="old")
    assert kept.removal_pending
    assert kept.removal_claim == "new"

    released = configured_engine.ledger.clear_removal_pending("chat-1", record.record_id, claim="new")
    assert not released.removal_pending
    assert released.removal_claim is None


def test_conflict_on_one_link_keeps_other_outcomes(configured_engine, fake_spotify, monkeypatch) -> None:
    share = configured_engine.pipeline.share

    def _share_or_conflict(chat_id, track_id, *args, **kwargs):
        if track_id == "T2":
            raise ConcurrencyConflict("retries exhausted")
        return share(chat_id, track_id, *args, **kwargs)

    monkeypatch.setattr(configured_engine.pipeline, "share", _share_or_conflict)

    outcomes = configured_engine.share_detected(
        "chat-1", "spotify:track:T1 spotify:track:T2", Member("sharer"), "m1", T0
    )

    assert [outcome.track_id for outcome in outcomes] == ["T1", "T2"]
    assert outcomes[0].share.status is ShareStatus.CREATED
    assert outcomes[1].share is None
    assert outcomes[1].error == "concurrency_conflict"
    assert fake_spotify.playlists["playlist-1"] == ["T1"]
