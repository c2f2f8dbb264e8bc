from __future__ import annotations

from engine.errors import InvalidRefreshToken, UpstreamUnavailable
from engine.models import AddStatus, RemoveStatus
from engine.playlist_mutator import PlaylistMutator


def test_add_then_add_again_reports_already_present(fake_spotify, fake_credentials) -> None:
    mutator = PlaylistMutator(fake_spotify, fake_credentials)

    assert mutator.add("pl", "T1", "admin") is AddStatus.ADDED
    assert mutator.add("pl", "T1", "admin") is AddStatus.ALREADY_PRESENT
    assert fake_spotify.playlists["pl"] == ["T1"]
    assert len(fake_spotify.calls_named("add_tracks")) == 1


def test_remove_absent_track_reports_not_present(fake_spotify, fake_credentials) -> None:
    mutator = PlaylistMutator(fake_spotify, fake_credentials)
    fake_spotify.playlists["pl"] = ["T1"]

    assert mutator.remove("pl", "T1", "admin") is RemoveStatus.REMOVED
    assert mutator.remove("pl", "T1", "admin") is RemoveStatus.NOT_PRESENT
    assert len(fake_spotify.calls_named("remove_tracks")) == 1


def test_rejected_token_is_refreshed_once_and_call_retried(fake_spotify, fake_credentials) -> None:
    fake_spotify.rejected_tokens.add("token-admin")
    mutator = PlaylistMutator(fake_spotify, fake_credentials)

    assert mutator.add("pl", "T1", "admin") is AddStatus.ADDED
    assert fake_credentials.refresh_calls == ["admin"]


def test_persistent_auth_failure_surfaces_auth_expired(fake_spotify, fake_credentials) -> None:
    fake_spotify.rejected_tokens.update({"token-admin", "refreshed-admin"})
    mutator = PlaylistMutator(fake_spotify, fake_credentials)

    assert mutator.remove("pl", "T1", "admin") is RemoveStatus.AUTH_EXPIRED
    assert fake_credentials.refresh_calls == ["admin"]


def test_invalid_refresh_token_surfaces_auth_expired(fake_spotify, fake_credentials) -> None:
    fake_spotify.rejected_tokens.add("token-admin")

    def _refresh(administrator_id, *, deadline=None):
        raise InvalidRefreshToken(administrator_id)

    fake_credentials.refresh = _refresh
    mutator = PlaylistMutator(fake_spotify, fake_credentials)

    assert mutator.add("pl", "T1", "admin") is AddStatus.AUTH_EXPIRED


def test_transient_failures_are_reported_as_failed(fake_spotify, fake_credentials) -> None:
    fake_spotify.fail_mutations = True
    mutator = PlaylistMutator(fake_spotify, fake_credentials)

    assert mutator.add("pl", "T1", "admin") is AddStatus.FAILED


def test_refresh_outage_is_failed_not_auth_expired(fake_spotify, fake_credentials) -> None:
    fake_spotify.rejected_tokens.add("token-admin")

    def _refresh(administrator_id, *, deadline=None):
        raise UpstreamUnavailable("spotify refresh failed: status=503")

    fake_credentials.refresh = _refresh
    mutator = PlaylistMutator(fake_spotify, fake_credentials)

    assert mutator.add("pl", "T1", "admin") is AddStatus.FAILED


def test_token_renewed_on_hand_out_counts_as_the_one_refresh(fake_spotify, fake_credentials) -> None:
    fake_credentials.expired.add("admin")
    fake_spotify.rejected_tokens.add("refreshed-admin")
    mutator = PlaylistMutator(fake_spotify, fake_credentials)

    assert mutator.add("pl", "T1", "admin") is AddStatus.AUTH_EXPIRED
    assert fake_credentials.refresh_calls == ["admin"]


def test_refresh_carries_the_caller_deadline(fake_spotify, fake_credentials) -> None:
    fake_spotify.rejected_tokens.add("token-admin")
    mutator = PlaylistMutator(fake_spotify, fake_credentials)

    assert mutator.add("pl", "T1", "admin", deadline=12345.0) is AddStatus.ADDED
    assert fake_credentials.deadlines == [12345.0]
