from __future__ import annotations

import time

import pytest

from engine.errors import AuthExpired, InvalidRefreshToken, UpstreamUnavailable
from spotify.client import SpotifyAPIError, SpotifyTransientError
from spotify.oauth_store import SpotifyOAuthStore, SpotifyOAuthToken


def _store(tmp_path):
    return SpotifyOAuthStore(tmp_path / "oauth_refresh.sqlite", client_id="cid", client_secret="secret")


def test_get_access_token_returns_original_when_not_expired(tmp_path) -> None:
    store = _store(tmp_path)
    store.save(
        "admin-1",
        SpotifyOAuthToken(
            access_token="access-current",
            refresh_token="refresh-current",
            expires_at=int(time.time()) + 3600,
            scope="playlist-modify-public",
        ),
    )

    assert store.get_access_token("admin-1") == "access-current"


def test_tokens_are_kept_per_administrator(tmp_path) -> None:
    store = _store(tmp_path)
    for admin in ("admin-1", "admin-2"):
        store.save(admin, SpotifyOAuthToken(f"access-{admin}", f"refresh-{admin}", int(time.time()) + 3600, ""))

    assert store.get_access_token("admin-2") == "access-admin-2"
    assert store.load("admin-1").refresh_token == "refresh-admin-1"


def test_expired_token_is_refreshed_and_persisted(tmp_path, monkeypatch) -> None:
    store = _store(tmp_path)
    store.save(
        "admin-1",
        SpotifyOAuthToken(
            access_token="old-access",
            refresh_token="old-refresh",
            expires_at=int(time.time()) - 10,
            scope="playlist-modify-public",
        ),
    )
    seen = {}

    def _refresh(client_id, client_secret, refresh_token, timeout_sec=None):
        seen.update(client_id=client_id, client_secret=client_secret, refresh_token=refresh_token)
        return {
            "access_token": "new-access",
            "refresh_token": "new-refresh",
            "expires_in": 3600,
            "scope": "playlist-modify-public playlist-modify-private",
        }

    monkeypatch.setattr("spotify.oauth_store.refresh_access_token", _refresh)

    assert store.get_access_token("admin-1") == "new-access"
    assert seen == {"client_id": "cid", "client_secret": "secret", "refresh_token": "old-refresh"}
    persisted = store.load("admin-1")
    assert persisted.refresh_token == "new-refresh"
    assert persisted.scope == "playlist-modify-public playlist-modify-private"
    assert persisted.expires_at > int(time.time())


def test_refresh_keeps_refresh_token_when_spotify_omits_it(tmp_path, monkeypatch) -> None:
    store = _store(tmp_path)
    store.save("admin-1", SpotifyOAuthToken("a", "keep-me", int(time.time()) + 3600, "scope"))
    monkeypatch.setattr(
        "spotify.oauth_store.refresh_access_token",
        lambda client_id, client_secret, refresh_token, timeout_sec=None: {"access_token": "b", "expires_in": 3600},
    )

    assert store.refresh("admin-1") == "b"
    assert store.load("admin-1").refresh_token == "keep-me"


def test_rejected_refresh_clears_token(tmp_path, monkeypatch) -> None:
    store = _store(tmp_path)
    store.save("admin-1", SpotifyOAuthToken("expired", "revoked", int(time.time()) - 10, ""))

    def _reject(client_id, client_secret, refresh_token, timeout_sec=None):
        raise SpotifyAPIError("spotify refresh failed: invalid_grant", status_code=400)

    monkeypatch.setattr("spotify.oauth_store.refresh_access_token", _reject)

    with pytest.raises(InvalidRefreshToken):
        store.get_access_token("admin-1")
    assert store.load("admin-1") is None


def test_refresh_outage_keeps_token(tmp_path, monkeypatch) -> None:
    store = _store(tmp_path)
    store.save("admin-1", SpotifyOAuthToken("expired", "still-good", int(time.time()) - 10, ""))

    def _outage(client_id, client_secret, refresh_token, timeout_sec=None):
        raise SpotifyTransientError("spotify refresh failed: status=503", status_code=503)

    monkeypatch.setattr("spotify.oauth_store.refresh_access_token", _outage)

    with pytest.raises(UpstreamUnavailable):
        store.refresh("admin-1")
    assert store.load("admin-1").refresh_token == "still-good"


def test_unlinked_administrator_is_auth_expired(tmp_path) -> None:
    store = _store(tmp_path)

    with pytest.raises(AuthExpired):
        store.get_access_token("nobody")


def test_refresh_timeout_is_capped_by_deadline(tmp_path, monkeypatch) -> None:
    store = _store(tmp_path)
    store.save("admin-1", SpotifyOAuthToken("expired", "refresh", int(time.time()) - 10, ""))
    timeouts = []

    def _refresh(client_id, client_secret, refresh_token, timeout_sec=None):
        timeouts.append(timeout_sec)
        return {"access_token": "fresh", "expires_in": 3600}

    monkeypatch.setattr("spotify.oauth_store.refresh_access_token", _refresh)

    assert store.refresh("admin-1", deadline=time.monotonic() + 2) == "fresh"
    assert len(timeouts) == 1
    assert 0 < timeouts[0] <= 2


def test_refresh_past_deadline_skips_spotify(tmp_path, monkeypatch) -> None:
    store = _store(tmp_path)
    store.save("admin-1", SpotifyOAuthToken("expired", "refresh", int(time.time()) - 10, ""))
    calls = []
    monkeypatch.setattr(
        "spotify.oauth_store.refresh_access_token",
        lambda *args, **kwargs: calls.append(kwargs),
    )

    with pytest.raises(UpstreamUnavailable):
        store.refresh("admin-1", deadline=time.monotonic() - 1)
    assert calls == []
    assert store.load("admin-1").refresh_token == "refresh"


def test_acquire_reports_whether_it_refreshed(tmp_path, monkeypatch) -> None:
    store = _store(tmp_path)
    store.save("admin-1", SpotifyOAuthToken("current", "refresh", int(time.time()) + 3600, ""))
    store.save("admin-2", SpotifyOAuthToken("expired", "refresh", int(time.time()) - 10, ""))
    monkeypatch.setattr(
        "spotify.oauth_store.refresh_access_token",
        lambda client_id, client_secret, refresh_token, timeout_sec=None: {"access_token": "fresh", "expires_in": 3600},
    )

    assert store.acquire("admin-1") == ("current", False)
    assert store.acquire("admin-2") == ("fresh", True)
