import sys
import threading
from pathlib import Path

import pytest


# Ensure tests can import project packages regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from db.kv_store import KeyValueStore  # noqa: E402
from engine.curation import CurationEngine  # noqa: E402
from spotify.client import SpotifyAuthError, SpotifyNotFoundError, SpotifyTransientError  # noqa: E402


class _FakeSpotify:
    """In-memory stand-in for ``SpotifyClient`` with call logging."""

    def __init__(self):
        self.lock = threading.Lock()
        self.playlists = {}
        self.unknown_tracks = set()
        self.unavailable = False
        self.rejected_tokens = set()
        self.fail_mutations = False
        self.remove_gate = None
        self.remove_started = threading.Event()
        self.calls = []

    def _log(self, *call):
        with self.lock:
            self.calls.append(call)

    def calls_named(self, name):
        with self.lock:
            return [call for call in self.calls if call[0] == name]

    def _check_token(self, token):
        if token in self.rejected_tokens:
            raise SpotifyAuthError("Spotify rejected the access token (401)", status_code=401)

    def get_track(self, track_id, *, deadline=None):
        self._log("get_track", track_id)
        if self.unavailable:
            raise SpotifyTransientError("Spotify request failed after 4 attempts (status 503)", status_code=503)
        if track_id in self.unknown_tracks:
            raise SpotifyNotFoundError(f"Spotify resource not found: {track_id}", status_code=404)
        return {
            "spotify_track_id": track_id,
            "name": f"Song {track_id}",
            "duration_ms": 215000,
            "preview_url": None,
            "artist_id": f"artist-{track_id}",
            "artist_name": f"Artist {track_id}",
            "album_id": f"album-{track_id}",
            "album_name": f"Album {track_id}",
            "album_image_url": f"https://i.scdn.co/image/{track_id}",
        }

    def get_artist_genres(self, artist_id, *, deadline=None):
        self._log("get_artist_genres", artist_id)
        return ["Indie Rock", "indie  rock", "Shoegaze"]

    def playlist_contains(self, playlist_id, track_id, access_token, *, deadline=None):
        self._log("playlist_contains", playlist_id, track_id)
        self._check_token(access_token)
        with self.lock:
            return track_id in self.playlists.get(playlist_id, [])

    def add_tracks(self, playlist_id, track_ids, access_token, *, deadline=None):
        self._log("add_tracks", playlist_id, tuple(track_ids))
        self._check_token(access_token)
        if self.fail_mutations:
            raise SpotifyTransientError("Spotify request failed after 4 attempts (status 502)", status_code=502)
        with self.lock:
            self.playlists.setdefault(playlist_id, []).extend(track_ids)
        return "snap"

    def remove_tracks(self, playlist_id, track_ids, access_token, *, deadline=None):
        self._log("remove_tracks", playlist_id, tuple(track_ids))
        self._check_token(access_token)
        self.remove_started.set()
        if self.remove_gate is not None:
            self.remove_gate.wait(5)
        if self.fail_mutations:
            raise SpotifyTransientError("Spotify request failed after 4 attempts (status 502)", status_code=502)
        with self.lock:
            items = self.playlists.setdefault(playlist_id, [])
            self.playlists[playlist_id] = [item for item in items if item not in track_ids]
        return "snap"


class _FakeCredentials:
    def __init__(self):
        self.tokens = {}
        self.refreshed_tokens = {}
        self.refresh_calls = []
        self.deadlines = []
        self.expired = set()
        self.saved = {}

    def acquire(self, administrator_id, *, deadline=None):
        if administrator_id in self.expired:
            self.expired.discard(administrator_id)
            return self.refresh(administrator_id, deadline=deadline), True
        return self.tokens.get(administrator_id, f"token-{administrator_id}"), False

    def refresh(self, administrator_id, *, deadline=None):
        self.refresh_calls.append(administrator_id)
        self.deadlines.append(deadline)
        token = self.refreshed_tokens.get(administrator_id, f"refreshed-{administrator_id}")
        self.tokens[administrator_id] = token
        return token

    def save(self, administrator_id, token):
        self.saved[administrator_id] = token
        self.tokens[administrator_id] = token.access_token


@pytest.fixture
def kv_store(tmp_path):
    return KeyValueStore(tmp_path / "playlist_vote.sqlite")


@pytest.fixture
def fake_spotify():
    return _FakeSpotify()


@pytest.fixture
def fake_credentials():
    return _FakeCredentials()


@pytest.fixture
def engine(kv_store, fake_spotify, fake_credentials):
    return CurationEngine(kv_store, fake_spotify, fake_credentials, default_threshold=3)


@pytest.fixture
def configured_engine(engine):
    engine.configure_chat("chat-1", administrator_id="admin-1", playlist_id="playlist-1", downvote_threshold=3)
    return engine
