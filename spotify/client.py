"""Spotify Web API client for track facts and playlist membership changes."""

from __future__ import annotations

import base64
import logging
import os
import time
import urllib.parse
from typing import Any, TypedDict

import requests

from config.settings import (
    SPOTIFY_MAX_RETRIES,
    SPOTIFY_RETRY_BASE_DELAY_SECONDS,
    SPOTIFY_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class SpotifyAPIError(RuntimeError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SpotifyAuthError(SpotifyAPIError):
    """401 for a user access token; the caller decides whether to refresh."""


class SpotifyNotFoundError(SpotifyAPIError):
    pass


class SpotifyTransientError(SpotifyAPIError):
    """Rate limiting, 5xx or network failure that outlived the retries."""


class NormalizedTrack(TypedDict):
    """Normalized Spotify track facts."""

    spotify_track_id: str
    name: str
    duration_ms: int
    preview_url: str | None
    artist_id: str
    artist_name: str
    album_id: str
    album_name: str
    album_image_url: str | None


class SpotifyClient:
    """Client for reading tracks and mutating playlists on the Spotify Web API."""

    _TOKEN_URL = "https://accounts.spotify.com/api/token"
    _API_BASE = "https://api.spotify.com/v1"

    def __init__(
        self,
        *,
        client_id: str | None = None,
        client_secret: str | None = None,
        timeout_sec: float = SPOTIFY_TIMEOUT_SECONDS,
        max_retries: int = SPOTIFY_MAX_RETRIES,
        retry_base_delay: float = SPOTIFY_RETRY_BASE_DELAY_SECONDS,
        session: requests.Session | None = None,
    ) -> None:
        self.client_id = client_id or os.environ.get("SPOTIFY_CLIENT_ID")
        self.client_secret = client_secret or os.environ.get("SPOTIFY_CLIENT_SECRET")
        self.timeout_sec = float(timeout_sec)
        self.max_retries = max(0, int(max_retries))
        self.retry_base_delay = float(retry_base_delay)
        self.session = session or requests.Session()
        self._app_token: str | None = None
        self._app_token_expire_at: float = 0.0

    def _get_app_token(self) -> str:
        """Client-credentials token used for read-only catalog requests."""
        if not self.client_id or not self.client_secret:
            raise SpotifyAPIError("Spotify credentials are required")

        now = time.time()
        if self._app_token and now < self._app_token_expire_at:
            return self._app_token

        auth_payload = f"{self.client_id}:{self.client_secret}".encode("utf-8")
        auth_header = base64.b64encode(auth_payload).decode("ascii")
        try:
            response = self.session.request(
                "POST",
                self._TOKEN_URL,
                data={"grant_type": "client_credentials"},
                headers={"Authorization": f"Basic {auth_header}"},
                timeout=self.timeout_sec,
            )
        except requests.RequestException as exc:
            raise SpotifyTransientError(f"Spotify token request failed: {exc}") from exc
        if response.status_code != 200:
            raise SpotifyAPIError(
                f"Spotify token request failed ({response.status_code})",
                status_code=response.status_code,
            )

        payload = response.json()
        token = payload.get("access_token")
        if not token:
            raise SpotifyAPIError("Spotify token response missing access_token")

        expires_in = int(payload.get("expires_in") or 0)
        self._app_token = token
        self._app_token_expire_at = now + max(0, expires_in - 30)
        return token

    def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        access_token: str | None = None,
        deadline: float | None = None,
    ) -> dict[str, Any]:
        """Perform one API call, retrying 429/5xx/network errors with exponential backoff.

        ``access_token`` selects a user token; without it the app token is used and
        a single 401 re-fetches it. ``deadline`` is a ``time.monotonic()`` instant
        after which no further attempt or sleep is started.
        """
        app_token_retry_used = False
        attempt = 0
        while True:
            attempt += 1
            token = access_token or self._get_app_token()
            headers = {"Authorization": f"Bearer {token}"}
            try:
                response = self.session.request(
                    method,
                    url,
                    params=params,
                    json=json_body,
                    headers=headers,
                    timeout=self._request_timeout(deadline),
                )
            except requests.RequestException as exc:
                self._backoff_or_raise(attempt, deadline, f"network error: {exc}", None)
                continue

            status = response.status_code
            if status == 401:
                if access_token is None and not app_token_retry_used:
                    app_token_retry_used = True
                    self._app_token = None
                    continue
                raise SpotifyAuthError("Spotify rejected the access token (401)", status_code=status)
            if status == 404:
                raise SpotifyNotFoundError(f"Spotify resource not found: {url}", status_code=status)
            if status in _RETRYABLE_STATUS:
                retry_after = None
                if status == 429:
                    try:
                        retry_after = float(response.headers.get("Retry-After", "1"))
                    except (TypeError, ValueError):
                        retry_after = 1.0
                self._backoff_or_raise(attempt, deadline, f"status {status}", retry_after, status)
                continue
            if status < 200 or status >= 300:
                raise SpotifyAPIError(f"Spotify request failed ({status})", status_code=status)
            if not response.content:
                return {}
            return response.json()

    def _request_timeout(self, deadline: float | None) -> float:
        if deadline is None:
            return self.timeout_sec
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise SpotifyTransientError("Spotify request deadline exceeded")
        return min(self.timeout_sec, remaining)

    def _backoff_or_raise(
        self,
        attempt: int,
        deadline: float | None,
        reason: str,
        retry_after: float | None,
        status_code: int | None = None,
    ) -> None:
        if attempt > self.max_retries:
            raise SpotifyTransientError(
                f"Spotify request failed after {attempt} attempts ({reason})",
                status_code=status_code,
            )
        delay = retry_after if retry_after is not None else self.retry_base_delay * (2 ** (attempt - 1))
        delay = max(0.0, delay)
        if deadline is not None and time.monotonic() + delay >= deadline:
            raise SpotifyTransientError(
                f"Spotify request deadline exceeded ({reason})",
                status_code=status_code,
            )
        logger.info("Spotify retry attempt=%s delay=%.2fs reason=%s", attempt, delay, reason)
        time.sleep(delay)

    def get_track(self, track_id: str, *, deadline: float | None = None) -> NormalizedTrack:
        """Fetch and normalize track facts; raise ``SpotifyNotFoundError`` for unknown ids."""
        track_id = (track_id or "").strip()
        if not track_id:
            raise ValueError("track_id is required")
        encoded_id = urllib.parse.quote(track_id, safe="")
        payload = self._request("GET", f"{self._API_BASE}/tracks/{encoded_id}", deadline=deadline)
        if not payload.get("id"):
            raise SpotifyNotFoundError(f"Spotify track not found: {track_id}", status_code=404)

        artists = payload.get("artists") or []
        first_artist = artists[0] if artists and isinstance(artists[0], dict) else {}
        album = payload.get("album") or {}
        images = album.get("images") or []
        return {
            "spotify_track_id": str(payload["id"]),
            "name": str(payload.get("name") or ""),
            "duration_ms": int(payload.get("duration_ms") or 0),
            "preview_url": payload.get("preview_url"),
            "artist_id": str(first_artist.get("id") or ""),
            "artist_name": str(first_artist.get("name") or ""),
            "album_id": str(album.get("id") or ""),
            "album_name": str(album.get("name") or ""),
            "album_image_url": images[0].get("url") if images and isinstance(images[0], dict) else None,
        }

    def get_artist_genres(self, artist_id: str, *, deadline: float | None = None) -> list[str]:
        """Spotify exposes genres on artists, not tracks."""
        artist_id = (artist_id or "").strip()
        if not artist_id:
            return []
        encoded_id = urllib.parse.quote(artist_id, safe="")
        payload = self._request("GET", f"{self._API_BASE}/artists/{encoded_id}", deadline=deadline)
        return [str(genre).strip() for genre in (payload.get("genres") or []) if str(genre or "").strip()]

    def get_playlist_track_ids(
        self,
        playlist_id: str,
        access_token: str,
        *,
        deadline: float | None = None,
    ) -> list[str]:
        """Return playlist track ids in playlist order, following pagination."""
        playlist_id = (playlist_id or "").strip()
        if not playlist_id:
            raise ValueError("playlist_id is required")
        encoded_id = urllib.parse.quote(playlist_id, safe="")
        page = self._request(
            "GET",
            f"{self._API_BASE}/playlists/{encoded_id}/tracks",
            params={"fields": "items(track(id)),next", "limit": 100},
            access_token=access_token,
            deadline=deadline,
        )
        track_ids: list[str] = []
        while True:
            for raw in page.get("items") or []:
                track = raw.get("track") if isinstance(raw, dict) else None
                if isinstance(track, dict) and track.get("id"):
                    track_ids.append(str(track["id"]))
            next_url = page.get("next")
            if not next_url:
                break
            page = self._request("GET", str(next_url), access_token=access_token, deadline=deadline)
        return track_ids

    def playlist_contains(
        self,
        playlist_id: str,
        track_id: str,
        access_token: str,
        *,
        deadline: float | None = None,
    ) -> bool:
        return track_id in self.get_playlist_track_ids(playlist_id, access_token, deadline=deadline)

    def add_tracks(
        self,
        playlist_id: str,
        track_ids: list[str],
        access_token: str,
        *,
        deadline: float | None = None,
    ) -> str | None:
        """Append tracks to a playlist; returns the new ``snapshot_id``."""
        encoded_id = urllib.parse.quote((playlist_id or "").strip(), safe="")
        payload = self._request(
            "POST",
            f"{self._API_BASE}/playlists/{encoded_id}/tracks",
            json_body={"uris": [track_uri(track_id) for track_id in track_ids]},
            access_token=access_token,
            deadline=deadline,
        )
        return payload.get("snapshot_id")

    def remove_tracks(
        self,
        playlist_id: str,
        track_ids: list[str],
        access_token: str,
        *,
        deadline: float | None = None,
    ) -> str | None:
        """Remove every occurrence of the given tracks; returns the new ``snapshot_id``."""
        encoded_id = urllib.parse.quote((playlist_id or "").strip(), safe="")
        payload = self._request(
            "DELETE",
            f"{self._API_BASE}/playlists/{encoded_id}/tracks",
            json_body={"tracks": [{"uri": track_uri(track_id)} for track_id in track_ids]},
            access_token=access_token,
            deadline=deadline,
        )
        return payload.get("snapshot_id")


def track_uri(track_id: str) -> str:
    return f"spotify:track:{track_id}"
