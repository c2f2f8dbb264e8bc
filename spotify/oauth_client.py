"""Spotify OAuth client helpers."""

from __future__ import annotations

import requests

from config.settings import SPOTIFY_TIMEOUT_SECONDS
from spotify.client import SpotifyAPIError, SpotifyTransientError

SPOTIFY_TOKEN_URL = "https://accounts.spotify.com/api/token"


def refresh_access_token(
    client_id: str,
    client_secret: str,
    refresh_token: str,
    *,
    timeout_sec: float = SPOTIFY_TIMEOUT_SECONDS,
) -> dict:
    """Exchange refresh token for a new Spotify access token payload.

    ``timeout_sec`` caps the HTTP call; callers with a deadline pass what is left of it.

    Returns:
        Parsed JSON token response from Spotify.

    Raises:
        SpotifyTransientError: network failure or 5xx; the refresh token may still be good.
        SpotifyAPIError: Spotify rejected the refresh (e.g. ``invalid_grant``).
    """
    try:
        response = requests.post(
            SPOTIFY_TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": client_id,
                "client_secret": client_secret,
            },
            timeout=timeout_sec,
        )
    except requests.RequestException as exc:
        raise SpotifyTransientError(f"spotify refresh failed: {exc}") from exc
    if response.status_code >= 500:
        raise SpotifyTransientError(
            f"spotify refresh failed: status={response.status_code}",
            status_code=response.status_code,
        )
    if response.status_code != 200:
        detail = (response.text or "").strip() or f"status={response.status_code}"
        raise SpotifyAPIError(f"spotify refresh failed: {detail}", status_code=response.status_code)
    return response.json()
