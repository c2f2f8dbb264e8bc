"""SQLite persistence for chat administrators' Spotify OAuth tokens.

``SpotifyOAuthStore`` is the credential provider the playlist mutator uses:
``acquire`` hands out a usable token (and says whether it had to refresh it) and
``refresh`` forces a refresh. Both honor a ``time.monotonic()`` deadline.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from config.settings import SPOTIFY_TIMEOUT_SECONDS
from db.migrations import ensure_oauth_token_table
from engine.errors import AuthExpired, InvalidRefreshToken, UpstreamUnavailable
from spotify.client import SpotifyAPIError, SpotifyTransientError
from spotify.oauth_client import refresh_access_token

# Refresh a little before the advertised expiry so in-flight calls don't race it.
_EXPIRY_SKEW_SECONDS = 30


@dataclass
class SpotifyOAuthToken:
    access_token: str
    refresh_token: str
    expires_at: int  # epoch seconds
    scope: str


class SpotifyOAuthStore:
    """Per-administrator SQLite storage for Spotify OAuth tokens."""

    def __init__(self, db_path: Path | str, *, client_id: str = "", client_secret: str = ""):
        self.db_path = Path(db_path)
        self.client_id = client_id
        self.client_secret = client_secret
        self._refresh_lock = threading.Lock()
        self._ensure_table()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_table(self):
        conn = self._connect()
        try:
            ensure_oauth_token_table(conn)
        finally:
            conn.close()

    def save(self, administrator_id: str, token: SpotifyOAuthToken) -> None:
        """Upsert the token row for ``administrator_id``."""
        updated_at = datetime.now(timezone.utc).isoformat()
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO spotify_oauth_tokens (administrator_id, access_token, refresh_token, expires_at, scope, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(administrator_id) DO UPDATE SET
                    access_token=excluded.access_token,
                    refresh_token=excluded.refresh_token,
                    expires_at=excluded.expires_at,
                    scope=excluded.scope,
                    updated_at=excluded.updated_at
                """,
                (
                    str(administrator_id),
                    token.access_token,
                    token.refresh_token,
                    int(token.expires_at),
                    token.scope,
                    updated_at,
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def load(self, administrator_id: str) -> Optional[SpotifyOAuthToken]:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT access_token, refresh_token, expires_at, scope
                FROM spotify_oauth_tokens
                WHERE administrator_id=?
                LIMIT 1
                """,
                (str(administrator_id),),
            )
            row = cur.fetchone()
            if not row:
                return None
            return SpotifyOAuthToken(
                access_token=str(row["access_token"]),
                refresh_token=str(row["refresh_token"]),
                expires_at=int(row["expires_at"]),
                scope=str(row["scope"]),
            )
        finally:
            conn.close()

    def clear(self, administrator_id: str) -> None:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("DELETE FROM spotify_oauth_tokens WHERE administrator_id=?", (str(administrator_id),))
            conn.commit()
        finally:
            conn.close()

    def get_access_token(self, administrator_id: str, *, deadline: float | None = None) -> str:
        """Return a usable access token, refreshing it first when it has expired."""
        return self.acquire(administrator_id, deadline=deadline)[0]

    def acquire(self, administrator_id: str, *, deadline: float | None = None) -> tuple[str, bool]:
        """Return ``(access_token, refreshed)``; ``refreshed`` is True when an expired token was just renewed."""
        token = self.load(administrator_id)
        if token is None:
            raise AuthExpired(administrator_id, f"administrator {administrator_id} has not linked Spotify")
        if int(token.expires_at) - _EXPIRY_SKEW_SECONDS > int(time.time()):
            return token.access_token, False
        return self.refresh(administrator_id, deadline=deadline), True

    def refresh(self, administrator_id: str, *, deadline: float | None = None) -> str:
        """Refresh and persist the administrator's token.

        Behavior:
        - Missing token raises ``InvalidRefreshToken``.
        - Spotify rejecting the refresh token clears the stored row and raises
          ``InvalidRefreshToken`` so the administrator can be asked to reconnect.
        - Network/5xx failures keep the row and raise ``UpstreamUnavailable``.
        """
        with self._refresh_lock:
            token = self.load(administrator_id)
            if token is None:
                raise InvalidRefreshToken(administrator_id, f"no refresh token stored for {administrator_id}")

            now = int(time.time())
            timeout_sec = float(SPOTIFY_TIMEOUT_SECONDS)
            if deadline is not None:
                timeout_sec = min(timeout_sec, deadline - time.monotonic())
                if timeout_sec <= 0:
                    raise UpstreamUnavailable(f"spotify refresh for {administrator_id} skipped: deadline exceeded")
            try:
                payload = refresh_access_token(
                    client_id=self.client_id,
                    client_secret=self.client_secret,
                    refresh_token=token.refresh_token,
                    timeout_sec=timeout_sec,
                )
            except SpotifyTransientError as exc:
                raise UpstreamUnavailable(str(exc)) from exc
            except SpotifyAPIError as exc:
                logging.warning("Spotify refresh rejected for administrator %s: %s", administrator_id, exc)
                self.clear(administrator_id)
                raise InvalidRefreshToken(administrator_id, "Spotify refresh token rejected; reconnect required") from exc

            new_access_token = str(payload.get("access_token") or "").strip()
            expires_in = payload.get("expires_in")
            if not new_access_token or expires_in is None:
                self.clear(administrator_id)
                raise InvalidRefreshToken(administrator_id, "refresh payload missing access_token or expires_in")
            refreshed = SpotifyOAuthToken(
                access_token=new_access_token,
                refresh_token=str(payload.get("refresh_token") or token.refresh_token),
                expires_at=now + int(expires_in),
                scope=str(payload.get("scope") or token.scope),
            )
            self.save(administrator_id, refreshed)
            logging.info("Spotify token refreshed for administrator %s", administrator_id)
            return refreshed.access_token
