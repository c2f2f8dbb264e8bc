"""Idempotent add/remove of tracks on a chat's Spotify playlist."""

from __future__ import annotations

import logging
from typing import Callable, Protocol, TypeVar

from engine.errors import AuthExpired, UpstreamError
from engine.models import AddStatus, RemoveStatus
from spotify.client import SpotifyAPIError, SpotifyAuthError

T = TypeVar("T")


class CredentialProvider(Protocol):
    def acquire(self, administrator_id: str, *, deadline: float | None = None) -> tuple[str, bool]: ...

    def refresh(self, administrator_id: str, *, deadline: float | None = None) -> str: ...


class _AdministratorSession:
    """Access token for one mutator call; refreshes at most once.

    A token the provider had to renew on hand-out counts as that one refresh.
    """

    def __init__(self, provider: CredentialProvider, administrator_id: str, deadline: float | None = None) -> None:
        self.provider = provider
        self.administrator_id = str(administrator_id)
        self.deadline = deadline
        self._token: str | None = None
        self._refreshed = False

    def call(self, fn: Callable[[str], T]) -> T:
        if self._token is None:
            self._token, self._refreshed = self.provider.acquire(self.administrator_id, deadline=self.deadline)
        while True:
            try:
                return fn(self._token)
            except SpotifyAuthError as exc:
                if self._refreshed:
                    raise AuthExpired(self.administrator_id) from exc
                self._refreshed = True
                logging.info("Spotify token rejected for administrator %s; refreshing", self.administrator_id)
                self._token = self.provider.refresh(self.administrator_id, deadline=self.deadline)


class PlaylistMutator:
    """Membership is checked before every mutation, so a repeated add reports
    ``ALREADY_PRESENT`` and a repeated remove reports ``NOT_PRESENT``.

    Failures come back as statuses, never as exceptions: auth failures that
    survive one refresh are ``AUTH_EXPIRED``, everything upstream is ``FAILED``.
    """

    def __init__(self, spotify_client, credential_provider: CredentialProvider) -> None:
        self.spotify_client = spotify_client
        self.credential_provider = credential_provider

    def add(
        self,
        playlist_id: str,
        track_id: str,
        administrator_id: str,
        *,
        deadline: float | None = None,
    ) -> AddStatus:
        session = _AdministratorSession(self.credential_provider, administrator_id, deadline)
        try:
            present = session.call(
                lambda token: self.spotify_client.playlist_contains(playlist_id, track_id, token, deadline=deadline)
            )
            if present:
                logging.info("Track %s already in playlist %s", track_id, playlist_id)
                return AddStatus.ALREADY_PRESENT
            session.call(
                lambda token: self.spotify_client.add_tracks(playlist_id, [track_id], token, deadline=deadline)
            )
        except AuthExpired as exc:
            logging.warning("Playlist add of %s to %s blocked: %s", track_id, playlist_id, exc)
            return AddStatus.AUTH_EXPIRED
        except (SpotifyAPIError, UpstreamError) as exc:
            logging.warning("Playlist add of %s to %s failed: %s", track_id, playlist_id, exc)
            return AddStatus.FAILED
        logging.info("Track %s added to playlist %s", track_id, playlist_id)
        return AddStatus.ADDED

    def remove(
        self,
        playlist_id: str,
        track_id: str,
        administrator_id: str,
        *,
        deadline: float | None = None,
    ) -> RemoveStatus:
        session = _AdministratorSession(self.credential_provider, administrator_id, deadline)
        try:
            present = session.call(
                lambda token: self.spotify_client.playlist_contains(playlist_id, track_id, token, deadline=deadline)
            )
            if not present:
                logging.info("Track %s not in playlist %s; nothing to remove", track_id, playlist_id)
                return RemoveStatus.NOT_PRESENT
            session.call(
                lambda token: self.spotify_client.remove_tracks(playlist_id, [track_id], token, deadline=deadline)
            )
        except AuthExpired as exc:
            logging.warning("Playlist removal of %s from %s blocked: %s", track_id, playlist_id, exc)
            return RemoveStatus.AUTH_EXPIRED
        except (SpotifyAPIError, UpstreamError) as exc:
            logging.warning("Playlist removal of %s from %s failed: %s", track_id, playlist_id, exc)
            return RemoveStatus.FAILED
        logging.info("Track %s removed from playlist %s", track_id, playlist_id)
        return RemoveStatus.REMOVED
