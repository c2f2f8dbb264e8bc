"""Failure taxonomy for the track sharing and voting engine."""

from __future__ import annotations


class CurationError(Exception):
    """Base class for engine failures surfaced to callers."""


class UpstreamError(CurationError):
    """The Spotify Web API could not satisfy a request."""


class UpstreamUnavailable(UpstreamError):
    """Transient upstream failure after retries were exhausted."""


class TrackNotFound(UpstreamError):
    def __init__(self, track_id: str) -> None:
        super().__init__(f"track not found: {track_id}")
        self.track_id = track_id


class AuthExpired(CurationError):
    """Administrator credentials were rejected even after one refresh."""

    def __init__(self, administrator_id: str, message: str | None = None) -> None:
        super().__init__(message or f"spotify credentials expired for administrator {administrator_id}")
        self.administrator_id = administrator_id


class InvalidRefreshToken(AuthExpired):
    """The stored refresh token was rejected or is missing."""


class ConcurrencyConflict(CurationError):
    """Optimistic-concurrency retries were exhausted; the caller may retry the whole operation."""


class InvalidConfiguration(CurationError):
    """Rejected chat or application configuration."""


class RecordNotFound(CurationError):
    def __init__(self, chat_id: str, record_id: str) -> None:
        super().__init__(f"track record {record_id} not found in chat {chat_id}")
        self.chat_id = chat_id
        self.record_id = record_id


class ChatNotConfigured(CurationError):
    def __init__(self, chat_id: str) -> None:
        super().__init__(f"chat {chat_id} has no playlist configuration")
        self.chat_id = chat_id
