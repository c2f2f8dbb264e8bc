"""Domain records for shared tracks, votes, the catalog and engine outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from config.settings import DEFAULT_DOWNVOTE_THRESHOLD
from db.kv_store import Entity


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Coerce an ISO string, epoch seconds or datetime into an aware UTC datetime."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(float(value), tz=timezone.utc)
    else:
        text = str(value or "").strip()
        if not text:
            raise ValueError("timestamp is required")
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class VoteType(Enum):
    UPVOTE = "Upvote"
    DOWNVOTE = "Downvote"

    @property
    def counter_field(self) -> str:
        if self is VoteType.UPVOTE:
            return "upvote_count"
        return "downvote_count"


class ShareStatus(Enum):
    CREATED = "created"
    ALREADY_ACTIVE = "already_active"
    WAS_PREVIOUSLY_REMOVED = "was_previously_removed"


class VoteStatus(Enum):
    APPLIED = "applied"
    NOOP = "noop"
    REJECTED = "rejected"


class AddStatus(Enum):
    ADDED = "added"
    ALREADY_PRESENT = "already_present"
    AUTH_EXPIRED = "auth_expired"
    FAILED = "failed"


class RemoveStatus(Enum):
    REMOVED = "removed"
    NOT_PRESENT = "not_present"
    AUTH_EXPIRED = "auth_expired"
    FAILED = "failed"


class PlaylistStatus(Enum):
    PENDING = "pending"
    ADDED = "added"
    ALREADY_PRESENT = "already_present"
    AUTH_EXPIRED = "auth_expired"
    FAILED = "failed"
    REMOVED = "removed"
    NOT_APPLICABLE = "not_applicable"  # duplicate tombstones never touch the playlist


class SyncStatus(Enum):
    ADDED = "added"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    SKIPPED_PREVIOUSLY_REMOVED = "skipped_previously_removed"
    FAILED = "failed"


REJECTED_TRACK_DELETED = "track_deleted"


@dataclass(frozen=True)
class Member:
    """A chat member acting as sharer or voter."""

    user_id: str
    display_name: str = ""
    avatar_url: str | None = None


@dataclass(frozen=True)
class CatalogEntry:
    track_id: str
    name: str
    duration_seconds: int
    artist_id: str
    artist_name: str
    album_id: str
    album_name: str
    preview_url: str | None = None
    album_image_url: str | None = None
    genres: tuple[str, ...] = ()


@dataclass
class ChatSettings:
    chat_id: str
    administrator_id: str
    playlist_id: str | None = None
    playlist_name: str | None = None
    downvote_threshold: int = DEFAULT_DOWNVOTE_THRESHOLD
    created_at: datetime = field(default_factory=utc_now)
    version: int | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "chat_id": self.chat_id,
            "administrator_id": self.administrator_id,
            "playlist_id": self.playlist_id,
            "playlist_name": self.playlist_name,
            "downvote_threshold": int(self.downvote_threshold),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_entity(cls, entity: Entity) -> "ChatSettings":
        data = entity.data
        return cls(
            chat_id=str(data["chat_id"]),
            administrator_id=str(data["administrator_id"]),
            playlist_id=data.get("playlist_id"),
            playlist_name=data.get("playlist_name"),
            downvote_threshold=int(data.get("downvote_threshold") or DEFAULT_DOWNVOTE_THRESHOLD),
            created_at=parse_timestamp(data.get("created_at") or utc_now()),
            version=entity.version,
        )


@dataclass
class TrackRecord:
    """One sharing event of a track within one chat."""

    chat_id: str
    record_id: str
    track_id: str
    sharer_id: str
    shared_at: datetime
    sharer_name: str = ""
    sharer_avatar_url: str | None = None
    message_ref: str | None = None
    track_name: str = ""
    artist_name: str = ""
    album_name: str = ""
    album_image_url: str | None = None
    is_deleted: bool = False
    is_duplicate: bool = False
    upvote_count: int = 0
    downvote_count: int = 0
    removal_pending: bool = False
    removal_claim: str | None = None
    removal_claimed_at: datetime | None = None
    playlist_status: PlaylistStatus = PlaylistStatus.PENDING
    version: int | None = None

    @property
    def is_active(self) -> bool:
        return not self.is_deleted and not self.is_duplicate

    def evolve(self, **changes: Any) -> "TrackRecord":
        return replace(self, **changes)

    def to_payload(self) -> dict[str, Any]:
        return {
            "chat_id": self.chat_id,
            "record_id": self.record_id,
            "track_id": self.track_id,
            "sharer_id": self.sharer_id,
            "sharer_name": self.sharer_name,
            "sharer_avatar_url": self.sharer_avatar_url,
            "message_ref": self.message_ref,
            "shared_at": self.shared_at.isoformat(),
            "track_name": self.track_name,
            "artist_name": self.artist_name,
            "album_name": self.album_name,
            "album_image_url": self.album_image_url,
            "is_deleted": bool(self.is_deleted),
            "is_duplicate": bool(self.is_duplicate),
            "upvote_count": int(self.upvote_count),
            "downvote_count": int(self.downvote_count),
            "removal_pending": bool(self.removal_pending),
            "removal_claim": self.removal_claim,
            "removal_claimed_at": self.removal_claimed_at.isoformat() if self.removal_claimed_at else None,
            "playlist_status": self.playlist_status.value,
        }

    @classmethod
    def from_entity(cls, entity: Entity) -> "TrackRecord":
        data = entity.data
        return cls(
            chat_id=str(data["chat_id"]),
            record_id=str(data["record_id"]),
            track_id=str(data["track_id"]),
            sharer_id=str(data["sharer_id"]),
            sharer_name=str(data.get("sharer_name") or ""),
            sharer_avatar_url=data.get("sharer_avatar_url"),
            message_ref=data.get("message_ref"),
            shared_at=parse_timestamp(data["shared_at"]),
            track_name=str(data.get("track_name") or ""),
            artist_name=str(data.get("artist_name") or ""),
            album_name=str(data.get("album_name") or ""),
            album_image_url=data.get("album_image_url"),
            is_deleted=bool(data.get("is_deleted")),
            is_duplicate=bool(data.get("is_duplicate")),
            upvote_count=int(data.get("upvote_count") or 0),
            downvote_count=int(data.get("downvote_count") or 0),
            removal_pending=bool(data.get("removal_pending")),
            removal_claim=data.get("removal_claim"),
            removal_claimed_at=parse_timestamp(data["removal_claimed_at"]) if data.get("removal_claimed_at") else None,
            playlist_status=PlaylistStatus(data.get("playlist_status") or PlaylistStatus.PENDING.value),
            version=entity.version,
        )


@dataclass
class Vote:
    record_id: str
    voter_id: str
    vote_type: VoteType
    voter_name: str = ""
    voter_avatar_url: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    version: int | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "voter_id": self.voter_id,
            "vote_type": self.vote_type.value,
            "voter_name": self.voter_name,
            "voter_avatar_url": self.voter_avatar_url,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_entity(cls, entity: Entity) -> "Vote":
        data = entity.data
        return cls(
            record_id=str(data["record_id"]),
            voter_id=str(data["voter_id"]),
            vote_type=VoteType(data["vote_type"]),
            voter_name=str(data.get("voter_name") or ""),
            voter_avatar_url=data.get("voter_avatar_url"),
            created_at=parse_timestamp(data["created_at"]),
            updated_at=parse_timestamp(data["updated_at"]),
            version=entity.version,
        )


@dataclass(frozen=True)
class ShareResult:
    status: ShareStatus
    record: TrackRecord | None = None
    active_record_id: str | None = None


@dataclass(frozen=True)
class RemovalResult:
    record_id: str
    track_id: str
    status: RemoveStatus
    deleted: bool
    error: str | None = None


@dataclass(frozen=True)
class VoteResult:
    status: VoteStatus
    record: TrackRecord | None = None
    reason: str | None = None
    removal: RemovalResult | None = None

    @property
    def upvote_count(self) -> int:
        return self.record.upvote_count if self.record else 0

    @property
    def downvote_count(self) -> int:
        return self.record.downvote_count if self.record else 0

    @property
    def removal_triggered(self) -> bool:
        return self.removal is not None


@dataclass(frozen=True)
class TrackShareOutcome:
    """Per-link outcome of one inbound share, used by callers to compose replies."""

    track_id: str
    share: ShareResult | None = None
    add_status: AddStatus | None = None
    catalog: CatalogEntry | None = None
    error: str | None = None


@dataclass(frozen=True)
class HistoryEvent:
    """One historical share; ``text`` is scanned for links, else ``track_id`` is used."""

    sharer: Member
    timestamp: datetime
    message_ref: str | None = None
    track_id: str | None = None
    text: str | None = None


@dataclass(frozen=True)
class SyncOutcome:
    index: int
    track_id: str | None
    status: SyncStatus
    error: str | None = None
    final: bool = True  # last outcome of its event


@dataclass
class SyncSummary:
    added: int = 0
    skipped_duplicate: int = 0
    skipped_previously_removed: int = 0
    failed: int = 0
    processed_events: int = 0
    next_index: int = 0  # checkpoint: first event index not yet fully processed

    def record(self, outcome: SyncOutcome) -> None:
        if outcome.status is SyncStatus.ADDED:
            self.added += 1
        elif outcome.status is SyncStatus.SKIPPED_DUPLICATE:
            self.skipped_duplicate += 1
        elif outcome.status is SyncStatus.SKIPPED_PREVIOUSLY_REMOVED:
            self.skipped_previously_removed += 1
        else:
            self.failed += 1

    def as_dict(self) -> dict[str, int]:
        return {
            "added": self.added,
            "skipped_duplicate": self.skipped_duplicate,
            "skipped_previously_removed": self.skipped_previously_removed,
            "failed": self.failed,
            "processed_events": self.processed_events,
            "next_index": self.next_index,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncSummary":
        data = data or {}
        return cls(
            added=int(data.get("added") or 0),
            skipped_duplicate=int(data.get("skipped_duplicate") or 0),
            skipped_previously_removed=int(data.get("skipped_previously_removed") or 0),
            failed=int(data.get("failed") or 0),
            processed_events=int(data.get("processed_events") or 0),
            next_index=int(data.get("next_index") or 0),
        )
