"""Normalized, cross-chat catalog of Spotify track, artist, album and genre facts."""

from __future__ import annotations

import logging

from db.kv_store import KeyValueStore, Write
from engine.errors import TrackNotFound, UpstreamUnavailable
from engine.models import CatalogEntry, utc_now
from spotify.client import SpotifyAPIError, SpotifyNotFoundError

TRACKS_TABLE = "catalog_tracks"
ARTISTS_TABLE = "catalog_artists"
ALBUMS_TABLE = "catalog_albums"
GENRES_TABLE = "catalog_genres"
TRACK_GENRES_TABLE = "catalog_track_genres"

_TRACK_PARTITION = "TRACK"
_ARTIST_PARTITION = "ARTIST"
_ALBUM_PARTITION = "ALBUM"
_GENRE_PARTITION = "GENRE"

logger = logging.getLogger(__name__)


class MetadataNormalizer:
    """Resolve a track id to a catalog entry, fetching from Spotify on a miss.

    Entries are written once in a single batch (artist, album, genres,
    track-genre links, then the track row), so a reader either sees the whole
    entry or none of it. Concurrent misses for the same id both upsert the
    same facts; the last write wins.
    """

    def __init__(self, store: KeyValueStore, spotify_client) -> None:
        self.store = store
        self.spotify_client = spotify_client

    def get(self, track_id: str) -> CatalogEntry | None:
        entity = self.store.get(TRACKS_TABLE, _TRACK_PARTITION, track_id)
        if entity is None:
            return None
        data = entity.data
        return CatalogEntry(
            track_id=str(data["track_id"]),
            name=str(data.get("name") or ""),
            duration_seconds=int(data.get("duration_seconds") or 0),
            artist_id=str(data.get("artist_id") or ""),
            artist_name=str(data.get("artist_name") or ""),
            album_id=str(data.get("album_id") or ""),
            album_name=str(data.get("album_name") or ""),
            preview_url=data.get("preview_url"),
            album_image_url=data.get("album_image_url"),
            genres=tuple(data.get("genres") or ()),
        )

    def genre_track_ids(self, genre: str) -> list[str]:
        """Track ids linked to ``genre``."""
        links = self.store.scan(TRACK_GENRES_TABLE, _genre_key(genre))
        return [link.row_key for link in links]

    def ensure(self, track_id: str, *, deadline: float | None = None) -> CatalogEntry:
        """Return the catalog entry for ``track_id``, creating it on first reference.

        Raises ``TrackNotFound`` for ids Spotify does not know and
        ``UpstreamUnavailable`` when Spotify cannot be reached; nothing is
        written in either case.
        """
        track_id = (track_id or "").strip()
        if not track_id:
            raise ValueError("track_id is required")

        cached = self.get(track_id)
        if cached is not None:
            return cached

        try:
            facts = self.spotify_client.get_track(track_id, deadline=deadline)
            genres = self.spotify_client.get_artist_genres(facts["artist_id"], deadline=deadline)
        except SpotifyNotFoundError as exc:
            logger.warning("Track %s not found on Spotify", track_id)
            raise TrackNotFound(track_id) from exc
        except SpotifyAPIError as exc:
            logger.warning("Spotify unavailable while resolving track %s: %s", track_id, exc)
            raise UpstreamUnavailable(f"metadata fetch failed for {track_id}: {exc}") from exc

        entry = CatalogEntry(
            track_id=track_id,
            name=facts["name"],
            duration_seconds=int(facts["duration_ms"]) // 1000,
            artist_id=facts["artist_id"],
            artist_name=facts["artist_name"],
            album_id=facts["album_id"],
            album_name=facts["album_name"],
            preview_url=facts.get("preview_url"),
            album_image_url=facts.get("album_image_url"),
            genres=tuple(dict.fromkeys(_genre_key(genre) for genre in genres if _genre_key(genre))),
        )
        self._persist(entry)
        logger.info("Catalog entry created for track %s (%s - %s)", track_id, entry.artist_name, entry.name)
        return entry

    def _persist(self, entry: CatalogEntry) -> None:
        created_at = utc_now().isoformat()
        writes: list[Write] = []
        if entry.artist_id:
            writes.append(
                Write(ARTISTS_TABLE, _ARTIST_PARTITION, entry.artist_id, {"name": entry.artist_name})
            )
        if entry.album_id:
            writes.append(
                Write(
                    ALBUMS_TABLE,
                    _ALBUM_PARTITION,
                    entry.album_id,
                    {"name": entry.album_name, "image_url": entry.album_image_url},
                )
            )
        for genre in entry.genres:
            writes.append(Write(GENRES_TABLE, _GENRE_PARTITION, genre, {"name": genre}))
            writes.append(Write(TRACK_GENRES_TABLE, genre, entry.track_id, {"track_id": entry.track_id}))
        writes.append(
            Write(
                TRACKS_TABLE,
                _TRACK_PARTITION,
                entry.track_id,
                {
                    "track_id": entry.track_id,
                    "name": entry.name,
                    "duration_seconds": entry.duration_seconds,
                    "preview_url": entry.preview_url,
                    "artist_id": entry.artist_id,
                    "artist_name": entry.artist_name,
                    "album_id": entry.album_id,
                    "album_name": entry.album_name,
                    "album_image_url": entry.album_image_url,
                    "genres": list(entry.genres),
                    "created_at": created_at,
                },
            )
        )
        self.store.commit(writes)


def _genre_key(genre: str) -> str:
    return " ".join(str(genre or "").lower().split())
