"""Spotify track link detection for raw chat message text."""

from __future__ import annotations

import re
from typing import Optional

# open.spotify.com / play.spotify.com track URLs (http or https, optional
# /intl-xx/ locale segment) and spotify:track: URIs. Query strings such as
# ``?si=...`` are not part of the match.
_TRACK_LINK_RE = re.compile(
    r"(?:https?://(?:open|play)\.spotify\.com/(?:intl-[a-z]{2}(?:-[a-z]{2})?/)?track/|spotify:track:)"
    r"([A-Za-z0-9]+)",
    re.IGNORECASE,
)


def detect_track_urls(text: Optional[str]) -> list[str]:
    """Return every track link found in ``text`` in order of appearance."""
    if not text or not text.strip():
        return []
    return [match.group(0) for match in _TRACK_LINK_RE.finditer(text)]


def extract_track_id(url: Optional[str]) -> Optional[str]:
    """Return the track id of a single link, or ``None`` when it is not a track link."""
    if not url or not url.strip():
        return None
    match = _TRACK_LINK_RE.search(url)
    if not match:
        return None
    return match.group(1)


def extract_track_ids(text: Optional[str]) -> list[str]:
    """Ordered, de-duplicated track ids found in a message.

    A message that repeats the same link yields the id once, at its first
    position. Album, playlist and artist links are ignored.
    """
    seen: set[str] = set()
    ordered: list[str] = []
    for url in detect_track_urls(text):
        track_id = extract_track_id(url)
        if track_id and track_id not in seen:
            seen.add(track_id)
            ordered.append(track_id)
    return ordered
