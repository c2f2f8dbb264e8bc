"""Application settings constants."""

from __future__ import annotations

# Downvotes (absolute count) that retire a track when a chat has no explicit setting.
DEFAULT_DOWNVOTE_THRESHOLD = 3

# Optimistic-concurrency retries for a single entity read-modify-write.
CONFLICT_RETRY_ATTEMPTS = 8
CONFLICT_RETRY_BASE_DELAY_SECONDS = 0.01
CONFLICT_RETRY_MAX_DELAY_SECONDS = 0.25

# Spotify Web API transport.
SPOTIFY_TIMEOUT_SECONDS = 10
SPOTIFY_MAX_RETRIES = 3
SPOTIFY_RETRY_BASE_DELAY_SECONDS = 0.5

# Deadline for webhook-triggered single-event operations (share, vote).
WEBHOOK_TIMEOUT_SECONDS = 8.0

# A removal claim older than this is assumed abandoned and may be taken over by reconcile.
# Must outlast the slowest playlist removal, including Spotify retries.
REMOVAL_CLAIM_LEASE_SECONDS = 300
