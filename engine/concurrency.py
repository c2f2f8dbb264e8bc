"""Optimistic-concurrency retry loop shared by every read-modify-write in the engine."""

from __future__ import annotations

import logging
import random
import time
from typing import Callable, TypeVar

from config.settings import (
    CONFLICT_RETRY_ATTEMPTS,
    CONFLICT_RETRY_BASE_DELAY_SECONDS,
    CONFLICT_RETRY_MAX_DELAY_SECONDS,
)
from db.kv_store import VersionConflict
from engine.errors import ConcurrencyConflict

T = TypeVar("T")
logger = logging.getLogger(__name__)

_retry_attempts = CONFLICT_RETRY_ATTEMPTS


def set_retry_attempts(attempts: int) -> None:
    """Process-wide default for the conflict retry bound."""
    global _retry_attempts
    if int(attempts) < 1:
        raise ValueError("conflict retry attempts must be >= 1")
    _retry_attempts = int(attempts)


def run_with_retry(
    attempt: Callable[[], T],
    *,
    attempts: int | None = None,
    base_delay: float = CONFLICT_RETRY_BASE_DELAY_SECONDS,
    max_delay: float = CONFLICT_RETRY_MAX_DELAY_SECONDS,
    label: str = "update",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``attempt`` until it commits without a ``VersionConflict``.

    ``attempt`` must re-read everything it decides on; it is replayed from the
    top after each conflict. Backoff doubles per attempt with jitter. When the
    bound is exceeded the conflict is surfaced as ``ConcurrencyConflict``.
    """
    attempts = _retry_attempts if attempts is None else max(1, int(attempts))
    for n in range(1, attempts + 1):
        try:
            return attempt()
        except VersionConflict as exc:
            if n >= attempts:
                raise ConcurrencyConflict(f"{label}: gave up after {attempts} conflicting attempts") from exc
            delay = min(max_delay, base_delay * (2 ** (n - 1)))
            delay *= random.uniform(0.5, 1.0)
            logger.debug("%s conflict attempt=%s delay=%.3fs (%s)", label, n, delay, exc)
            sleep(delay)
    raise AssertionError("unreachable")
