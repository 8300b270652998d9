"""
Per-key rate limiting.

Fixed one-minute windows kept in process memory. Each API key may make
rate_limit_per_minute requests per window; the window resets on the minute
boundary measured from its first request.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from uuid import UUID

from app.exceptions import RateLimitExceededError
from app.observability import get_logger

logger = get_logger(__name__)

WINDOW_SECONDS = 60
_MAX_TRACKED_KEYS = 10000


@dataclass
class _Window:
    started_at: float
    count: int


class RateLimiter:
    """In-memory fixed-window counter keyed by API key id."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._windows: dict[UUID, _Window] = {}

    def hit(self, key_id: UUID, limit: int) -> int:
        """
        Count one request for key_id.

        Returns:
            Requests remaining in the current window

        Raises:
            RateLimitExceededError: The window is exhausted
        """
        now = self._clock()
        window = self._windows.get(key_id)
        if window is None or now - window.started_at >= WINDOW_SECONDS:
            self._cleanup(now)
            window = _Window(started_at=now, count=0)
            self._windows[key_id] = window

        if window.count >= limit:
            retry_after = max(1, int(window.started_at + WINDOW_SECONDS - now + 0.999))
            logger.warning("rate_limit_exceeded", key_id=str(key_id), limit=limit)
            raise RateLimitExceededError(limit, retry_after)

        window.count += 1
        return limit - window.count

    def reset(self) -> None:
        self._windows.clear()

    def _cleanup(self, now: float) -> None:
        """Drop expired windows once the table grows large."""
        if len(self._windows) < _MAX_TRACKED_KEYS:
            return
        expired = [
            key_id
            for key_id, window in self._windows.items()
            if now - window.started_at >= WINDOW_SECONDS
        ]
        for key_id in expired:
            del self._windows[key_id]


rate_limiter = RateLimiter()
