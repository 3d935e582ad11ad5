"""Sliding-window counters for uploads, approvals and mapping feedback.

A full window denies. There is no fail-open path: if the limit is hit the
caller gets ``RateLimitExceeded`` with the number of seconds to wait.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict, deque
from typing import Callable, Optional

from ..config import Settings, get_settings
from ..errors import RateLimitExceeded

logger = logging.getLogger(__name__)

DAY = 24 * 60 * 60
HOUR = 60 * 60
MINUTE = 60


class WindowedRateLimiter:
    """At most ``limit`` hits per ``window_seconds`` for each key.

    Usage::

        uploads = WindowedRateLimiter(5, DAY, scope="upload")
        uploads.hit(user_id)          # raises RateLimitExceeded when full
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float,
        *,
        scope: str = "request",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self.scope = scope
        self._clock = clock
        self._hits: dict[str, deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def _prune(self, key: str, now: float) -> deque[float]:
        hits = self._hits[key]
        cutoff = now - self.window_seconds
        while hits and hits[0] <= cutoff:
            hits.popleft()
        return hits

    def remaining(self, key: str) -> int:
        with self._lock:
            return max(self.limit - len(self._prune(key, self._clock())), 0)

    def retry_after(self, key: str) -> float:
        with self._lock:
            now = self._clock()
            hits = self._prune(key, now)
            if len(hits) < self.limit:
                return 0.0
            return max(hits[0] + self.window_seconds - now, 0.0)

    def check(self, key: str) -> bool:
        """True if one more hit would be allowed. Does not count."""
        return self.remaining(key) > 0

    def require(self, key: str) -> None:
        """Raise ``RateLimitExceeded`` if the window is full, without counting."""
        if not self.check(key):
            raise RateLimitExceeded(self.scope, key, self.limit, self.retry_after(key))

    def hit(self, key: str) -> int:
        """Count one hit; returns hits left in the window."""
        with self._lock:
            now = self._clock()
            hits = self._prune(key, now)
            if len(hits) >= self.limit:
                wait = max(hits[0] + self.window_seconds - now, 0.0)
                logger.warning(
                    "[RATE_LIMIT] %s limit %d reached for %s (retry in %.0fs)",
                    self.scope, self.limit, key, wait,
                )
                raise RateLimitExceeded(self.scope, key, self.limit, wait)
            hits.append(now)
            return self.limit - len(hits)

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)


class RateLimits:
    """The three counters the ingestion core uses, sized from Settings."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        settings = settings or get_settings()
        self.uploads = WindowedRateLimiter(settings.uploads_per_day, DAY, scope="upload")
        self.approvals = WindowedRateLimiter(
            settings.approvals_per_minute, MINUTE, scope="approval",
        )
        self.feedback = WindowedRateLimiter(
            settings.feedback_per_hour, HOUR, scope="mapping feedback",
        )
