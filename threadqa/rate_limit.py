"""
In-memory per-user rate limiting using a sliding window.

Tracks timestamps of recent questions per user and rejects a question once the
count within the window reaches the limit.
"""
import math
import time
from typing import Callable

from threadqa.config import RATE_LIMIT_MAX_REQUESTS, RATE_LIMIT_WINDOW


class RateLimitExceeded(Exception):
    """Raised when a user exceeds the configured question rate limit."""

    def __init__(self, limit: int, window: int, retry_after: int) -> None:
        self.limit = limit
        self.window = window
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded: {limit} questions/{window}s")


class RateLimiter:
    def __init__(
        self,
        max_requests: int = RATE_LIMIT_MAX_REQUESTS,
        window: int = RATE_LIMIT_WINDOW,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window = window
        self._clock = clock
        self._timestamps: dict[str, list[float]] = {}
        self._last_sweep = clock()

    def check(self, user_id: str) -> None:
        """Record a question for ``user_id`` or raise ``RateLimitExceeded``. 0 disables."""
        if self.max_requests <= 0:
            return
        now = self._clock()
        cutoff = now - self.window
        if now - self._last_sweep >= self.window:
            self._sweep(cutoff)
            self._last_sweep = now
        recent = [t for t in self._timestamps.get(user_id, []) if t > cutoff]

        if len(recent) >= self.max_requests:
            self._timestamps[user_id] = recent
            retry_after = max(1, math.ceil(recent[0] + self.window - now))
            raise RateLimitExceeded(self.max_requests, self.window, retry_after)

        recent.append(now)
        self._timestamps[user_id] = recent

    @property
    def tracked_users(self) -> int:
        return len(self._timestamps)

    def _sweep(self, cutoff: float) -> None:
        """Forget users whose every question has left the window."""
        stale = [user for user, stamps in self._timestamps.items() if stamps[-1] <= cutoff]
        for user in stale:
            del self._timestamps[user]

    def reset(self) -> None:
        self._timestamps.clear()


def format_retry_after(seconds: float) -> str:
    minutes = math.ceil(seconds / 60)
    if minutes <= 1:
        return "about a minute"
    return f"about {minutes} minutes"
