"""
In-memory sliding-window rate limiter for job creation.
"""

import math
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict


class RateLimited(Exception):
    """Too many job requests from one client."""

    def __init__(self, retry_after: int):
        super().__init__(f"Too many requests. Try again in {retry_after} seconds.")
        self.retry_after = retry_after


class RateLimiter:
    """
    Allows at most `max_requests` per `window_seconds` for each client key.

    Examples:
        limiter = RateLimiter(max_requests=2, window_seconds=60)
        limiter.is_allowed('1.2.3.4')  # True
        limiter.is_allowed('1.2.3.4')  # True
        limiter.is_allowed('1.2.3.4')  # False
    """

    def __init__(self, max_requests: int = 5, window_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)

    def _prune(self, key: str, now: float) -> Deque[float]:
        hits = self._hits[key]
        while hits and now - hits[0] >= self.window_seconds:
            hits.popleft()
        return hits

    def is_allowed(self, key: str) -> bool:
        """Record a request for key if it fits in the window."""
        now = self.clock()
        hits = self._prune(key, now)
        if len(hits) >= self.max_requests:
            return False
        hits.append(now)
        return True

    def remaining_wait_ms(self, key: str) -> int:
        """Milliseconds until key may make another request (0 if it may now)."""
        now = self.clock()
        hits = self._prune(key, now)
        if len(hits) < self.max_requests:
            return 0
        return max(0, int(math.ceil((hits[0] + self.window_seconds - now) * 1000)))

    def check(self, key: str):
        """
        Raises:
            RateLimited: if key is over its limit
        """
        if not self.is_allowed(key):
            raise RateLimited(retry_after=int(math.ceil(self.remaining_wait_ms(key) / 1000)))

    def reset(self):
        self._hits.clear()
