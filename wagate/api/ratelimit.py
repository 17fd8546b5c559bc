"""Per-client request limiting for the HTTP API."""

import time
from collections import deque
from typing import Callable


class RateLimiter:
    """Sliding window of at most ``max_calls`` per key every ``window_seconds``.

    ``max_calls`` of 0 disables limiting.
    """

    def __init__(
        self,
        max_calls: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        max_keys: int = 4096,
    ):
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self.max_keys = max_keys
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}

    @property
    def enabled(self) -> bool:
        return self.max_calls > 0

    def _prune(self, key: str, now: float) -> deque[float]:
        hits = self._hits.setdefault(key, deque())
        while hits and now - hits[0] >= self.window_seconds:
            hits.popleft()
        return hits

    def allow(self, key: str) -> bool:
        if not self.enabled:
            return True
        now = self._clock()
        if len(self._hits) >= self.max_keys:
            self._sweep(now)
        hits = self._prune(key, now)
        if len(hits) >= self.max_calls:
            return False
        hits.append(now)
        return True

    def remaining(self, key: str) -> int:
        hits = self._hits.get(key)
        return max(self.max_calls - len(hits or ()), 0)

    def retry_after(self, key: str) -> float:
        hits = self._hits.get(key)
        if not hits:
            return 0.0
        return max(self.window_seconds - (self._clock() - hits[0]), 0.0)

    def _sweep(self, now: float) -> None:
        for key in list(self._hits):
            if not self._prune(key, now):
                del self._hits[key]
