from __future__ import annotations

import math
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock


# Drop idle client keys every this many hits.
_SWEEP_EVERY = 1000


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    # Whole seconds until the oldest counted hit leaves the window.
    reset_after: int


class SlidingWindowRateLimiter:
    """Sliding-log limiter: at most ``limit`` hits per key in any ``window_seconds`` span.

    Rejected hits are not recorded, so a client that keeps hammering still gets
    back in once its earlier requests age out.
    """

    def __init__(self, limit: int, window_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        if limit <= 0:
            raise ValueError("limit must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.limit = limit
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._lock = Lock()
        self._hits: dict[str, deque[float]] = {}
        self._calls = 0

    def hit(self, key: str) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            self._calls += 1
            if self._calls % _SWEEP_EVERY == 0:
                self._sweep(now)

            hits = self._hits.setdefault(key, deque())
            self._expire(hits, now)

            if len(hits) >= self.limit:
                return RateLimitDecision(
                    allowed=False,
                    limit=self.limit,
                    remaining=0,
                    reset_after=self._reset_after(hits, now),
                )

            hits.append(now)
            return RateLimitDecision(
                allowed=True,
                limit=self.limit,
                remaining=self.limit - len(hits),
                reset_after=self._reset_after(hits, now),
            )

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)

    def _expire(self, hits: deque[float], now: float) -> None:
        cutoff = now - self.window_seconds
        while hits and hits[0] <= cutoff:
            hits.popleft()

    def _reset_after(self, hits: deque[float], now: float) -> int:
        if not hits:
            return 0
        return max(math.ceil(hits[0] + self.window_seconds - now), 0)

    def _sweep(self, now: float) -> None:
        for key in list(self._hits):
            hits = self._hits[key]
            self._expire(hits, now)
            if not hits:
                del self._hits[key]
