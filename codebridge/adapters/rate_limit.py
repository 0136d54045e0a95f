"""Sliding-window limiter for execute requests, keyed by user id."""
from __future__ import annotations

import time
from collections.abc import Callable

from codebridge.engine.errors import RateLimitExceeded


class SlidingWindowRateLimiter:
    """Allow at most ``max_events`` per ``window_seconds`` for each key."""

    def __init__(
        self,
        max_events: int = 5,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_events = max_events
        self._window = window_seconds
        self._clock = clock
        self._windows: dict[str, list[float]] = {}

    @property
    def enabled(self) -> bool:
        return self._max_events > 0 and self._window > 0

    def _fresh(self, key: str, now: float) -> list[float]:
        cutoff = now - self._window
        fresh = [ts for ts in self._windows.get(key, []) if ts > cutoff]
        if fresh:
            self._windows[key] = fresh
        else:
            self._windows.pop(key, None)
        return fresh

    def is_limited(self, key: str) -> bool:
        """Record an attempt for ``key``; True when it exceeds the window limit."""
        if not self.enabled:
            return False
        now = self._clock()
        fresh = self._fresh(key, now)
        if len(fresh) >= self._max_events:
            return True
        fresh.append(now)
        self._windows[key] = fresh
        return False

    def check(self, key: str) -> None:
        """Like ``is_limited`` but raises ``RateLimitExceeded``."""
        if self.is_limited(key):
            raise RateLimitExceeded(
                f"Too many executions; limit is {self._max_events} per "
                f"{self._window:g} seconds"
            )

    def remaining(self, key: str) -> int:
        if not self.enabled:
            return -1
        return max(0, self._max_events - len(self._fresh(key, self._clock())))

    def reset(self, key: str | None = None) -> None:
        if key is None:
            self._windows.clear()
        else:
            self._windows.pop(key, None)
