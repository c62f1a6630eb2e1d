"""In-memory rate limiter for the chat relay.

Tracks per-client-key request counts using a fixed-window approach: each
key gets a budget of points per window, and the window resets once its
duration has elapsed since the first request in it.
"""

import math
import threading
import time
from dataclasses import dataclass, field
from typing import Dict


class RateLimitExceeded(Exception):
    """Raised when a client key has used up the points in its window."""

    def __init__(self, key: str, detail: str, retry_after: int) -> None:
        self.key = key
        self.detail = detail
        self.retry_after = retry_after
        super().__init__(detail)


@dataclass
class _Window:
    """Fixed-window counter for a single client key."""

    window_start: float = 0.0
    consumed: int = 0


@dataclass
class RateLimiter:
    """Per-client-key in-memory rate limiter.

    The key set is caller-influenced, so the table is capped at max_keys:
    expired windows are swept first, then the oldest window is evicted.
    """

    points: int = 60
    duration: float = 60.0
    max_keys: int = 10000
    _windows: Dict[str, _Window] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def consume(self, key: str) -> None:
        """Consume one point for key.

        A rejected call leaves the window untouched; it does not slide or
        reset the window.

        Args:
            key: The client key (forwarded address, peer address or sentinel).

        Raises:
            RateLimitExceeded: If the key has no points left in its window.
        """
        now = time.time()
        with self._lock:
            window = self._get_or_reset_window(key, now)

            if window.consumed >= self.points:
                remaining = window.window_start + self.duration - now
                raise RateLimitExceeded(
                    key,
                    "Request rate exceeded for {} ({} requests per {:g}s).".format(
                        key, self.points, self.duration
                    ),
                    retry_after=max(1, int(math.ceil(remaining))),
                )

            window.consumed += 1

    def remaining(self, key: str) -> int:
        """Return the points left for key in its current window."""
        now = time.time()
        with self._lock:
            window = self._windows.get(key)
            if window is None or self._expired(window, now):
                return self.points
            return max(0, self.points - window.consumed)

    def __len__(self) -> int:
        return len(self._windows)

    def _expired(self, window: _Window, now: float) -> bool:
        return (now - window.window_start) >= self.duration

    def _get_or_reset_window(self, key: str, now: float) -> _Window:
        """Retrieve the window for key, starting a fresh one if it expired."""
        window = self._windows.get(key)

        if window is None or self._expired(window, now):
            if window is None and len(self._windows) >= self.max_keys:
                self._evict(now)
            window = _Window(window_start=now)
            self._windows[key] = window

        return window

    def _evict(self, now: float) -> None:
        """Drop expired windows; if still full, drop the oldest one."""
        expired = [k for k, w in self._windows.items() if self._expired(w, now)]
        for k in expired:
            del self._windows[k]

        if self._windows and len(self._windows) >= self.max_keys:
            oldest = min(self._windows, key=lambda k: self._windows[k].window_start)
            del self._windows[oldest]
