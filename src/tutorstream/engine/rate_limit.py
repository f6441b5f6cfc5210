"""Rate gate: sliding request-count window per client key."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock

from tutorstream.config import RateLimitConfig


def rate_key(client_id: str, client_ip: str | None = None) -> str:
    """Key a window by client identity plus network origin."""
    return f"{client_id}|{client_ip or ''}"


@dataclass
class RateWindow:
    started_at: float
    count: int


class RateGate:
    """Admits at most ``max_requests`` per key within ``window_seconds``.

    A window starts on the first admission for a key and resets once its
    age exceeds the window duration.  Denials do not consume quota.
    Expired windows are swept at most once per window duration.
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._config = config or RateLimitConfig()
        if self._config.max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        self._clock = clock or time.monotonic
        self._lock = Lock()
        self._windows: dict[str, RateWindow] = {}
        self._last_sweep = self._clock()

    def __len__(self) -> int:
        """Number of keys with a tracked window."""
        with self._lock:
            return len(self._windows)

    def admit(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            self._sweep(now)
            window = self._windows.get(key)
            if window is None or now - window.started_at > self._config.window_seconds:
                self._windows[key] = RateWindow(started_at=now, count=1)
                return True
            if window.count < self._config.max_requests:
                window.count += 1
                return True
            return False

    def remaining(self, key: str) -> int:
        """Admissions left in the key's current window."""
        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None or now - window.started_at > self._config.window_seconds:
                return self._config.max_requests
            return max(self._config.max_requests - window.count, 0)

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()

    def _sweep(self, now: float) -> None:
        window_seconds = self._config.window_seconds
        if now - self._last_sweep <= window_seconds:
            return
        self._last_sweep = now
        expired = [
            key
            for key, window in self._windows.items()
            if now - window.started_at > window_seconds
        ]
        for key in expired:
            del self._windows[key]
