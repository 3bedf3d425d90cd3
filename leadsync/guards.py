from __future__ import annotations

import time
from threading import Lock
from typing import Callable

from leadsync.observability import incr_metric


class DedupGuard:
    """Drops repeated (phone, kind) deliveries seen inside a short sliding window."""

    def __init__(self, window_seconds: float = 30.0, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._window = window_seconds
        self._clock = clock
        self._lock = Lock()
        self._seen: dict[tuple[str, str], float] = {}

    def check_and_mark(self, phone: str, kind: str) -> bool:
        """Return True when the pair is a duplicate; otherwise record it."""
        key = (phone, kind)
        now = self._clock()
        with self._lock:
            self._evict(now)
            last = self._seen.get(key)
            self._seen[key] = now
        if last is not None and now - last < self._window:
            incr_metric("guard.dedup.dropped", kind=kind)
            return True
        return False

    def _evict(self, now: float) -> None:
        expired = [key for key, seen_at in self._seen.items() if now - seen_at >= self._window]
        for key in expired:
            del self._seen[key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)


class RateLimiter:
    """Fixed-window request cap per key (source IP)."""

    def __init__(
        self,
        window_seconds: float = 60.0,
        max_requests: int = 60,
        *,
        sweep_interval_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._window = window_seconds
        self._max_requests = max_requests
        self._sweep_interval = sweep_interval_seconds
        self._clock = clock
        self._lock = Lock()
        self._windows: dict[str, tuple[float, int]] = {}
        self._last_sweep = clock()

    def allow(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            if now - self._last_sweep >= self._sweep_interval:
                self._sweep_locked(now)
            started_at, count = self._windows.get(key, (now, 0))
            if now - started_at >= self._window:
                started_at, count = now, 0
            count += 1
            self._windows[key] = (started_at, count)
        if count > self._max_requests:
            incr_metric("guard.rate_limit.rejected")
            return False
        return True

    def sweep(self) -> int:
        with self._lock:
            return self._sweep_locked(self._clock())

    def _sweep_locked(self, now: float) -> int:
        expired = [key for key, (started_at, _) in self._windows.items() if now - started_at >= self._window]
        for key in expired:
            del self._windows[key]
        self._last_sweep = now
        return len(expired)

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._windows)
