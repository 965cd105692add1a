from __future__ import annotations

import math
from collections import defaultdict, deque
from threading import Lock

from fastapi import HTTPException

from app.clock import Clock, system_clock


class SlidingWindowLimiter:
    """
    Very small in-memory sliding-window limiter (per-process).

    Each key maps to the timestamps of its accepted events. Old entries are
    pruned lazily whenever the key is inspected; keys whose window empties
    are removed.

    Production note: for multi-instance deployments, replace with Redis-based limits.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or system_clock
        self._lock = Lock()
        self._events: dict[str, deque[float]] = defaultdict(deque)

    def _prune_locked(self, key: str, now: float, window_seconds: float) -> deque[float] | None:
        q = self._events.get(key)
        if q is None:
            return None
        while q and now - q[0] >= window_seconds:
            q.popleft()
        if not q:
            del self._events[key]
            return None
        return q

    def retry_after(self, *, key: str, limit: int, window_seconds: int) -> int:
        """
        Seconds until another event for `key` would be accepted; 0 when allowed now.
        """
        now = self._clock.now()
        with self._lock:
            q = self._prune_locked(key, now, float(window_seconds))
            if q is None or len(q) < int(limit):
                return 0
            # The oldest event has to leave the window first.
            oldest = q[len(q) - int(limit)]
            return max(1, math.ceil(float(window_seconds) - (now - oldest)))

    def record(self, *, key: str) -> None:
        now = self._clock.now()
        with self._lock:
            self._events[key].append(now)

    def hit(self, *, key: str, limit: int, window_seconds: int, detail: str = "Too many requests") -> None:
        now = self._clock.now()
        with self._lock:
            q = self._prune_locked(key, now, float(window_seconds))
            if q is not None and len(q) >= int(limit):
                raise HTTPException(status_code=429, detail=detail)
            self._events[key].append(now)

    def count(self, key: str) -> int:
        with self._lock:
            return len(self._events.get(key) or ())

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._events.keys())

    def prune(self, *, window_seconds: int) -> int:
        """
        Drop entries older than the window across all keys. Returns the number of keys removed.
        """
        now = self._clock.now()
        removed = 0
        with self._lock:
            for key in list(self._events.keys()):
                if self._prune_locked(key, now, float(window_seconds)) is None:
                    removed += 1
        return removed

    def reset(self) -> None:
        with self._lock:
            self._events.clear()


# Endpoint throttling shared by the HTTP layer.
limiter = SlidingWindowLimiter()
