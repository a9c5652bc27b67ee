import threading
import time
from collections import deque
from typing import Callable, Deque, Dict

from carslab_crm.core.logging_setup import logger


class RateLimitingService:
    """Sliding-window request counter per key, shared by all request threads.

    Keys whose window has emptied are dropped, and a sweep over every key runs
    at most once per window, so idle companies do not accumulate.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep: float | None = None

    def _prune(self, key: str, now: float, window_seconds: int) -> Deque[float] | None:
        hits = self._hits.get(key)
        if hits is None:
            return None
        while hits and now - hits[0] >= window_seconds:
            hits.popleft()
        if not hits:
            del self._hits[key]
            return None
        return hits

    def _sweep(self, now: float, window_seconds: int) -> None:
        if self._last_sweep is not None and now - self._last_sweep < window_seconds:
            return
        self._last_sweep = now
        for key in list(self._hits):
            self._prune(key, now, window_seconds)

    def is_allowed(self, key: str, limit: int, window_seconds: int) -> bool:
        now = self._clock()
        with self._lock:
            self._sweep(now, window_seconds)
            hits = self._prune(key, now, window_seconds)
            if hits is not None and len(hits) >= limit:
                logger.warning("Rate limit exceeded for %s (%s per %ss)", key, limit, window_seconds)
                return False
            if hits is None:
                hits = self._hits[key] = deque()
            hits.append(now)
            return True

    def remaining(self, key: str, limit: int, window_seconds: int) -> int:
        now = self._clock()
        with self._lock:
            hits = self._prune(key, now, window_seconds)
            if hits is None:
                return limit
            return max(limit - len(hits), 0)

    def tracked_keys(self) -> list[str]:
        with self._lock:
            return list(self._hits)

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._hits.clear()
                self._last_sweep = None
            else:
                self._hits.pop(key, None)


rate_limiter = RateLimitingService()
