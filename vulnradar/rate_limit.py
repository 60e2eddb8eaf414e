from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Optional, Protocol

from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage, Storage
from limits.strategies import FixedWindowRateLimiter


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after_seconds: int = 0


class RateLimiter(Protocol):
    def check(self, key: str, max_attempts: int, window_seconds: int) -> RateLimitResult:
        ...


class InMemoryRateLimiter:
    """Fixed-window counter per key on top of ``limits``.

    The first attempt for a key opens a window of ``window_seconds``; attempts
    beyond ``max_attempts`` inside that window are refused until it closes.
    Expired windows are evicted by the storage.
    """

    def __init__(self, storage: Optional[Storage] = None) -> None:
        self._storage = storage or MemoryStorage()
        self._strategy = FixedWindowRateLimiter(self._storage)
        self._lock = threading.Lock()

    def check(self, key: str, max_attempts: int, window_seconds: int) -> RateLimitResult:
        item = RateLimitItemPerSecond(max_attempts, window_seconds)
        with self._lock:
            allowed = self._strategy.hit(item, key)
            stats = self._strategy.get_window_stats(item, key)
        if allowed:
            return RateLimitResult(allowed=True, remaining=max(0, stats.remaining))
        retry_after = max(1, math.ceil(stats.reset_time - time.time()))
        return RateLimitResult(allowed=False, remaining=0, retry_after_seconds=retry_after)
