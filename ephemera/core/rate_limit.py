from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Tuple


@dataclass(frozen=True)
class RateResult:
    allowed: bool
    remaining: int
    reset_at: float
    limit: int

    def retry_after(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        return max(1, math.ceil(self.reset_at - now))

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at)),
        }


class RateLimiter:
    """Fixed window rate limiter stored in-memory per client.

    Buckets are created lazily, reset once their window elapses and dropped by
    ``sweep``. Single process only.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.limit = max(limit, 1)
        self.window_seconds = window_seconds
        self._clock = clock
        self._clients: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()

    def consume(self, key: str) -> RateResult:
        """Register a hit for ``key`` and report whether it is allowed."""
        now = self._clock()
        with self._lock:
            count, reset_at = self._clients.get(key, (0, now + self.window_seconds))
            if now >= reset_at:
                count = 0
                reset_at = now + self.window_seconds
            if count >= self.limit:
                self._clients[key] = (count, reset_at)
                return RateResult(False, 0, reset_at, self.limit)

            count += 1
            self._clients[key] = (count, reset_at)
            return RateResult(True, max(0, self.limit - count), reset_at, self.limit)

    def sweep(self) -> int:
        """Drop buckets whose window has elapsed. Returns how many were dropped."""
        now = self._clock()
        with self._lock:
            stale = [key for key, (_, reset_at) in self._clients.items() if now >= reset_at]
            for key in stale:
                del self._clients[key]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)
