from __future__ import annotations

import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, Optional

from authgate.logging import get_logger
from authgate.service.errors import RateLimitedError
from authgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float

    @property
    def reset_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.reset_at, tz=timezone.utc)

    def retry_after(self, now: Optional[float] = None) -> int:
        """Whole seconds until a slot frees up, never less than one."""
        current = now if now is not None else time.time()
        return max(1, math.ceil(self.reset_at - current))

    def to_error(self, now: Optional[float] = None) -> RateLimitedError:
        return RateLimitedError(
            limit=self.limit,
            remaining=self.remaining,
            reset_at=self.reset_datetime,
            retry_after=self.retry_after(now),
        )

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(math.ceil(self.reset_at))),
        }


class RateLimiter:
    """Sliding-window limiter keyed by an opaque string (usually client IP).

    At most ``capacity`` calls to :meth:`limit` for the same key report
    ``allowed=True`` in any trailing ``window_seconds``. Rejected calls are not
    recorded, so a client that backs off regains capacity as soon as its oldest
    admitted hit leaves the window.

    With a :class:`RedisCache` the check is a single Lua script and is shared by
    every worker; without one it falls back to per-process deques under a lock.
    Cache failures propagate as ``DependencyUnavailableError`` and the caller
    decides whether to fail open.
    """

    def __init__(
        self,
        cache: Optional[RedisCache],
        *,
        capacity: int,
        window_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if capacity <= 0 or window_seconds <= 0:
            raise ValueError("capacity and window_seconds must be positive")
        self.cache = cache
        self.capacity = capacity
        self.window_seconds = window_seconds
        self.clock = clock
        self._lock = threading.Lock()
        self._hits: Dict[str, Deque[float]] = {}

    async def limit(self, key: str) -> RateLimitResult:
        now = self.clock()
        if self.cache is not None:
            allowed, remaining, reset_at = await self.cache.sliding_window_hit(
                key, self.capacity, self.window_seconds, now=now
            )
        else:
            allowed, remaining, reset_at = self._local_hit(key, now)
        if not allowed:
            logger.info("rate_limit_exceeded", key=key, limit=self.capacity)
        return RateLimitResult(
            allowed=allowed, limit=self.capacity, remaining=remaining, reset_at=reset_at
        )

    def _local_hit(self, key: str, now: float) -> tuple[bool, int, float]:
        cutoff = now - self.window_seconds
        with self._lock:
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= cutoff:
                hits.popleft()
            allowed = len(hits) < self.capacity
            if allowed:
                hits.append(now)
            reset_at = (hits[0] if hits else now) + self.window_seconds
            remaining = self.capacity - len(hits)
            self._prune(cutoff)
        return allowed, remaining, reset_at

    def _prune(self, cutoff: float) -> None:
        # Bound memory for one-off clients; caller holds the lock.
        if len(self._hits) < 10_000:
            return
        stale = [k for k, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for k in stale:
            self._hits.pop(k, None)
