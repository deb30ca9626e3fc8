from __future__ import annotations

import functools
import hashlib
import json
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from authgate.service.errors import DependencyUnavailableError


def _translate_errors(func):
    """Surface Redis failures as DependencyUnavailableError."""

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except RedisError as exc:
            raise DependencyUnavailableError(
                "cache unavailable", detail={"operation": func.__name__}
            ) from exc

    return wrapper


class RedisCache:
    """Thin Redis wrapper for rate limits, session state and short-lived tokens."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Sliding log: entries older than the window are dropped, a hit is only
    # recorded when it is admitted, so at most `capacity` admissions exist in
    # any trailing window. Scores are milliseconds.
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
local allowed = 0
if count < capacity then
  redis.call('ZADD', key, now, member)
  count = count + 1
  allowed = 1
end
redis.call('PEXPIRE', key, window)

local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
local reset_at = now + window
if oldest[2] then
  reset_at = tonumber(oldest[2]) + window
end
return {allowed, capacity - count, reset_at}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Seconds until ``expires_at``, clamped to at least one."""
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    @staticmethod
    def _digest(value: str) -> str:
        return hashlib.sha256(value.encode()).hexdigest()

    @classmethod
    def _normalize_rate_key(cls, key: str) -> str:
        return f"rate:{cls._digest(key)}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async pool off the startup loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @_translate_errors
    async def ping(self) -> bool:
        return bool(await self.client.ping())

    # rate limiting
    @_translate_errors
    async def sliding_window_hit(
        self, key: str, capacity: int, window_seconds: int, *, now: Optional[float] = None
    ) -> Tuple[bool, int, float]:
        """Record a hit for ``key`` if admitted.

        Returns ``(allowed, remaining, reset_at)`` with ``reset_at`` as a unix
        timestamp in seconds.
        """
        now_ms = int((now if now is not None else time.time()) * 1000)
        window_ms = int(window_seconds * 1000)
        allowed, remaining, reset_ms = await self._sliding_window(
            keys=[self._normalize_rate_key(key)],
            args=[now_ms, window_ms, capacity, f"{now_ms}-{uuid.uuid4().hex}"],
        )
        return bool(int(allowed)), max(0, int(remaining)), int(reset_ms) / 1000.0

    # sessions
    @_translate_errors
    async def cache_session(
        self, token: str, payload: Dict[str, Any], user_id: str, ttl_seconds: int
    ) -> None:
        digest = self._digest(token)
        ttl = max(1, int(ttl_seconds))
        pipe = self.client.pipeline()
        pipe.set(f"auth:session:{digest}", json.dumps(payload), ex=ttl)
        pipe.sadd(f"auth:user_sessions:{user_id}", digest)
        pipe.expire(f"auth:user_sessions:{user_id}", ttl)
        await pipe.execute()

    @_translate_errors
    async def get_cached_session(self, token: str) -> Optional[Dict[str, Any]]:
        raw = await self.client.get(f"auth:session:{self._digest(token)}")
        return json.loads(raw) if raw else None

    @_translate_errors
    async def revoke_session(self, token: str, expires_at: datetime) -> None:
        """Evict the cached session and denylist the token until it would expire."""
        digest = self._digest(token)
        pipe = self.client.pipeline()
        pipe.delete(f"auth:session:{digest}")
        pipe.set(f"auth:session:revoked:{digest}", "1", ex=self._ttl_seconds(expires_at))
        await pipe.execute()

    @_translate_errors
    async def is_session_revoked(self, token: str) -> bool:
        return bool(await self.client.exists(f"auth:session:revoked:{self._digest(token)}"))

    @_translate_errors
    async def revoke_user_sessions(self, user_id: str) -> int:
        user_sessions_key = f"auth:user_sessions:{user_id}"
        digests = await self.client.smembers(user_sessions_key)
        if not digests:
            return 0
        pipe = self.client.pipeline()
        for digest in digests:
            pipe.delete(f"auth:session:{digest}")
        pipe.delete(user_sessions_key)
        await pipe.execute()
        return len(digests)

    # two-factor challenges
    @_translate_errors
    async def set_two_factor_challenge(self, token: str, user_id: str, ttl_seconds: int) -> None:
        await self.client.set(f"auth:2fa:challenge:{self._digest(token)}", user_id, ex=ttl_seconds)

    @_translate_errors
    async def get_two_factor_challenge(self, token: str) -> Optional[str]:
        return await self.client.get(f"auth:2fa:challenge:{self._digest(token)}")

    @_translate_errors
    async def pop_two_factor_challenge(self, token: str) -> Optional[Tuple[str, int]]:
        """Read and delete in one transaction; returns the owner and seconds left.

        Concurrent callers cannot both receive the user id.
        """
        key = f"auth:2fa:challenge:{self._digest(token)}"
        pipe = self.client.pipeline(transaction=True)
        pipe.get(key)
        pipe.ttl(key)
        pipe.delete(key)
        user_id, ttl, _ = await pipe.execute()
        if not user_id or ttl is None or int(ttl) < 1:
            return None
        return user_id, int(ttl)

    # trusted devices
    @_translate_errors
    async def set_trusted_device(self, token: str, user_id: str, ttl_seconds: int) -> None:
        await self.client.set(f"auth:2fa:trusted:{self._digest(token)}", user_id, ex=ttl_seconds)

    @_translate_errors
    async def get_trusted_device(self, token: str) -> Optional[str]:
        return await self.client.get(f"auth:2fa:trusted:{self._digest(token)}")

    # email verification
    @_translate_errors
    async def set_email_verification(self, token: str, user_id: str, ttl_seconds: int) -> None:
        await self.client.set(f"auth:email_verify:{self._digest(token)}", user_id, ex=ttl_seconds)

    @_translate_errors
    async def pop_email_verification(self, token: str) -> Optional[str]:
        return await self.client.getdel(f"auth:email_verify:{self._digest(token)}")

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
