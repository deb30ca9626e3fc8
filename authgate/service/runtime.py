from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from authgate.config import get_settings, reset_settings_cache
from authgate.logging import get_logger
from authgate.service.email import EmailService
from authgate.service.gateway import GatewayEngine
from authgate.service.identity import IdentityProvider
from authgate.service.rate_limiter import RateLimiter
from authgate.service.sessions import SessionLifecycleView
from authgate.service.sign_in import SignInService
from authgate.service.two_factor import TwoFactorService
from authgate.storage.memory import MemoryStore
from authgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        self.store = MemoryStore(secret_key=self.settings.secret_key)

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except (RedisError, OSError, ValueError) as exc:
                redis_error = exc

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared rate limits and session state; start Redis "
                    "or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits and "
                    "two-factor challenges are per-process only."
                ),
                mode=fallback_mode,
            )

        self.identity = IdentityProvider(self.store, self.cache, self.settings)
        self.limiter = RateLimiter(
            self.cache,
            capacity=self.settings.rate_limit_capacity,
            window_seconds=self.settings.rate_limit_window_seconds,
        )
        self.gateway = GatewayEngine.from_settings(self.settings, self.limiter)
        self.two_factor = TwoFactorService(self.identity)
        self.sign_in = SignInService(self.identity, self.settings)
        self.sessions = SessionLifecycleView(self.identity)
        self.email = EmailService.from_settings(self.settings)

        if self.settings.bootstrap_admin_email and self.settings.bootstrap_admin_password:
            self.identity.ensure_admin(
                self.settings.bootstrap_admin_email.strip().lower(),
                self.settings.bootstrap_admin_password,
            )

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            rate_limit_capacity=self.settings.rate_limit_capacity,
            rate_limit_window_seconds=self.settings.rate_limit_window_seconds,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
