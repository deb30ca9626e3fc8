from __future__ import annotations

import hashlib
import hmac
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Mapping, Optional, Sequence
from urllib.parse import urlencode

from authgate.logging import get_logger
from authgate.service.errors import DependencyUnavailableError, RateLimitedError
from authgate.service.rate_limiter import RateLimiter, RateLimitResult
from authgate.service.route_classifier import RouteClass, RouteClassifier, matches_any
from authgate.service.session_cookie import has_session_cookie

logger = get_logger(__name__)


class GatewayAction(str, Enum):
    ALLOW = "allow"
    REDIRECT = "redirect"
    THROTTLE = "throttle"


@dataclass
class GatewayRequest:
    path: str
    query_string: str = ""
    cookies: Mapping[str, str] = field(default_factory=dict)
    client_ip: Optional[str] = None


@dataclass
class GatewayDecision:
    action: GatewayAction
    location: Optional[str] = None
    retry_after: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)
    error: Optional[RateLimitedError] = None

    @classmethod
    def allow(cls, headers: Optional[Dict[str, str]] = None) -> "GatewayDecision":
        return cls(GatewayAction.ALLOW, headers=headers or {})

    @classmethod
    def redirect(cls, location: str) -> "GatewayDecision":
        return cls(GatewayAction.REDIRECT, location=location)

    @classmethod
    def throttle(cls, error: RateLimitedError) -> "GatewayDecision":
        return cls(
            GatewayAction.THROTTLE, retry_after=error.retry_after, headers=error.headers(), error=error
        )


def safe_callback(value: Optional[str], default: str) -> str:
    """Return ``value`` only when it is a same-origin relative path."""
    if not value or not value.startswith("/") or value.startswith("//") or "\\" in value:
        return default
    return value


def client_ip_from(
    headers: Mapping[str, str], peer: Optional[str], *, trust_proxy_headers: bool
) -> Optional[str]:
    if trust_proxy_headers:
        forwarded = headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
    return peer


class AuthFailureMarker:
    """Short-lived signed cookie value saying "downstream validation just failed".

    Downstream handlers set it before redirecting to the auth entry point so the
    gateway does not bounce a stale cookie straight back to the home page.
    Clients cannot forge it without the server secret.
    """

    _PURPOSE = b"auth-check-failed"

    def __init__(self, secret_key: str, ttl_seconds: int, clock: Callable[[], float] = time.time):
        self._key = hashlib.sha256(secret_key.encode()).digest()
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def _sign(self, expires: int) -> str:
        return hmac.new(self._key, self._PURPOSE + b":" + str(expires).encode(), "sha256").hexdigest()

    def issue(self) -> str:
        expires = int(self._clock()) + self.ttl_seconds
        return f"{expires}.{self._sign(expires)}"

    def is_valid(self, value: Optional[str]) -> bool:
        if not value:
            return False
        raw_expires, _, signature = value.partition(".")
        try:
            expires = int(raw_expires)
        except ValueError:
            return False
        if not hmac.compare_digest(signature, self._sign(expires)):
            return False
        return self._clock() < expires


class GatewayEngine:
    """Per-request allow / redirect / throttle decision.

    Steps run in a fixed order and any step may short-circuit:

    1. paths under a rate-limited prefix consume a limiter slot keyed by client IP;
    2. the path is classified;
    3. protected paths without a well-formed session cookie redirect to the auth
       entry point with the original path as callback;
    4. auth-entry paths with a session cookie redirect home, unless a valid
       auth-failure marker is present;
    5. everything else is allowed.

    Admin role is not checked here; only cookie presence is. Handlers verify the
    role after full session validation.
    """

    def __init__(
        self,
        *,
        limiter: RateLimiter,
        classifier: RouteClassifier,
        marker: AuthFailureMarker,
        session_cookie_name: str,
        auth_failure_cookie_name: str,
        rate_limited_prefixes: Sequence[str],
        auth_entry_path: str,
        authenticated_home_path: str,
        callback_param: str = "callbackUrl",
        rate_limit_fail_open: bool = True,
    ) -> None:
        self.limiter = limiter
        self.classifier = classifier
        self.marker = marker
        self.session_cookie_name = session_cookie_name
        self.auth_failure_cookie_name = auth_failure_cookie_name
        self.rate_limited_prefixes = tuple(rate_limited_prefixes)
        self.auth_entry_path = auth_entry_path
        self.authenticated_home_path = authenticated_home_path
        self.callback_param = callback_param
        self.rate_limit_fail_open = rate_limit_fail_open

    @classmethod
    def from_settings(cls, settings, limiter: RateLimiter) -> "GatewayEngine":
        return cls(
            limiter=limiter,
            classifier=RouteClassifier(
                protected_routes=settings.protected_routes,
                admin_routes=settings.admin_routes,
                auth_routes=settings.auth_routes,
            ),
            marker=AuthFailureMarker(settings.secret_key, settings.auth_failure_ttl_seconds),
            session_cookie_name=settings.session_cookie_name,
            auth_failure_cookie_name=settings.auth_failure_cookie_name,
            rate_limited_prefixes=settings.rate_limited_prefixes,
            auth_entry_path=settings.auth_entry_path,
            authenticated_home_path=settings.authenticated_home_path,
            callback_param=settings.callback_param,
            rate_limit_fail_open=settings.rate_limit_fail_open,
        )

    def login_redirect(self, path: str, query_string: str = "") -> str:
        target = f"{path}?{query_string}" if query_string else path
        return f"{self.auth_entry_path}?{urlencode({self.callback_param: target})}"

    async def decide(self, request: GatewayRequest) -> GatewayDecision:
        path = request.path or "/"
        limit_headers: Dict[str, str] = {}

        if matches_any(path, self.rate_limited_prefixes):
            key = request.client_ip or "unknown"
            try:
                result = await self.limiter.limit(key)
            except DependencyUnavailableError as exc:
                if not self.rate_limit_fail_open:
                    logger.error("rate_limit_backend_unavailable", path=path, fail_open=False)
                    now = self.limiter.clock()
                    blocked = RateLimitResult(
                        allowed=False,
                        limit=self.limiter.capacity,
                        remaining=0,
                        reset_at=now + self.limiter.window_seconds,
                    )
                    return GatewayDecision.throttle(blocked.to_error(now))
                logger.warning(
                    "rate_limit_backend_unavailable",
                    path=path,
                    fail_open=True,
                    error=exc.message,
                )
            else:
                if not result.allowed:
                    return GatewayDecision.throttle(result.to_error(self.limiter.clock()))
                limit_headers = result.headers()

        route = self.classifier.classify(path)
        has_cookie = has_session_cookie(request.cookies, self.session_cookie_name)

        if route.requires_session and not has_cookie:
            logger.info("gateway_redirect_login", path=path, route=route.value)
            return GatewayDecision.redirect(self.login_redirect(path, request.query_string))

        if route is RouteClass.AUTH_ENTRY and has_cookie:
            marker = request.cookies.get(self.auth_failure_cookie_name)
            if not self.marker.is_valid(marker):
                return GatewayDecision.redirect(self.authenticated_home_path)

        return GatewayDecision.allow(limit_headers)
