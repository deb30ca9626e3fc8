"""Gateway decision engine: throttle, redirect and allow paths."""

from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlparse

import pytest

from authgate.service.errors import DependencyUnavailableError, RateLimitedError
from authgate.service.gateway import (
    AuthFailureMarker,
    GatewayAction,
    GatewayEngine,
    GatewayRequest,
    client_ip_from,
    safe_callback,
)
from authgate.service.rate_limiter import RateLimiter
from authgate.service.route_classifier import RouteClassifier

COOKIE = "authgate.session_token"
MARKER_COOKIE = "authgate.auth_check_failed"
TOKEN = "s" * 43
SECRET = "gateway-test-secret-key-0123456789abcdef"


class FakeClock:
    def __init__(self, start: float = 5_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


def _engine(limiter, clock, *, fail_open: bool = True) -> GatewayEngine:
    return GatewayEngine(
        limiter=limiter,
        classifier=RouteClassifier(
            protected_routes=["/dashboard"],
            admin_routes=["/admin"],
            auth_routes=["/login", "/register"],
        ),
        marker=AuthFailureMarker(SECRET, 60, clock=clock),
        session_cookie_name=COOKIE,
        auth_failure_cookie_name=MARKER_COOKIE,
        rate_limited_prefixes=["/v1/auth"],
        auth_entry_path="/login",
        authenticated_home_path="/dashboard",
        rate_limit_fail_open=fail_open,
    )


@pytest.fixture
def engine(clock):
    return _engine(RateLimiter(None, capacity=2, window_seconds=10, clock=clock), clock)


class TestRateLimitStep:
    @pytest.mark.asyncio
    async def test_throttles_after_capacity(self, engine):
        req = GatewayRequest(path="/v1/auth/sign-in", client_ip="10.0.0.1")
        first = await engine.decide(req)
        second = await engine.decide(req)
        third = await engine.decide(req)

        assert first.action is GatewayAction.ALLOW
        assert first.headers["X-RateLimit-Remaining"] == "1"
        assert second.action is GatewayAction.ALLOW
        assert third.action is GatewayAction.THROTTLE
        assert third.retry_after == 10
        assert third.headers["Retry-After"] == "10"
        assert third.headers["X-RateLimit-Limit"] == "2"
        assert third.headers["X-RateLimit-Remaining"] == "0"
        assert isinstance(third.error, RateLimitedError)
        assert third.error.limit == 2

    @pytest.mark.asyncio
    async def test_other_prefixes_are_not_limited(self, engine):
        for _ in range(5):
            decision = await engine.decide(GatewayRequest(path="/about", client_ip="10.0.0.1"))
            assert decision.action is GatewayAction.ALLOW
            assert decision.headers == {}

    @pytest.mark.asyncio
    async def test_prefix_match_is_segment_aware(self, engine):
        for _ in range(5):
            decision = await engine.decide(GatewayRequest(path="/v1/authority", client_ip="10.0.0.1"))
            assert decision.action is GatewayAction.ALLOW

    @pytest.mark.asyncio
    async def test_missing_client_ip_shares_unknown_bucket(self, engine):
        await engine.decide(GatewayRequest(path="/v1/auth/x"))
        await engine.decide(GatewayRequest(path="/v1/auth/x"))
        decision = await engine.decide(GatewayRequest(path="/v1/auth/x"))
        assert decision.action is GatewayAction.THROTTLE

    @pytest.mark.asyncio
    async def test_throttle_runs_before_route_checks(self, clock):
        engine = _engine(RateLimiter(None, capacity=1, window_seconds=5, clock=clock), clock)
        engine.rate_limited_prefixes = ("/",)
        await engine.decide(GatewayRequest(path="/dashboard", client_ip="1.1.1.1"))
        decision = await engine.decide(GatewayRequest(path="/dashboard", client_ip="1.1.1.1"))
        assert decision.action is GatewayAction.THROTTLE

    @pytest.mark.asyncio
    async def test_backend_failure_fails_open(self, clock):
        limiter = RateLimiter(None, capacity=2, window_seconds=10, clock=clock)
        limiter.limit = AsyncMock(side_effect=DependencyUnavailableError("cache unavailable"))
        engine = _engine(limiter, clock, fail_open=True)

        decision = await engine.decide(GatewayRequest(path="/v1/auth/sign-in", client_ip="1.2.3.4"))
        assert decision.action is GatewayAction.ALLOW

    @pytest.mark.asyncio
    async def test_backend_failure_fails_closed_when_configured(self, clock):
        limiter = RateLimiter(None, capacity=2, window_seconds=10, clock=clock)
        limiter.limit = AsyncMock(side_effect=DependencyUnavailableError("cache unavailable"))
        engine = _engine(limiter, clock, fail_open=False)

        decision = await engine.decide(GatewayRequest(path="/v1/auth/sign-in", client_ip="1.2.3.4"))
        assert decision.action is GatewayAction.THROTTLE
        assert decision.retry_after == 10
        assert decision.headers["X-RateLimit-Limit"] == "2"
        assert decision.headers["X-RateLimit-Remaining"] == "0"
        assert decision.headers["X-RateLimit-Reset"] == str(int(clock.now) + 10)
        assert decision.headers["Retry-After"] == "10"


class TestRouteGuard:
    @pytest.mark.asyncio
    async def test_protected_without_cookie_redirects_to_login_with_callback(self, engine):
        decision = await engine.decide(GatewayRequest(path="/dashboard/billing", query_string="tab=2"))

        assert decision.action is GatewayAction.REDIRECT
        parsed = urlparse(decision.location)
        assert parsed.path == "/login"
        assert parse_qs(parsed.query)["callbackUrl"] == ["/dashboard/billing?tab=2"]

    @pytest.mark.asyncio
    async def test_admin_without_cookie_redirects(self, engine):
        decision = await engine.decide(GatewayRequest(path="/admin"))
        assert decision.action is GatewayAction.REDIRECT
        assert decision.location.startswith("/login?")

    @pytest.mark.asyncio
    async def test_malformed_cookie_counts_as_absent(self, engine):
        decision = await engine.decide(GatewayRequest(path="/dashboard", cookies={COOKIE: "nope"}))
        assert decision.action is GatewayAction.REDIRECT

    @pytest.mark.asyncio
    async def test_protected_with_cookie_is_allowed(self, engine):
        decision = await engine.decide(GatewayRequest(path="/dashboard", cookies={COOKIE: TOKEN}))
        assert decision.action is GatewayAction.ALLOW

    @pytest.mark.asyncio
    async def test_admin_role_is_not_checked_at_the_gateway(self, engine):
        decision = await engine.decide(GatewayRequest(path="/admin/users", cookies={COOKIE: TOKEN}))
        assert decision.action is GatewayAction.ALLOW

    @pytest.mark.asyncio
    async def test_auth_entry_with_cookie_redirects_home(self, engine):
        decision = await engine.decide(GatewayRequest(path="/login", cookies={COOKIE: TOKEN}))
        assert decision.action is GatewayAction.REDIRECT
        assert decision.location == "/dashboard"

    @pytest.mark.asyncio
    async def test_auth_entry_with_valid_marker_is_allowed(self, engine):
        cookies = {COOKIE: TOKEN, MARKER_COOKIE: engine.marker.issue()}
        decision = await engine.decide(GatewayRequest(path="/login", cookies=cookies))
        assert decision.action is GatewayAction.ALLOW

    @pytest.mark.asyncio
    async def test_forged_or_expired_marker_is_ignored(self, engine, clock):
        forged = {COOKIE: TOKEN, MARKER_COOKIE: f"{int(clock.now) + 60}.deadbeef"}
        decision = await engine.decide(GatewayRequest(path="/login", cookies=forged))
        assert decision.action is GatewayAction.REDIRECT

        marker = engine.marker.issue()
        clock.now += 61
        decision = await engine.decide(
            GatewayRequest(path="/login", cookies={COOKIE: TOKEN, MARKER_COOKIE: marker})
        )
        assert decision.action is GatewayAction.REDIRECT

    @pytest.mark.asyncio
    async def test_auth_entry_without_cookie_is_allowed(self, engine):
        decision = await engine.decide(GatewayRequest(path="/register"))
        assert decision.action is GatewayAction.ALLOW

    @pytest.mark.asyncio
    async def test_public_paths_are_allowed(self, engine):
        decision = await engine.decide(GatewayRequest(path="/"))
        assert decision.action is GatewayAction.ALLOW


class TestHelpers:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("/dashboard?tab=1", "/dashboard?tab=1"),
            (None, "/home"),
            ("", "/home"),
            ("https://evil.example/", "/home"),
            ("//evil.example/", "/home"),
            ("/\\evil.example", "/home"),
        ],
    )
    def test_safe_callback(self, value, expected):
        assert safe_callback(value, "/home") == expected

    def test_client_ip_ignores_forwarded_header_unless_trusted(self):
        headers = {"x-forwarded-for": "203.0.113.7, 10.0.0.1"}
        assert client_ip_from(headers, "10.0.0.1", trust_proxy_headers=False) == "10.0.0.1"
        assert client_ip_from(headers, "10.0.0.1", trust_proxy_headers=True) == "203.0.113.7"
        assert client_ip_from({}, None, trust_proxy_headers=True) is None

    def test_marker_from_another_secret_is_rejected(self, clock):
        other = AuthFailureMarker("another-secret-key-0123456789abcdefghij", 60, clock=clock)
        mine = AuthFailureMarker(SECRET, 60, clock=clock)
        assert mine.is_valid(mine.issue())
        assert not mine.is_valid(other.issue())
        assert not mine.is_valid("not-a-marker")
