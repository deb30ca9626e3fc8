"""End-to-end flows through the gateway middleware and the HTTP API.

Covers:
- redirects for protected and auth-entry pages
- the auth-failure marker that breaks redirect loops
- rate limiting on the auth prefix
- password and two-factor sign-in
- session listing and revocation
- admin-only routes
"""

from urllib.parse import parse_qs, urlparse

import pyotp
import pytest
from fastapi.testclient import TestClient

from authgate import app as app_module
from authgate.service.runtime import get_runtime, reset_runtime_for_tests

SESSION_COOKIE = "authgate.session_token"
MARKER_COOKIE = "authgate.auth_check_failed"
PASSWORD = "TestPassword123!"


@pytest.fixture
def client():
    return TestClient(app_module.app, follow_redirects=False)


def _signup(client, email: str, password: str = PASSWORD):
    response = client.post("/v1/auth/sign-up", json={"email": email, "password": password})
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _sign_in(client, email: str, password: str = PASSWORD):
    return client.post("/v1/auth/sign-in", json={"email": email, "password": password})


def _set_cookie_headers(response) -> str:
    return "\n".join(response.headers.get_list("set-cookie"))


class TestPageRedirects:
    def test_protected_page_without_session_redirects_to_login(self, client):
        response = client.get("/dashboard?tab=keys")

        assert response.status_code == 307
        location = urlparse(response.headers["location"])
        assert location.path == "/login"
        assert parse_qs(location.query)["callbackUrl"] == ["/dashboard?tab=keys"]

    def test_admin_page_without_session_redirects_to_login(self, client):
        response = client.get("/admin")
        assert response.status_code == 307
        assert response.headers["location"].startswith("/login?callbackUrl=")

    def test_login_page_renders_without_session(self, client):
        response = client.get("/login", params={"callbackUrl": "/dashboard"})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["page"] == "login"
        assert data["state"] == "awaiting_credentials"
        assert data["callback_url"] == "/dashboard"

    def test_login_page_drops_offsite_callback(self, client):
        response = client.get("/login", params={"callbackUrl": "https://evil.example/"})
        assert response.json()["data"]["callback_url"] == "/dashboard"

    def test_signed_in_user_is_sent_home_from_login(self, client):
        _signup(client, "pat@example.com")
        assert _sign_in(client, "pat@example.com").status_code == 200

        response = client.get("/login")
        assert response.status_code == 307
        assert response.headers["location"] == "/dashboard"

    def test_dashboard_renders_for_signed_in_user(self, client):
        _signup(client, "pat@example.com")
        _sign_in(client, "pat@example.com")

        response = client.get("/dashboard")
        assert response.status_code == 200
        body = response.json()
        assert body["data"]["page"] == "dashboard"
        assert body["data"]["user"]["email"] == "pat@example.com"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Request-ID"]


class TestStaleSessionLoop:
    def test_stale_cookie_on_dashboard_sets_marker_and_clears_session(self):
        stale = TestClient(app_module.app, follow_redirects=False, cookies={SESSION_COOKIE: "q" * 43})

        response = stale.get("/dashboard")

        assert response.status_code == 307
        assert response.headers["location"].startswith("/login?callbackUrl=")
        cookies = _set_cookie_headers(response)
        assert f"{MARKER_COOKIE}=" in cookies
        assert f'{SESSION_COOKIE}="";' in cookies or f"{SESSION_COOKIE}=;" in cookies

    def test_marker_lets_login_render_despite_stale_cookie(self):
        marker = get_runtime().gateway.marker.issue()
        stale = TestClient(
            app_module.app,
            follow_redirects=False,
            cookies={SESSION_COOKIE: "q" * 43, MARKER_COOKIE: marker},
        )

        response = stale.get("/login")
        assert response.status_code == 200
        assert response.json()["data"]["page"] == "login"

    def test_forged_marker_does_not_break_the_loop(self):
        stale = TestClient(
            app_module.app,
            follow_redirects=False,
            cookies={SESSION_COOKIE: "q" * 43, MARKER_COOKIE: "9999999999.forged"},
        )
        response = stale.get("/login")
        assert response.status_code == 307
        assert response.headers["location"] == "/dashboard"


class TestRateLimiting:
    def test_auth_prefix_is_throttled(self, client, monkeypatch):
        monkeypatch.setenv("RATE_LIMIT_CAPACITY", "2")
        reset_runtime_for_tests()

        statuses = []
        for _ in range(3):
            response = _sign_in(client, "nobody@example.com", "WrongPassword1!")
            statuses.append(response.status_code)

        assert statuses == [401, 401, 429]
        assert response.headers["Retry-After"]
        assert int(response.headers["Retry-After"]) >= 1
        assert response.headers["X-RateLimit-Limit"] == "2"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.json()["error"]["code"] == "rate_limited"

    def test_throttled_response_is_readable_cross_origin(self, client, monkeypatch):
        monkeypatch.setenv("RATE_LIMIT_CAPACITY", "1")
        reset_runtime_for_tests()
        origin = {"Origin": "http://localhost:3000"}

        client.post("/v1/auth/sign-in", json={"email": "a@example.com", "password": "x"}, headers=origin)
        response = client.post(
            "/v1/auth/sign-in", json={"email": "a@example.com", "password": "x"}, headers=origin
        )

        assert response.status_code == 429
        assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
        exposed = response.headers["access-control-expose-headers"].lower()
        assert "retry-after" in exposed
        assert "x-ratelimit-remaining" in exposed

    def test_allowed_responses_carry_limit_headers(self, client):
        response = _sign_in(client, "nobody@example.com", "WrongPassword1!")
        assert response.status_code == 401
        assert response.headers["X-RateLimit-Limit"] == "1000"
        assert response.headers["X-RateLimit-Remaining"] == "999"

    def test_pages_are_not_rate_limited(self, client, monkeypatch):
        monkeypatch.setenv("RATE_LIMIT_CAPACITY", "1")
        reset_runtime_for_tests()
        for _ in range(3):
            assert client.get("/login").status_code == 200


class TestSignInFlow:
    def test_signup_then_sign_in_sets_session_cookie(self, client):
        user = _signup(client, "sam@example.com")
        assert user["email"] == "sam@example.com"
        assert user["role"] == "user"

        response = _sign_in(client, "sam@example.com")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["state"] == "authenticated"
        assert data["redirect_to"] == "/dashboard"
        assert "httponly" in _set_cookie_headers(response).lower()

        me = client.get("/v1/auth/me")
        assert me.status_code == 200
        assert me.json()["data"]["email"] == "sam@example.com"

    def test_duplicate_signup_conflicts(self, client):
        _signup(client, "sam@example.com")
        response = client.post("/v1/auth/sign-up", json={"email": "sam@example.com", "password": PASSWORD})
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_weak_password_is_a_validation_error(self, client):
        response = client.post("/v1/auth/sign-up", json={"email": "sam@example.com", "password": "weak"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_bad_credentials_are_unauthorized(self, client):
        _signup(client, "sam@example.com")
        response = _sign_in(client, "sam@example.com", "WrongPassword1!")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_me_requires_session(self, client):
        response = client.get("/v1/auth/me")
        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["message"] == "invalid session"

    def test_bearer_token_is_accepted(self, client):
        _signup(client, "sam@example.com")
        _sign_in(client, "sam@example.com")
        token = client.cookies.get(SESSION_COOKIE)

        bare = TestClient(app_module.app)
        response = bare.get("/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200

    def test_sign_out_invalidates_session(self, client):
        _signup(client, "sam@example.com")
        _sign_in(client, "sam@example.com")
        token = client.cookies.get(SESSION_COOKIE)

        assert client.post("/v1/auth/sign-out").status_code == 200
        bare = TestClient(app_module.app)
        response = bare.get("/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    def test_email_verification_round_trip(self, client, monkeypatch):
        runtime = get_runtime()
        sent = {}

        def _capture(to_address, token):
            sent[to_address] = token
            return True

        monkeypatch.setattr(runtime.email, "send_email_verification", _capture)
        user = _signup(client, "sam@example.com")
        assert runtime.store.get_user(user["id"]).email_verified is False

        token = sent["sam@example.com"]
        response = client.post("/v1/auth/email/verify", json={"token": token})
        assert response.status_code == 200
        assert runtime.store.get_user(user["id"]).email_verified is True

        again = client.post("/v1/auth/email/verify", json={"token": token})
        assert again.status_code == 400


class TestTwoFactorFlow:
    def _enable(self, client, email: str) -> dict:
        _signup(client, email)
        _sign_in(client, email)
        response = client.post("/v1/auth/two-factor/enable", json={"password": PASSWORD})
        assert response.status_code == 200, response.text
        enrollment = response.json()["data"]
        assert enrollment["state"] == "pending_verification"

        status = client.get("/v1/auth/two-factor").json()["data"]
        assert status["state"] == "pending_verification"

        code = pyotp.parse_uri(enrollment["totp_uri"]).now()
        response = client.post("/v1/auth/two-factor/verify", json={"code": code})
        assert response.status_code == 200, response.text
        assert response.json()["data"]["state"] == "enabled"
        return enrollment

    def test_enable_requires_password(self, client):
        _signup(client, "tf@example.com")
        _sign_in(client, "tf@example.com")
        response = client.post("/v1/auth/two-factor/enable", json={"password": "WrongPassword1!"})
        assert response.status_code == 401

    def test_sign_in_with_second_factor(self, client):
        enrollment = self._enable(client, "tf@example.com")
        client.post("/v1/auth/sign-out")

        response = _sign_in(client, "tf@example.com")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["state"] == "awaiting_two_factor"
        assert data["two_factor_required"] is True
        assert data["redirect_to"] == "/login?2fa=true"
        assert client.cookies.get(SESSION_COOKIE) is None

        login = client.get("/login", params={"2fa": "true"})
        assert login.json()["data"]["state"] == "awaiting_two_factor"

        code = pyotp.parse_uri(enrollment["totp_uri"]).now()
        response = client.post("/v1/auth/two-factor/sign-in", json={"code": code})
        assert response.status_code == 200, response.text
        assert response.json()["data"]["state"] == "authenticated"
        assert client.get("/dashboard").status_code == 200

    def test_backup_code_sign_in_and_reuse(self, client):
        enrollment = self._enable(client, "tf@example.com")
        backup = enrollment["backup_codes"][0]
        client.post("/v1/auth/sign-out")

        _sign_in(client, "tf@example.com")
        response = client.post("/v1/auth/two-factor/sign-in", json={"code": backup})
        assert response.status_code == 200
        client.post("/v1/auth/sign-out")

        _sign_in(client, "tf@example.com")
        response = client.post("/v1/auth/two-factor/sign-in", json={"code": backup})
        assert response.status_code == 401

    def test_two_factor_sign_in_without_challenge(self, client):
        response = client.post("/v1/auth/two-factor/sign-in", json={"code": "123456"})
        assert response.status_code == 401

    def test_disable_two_factor(self, client):
        self._enable(client, "tf@example.com")
        response = client.post("/v1/auth/two-factor/disable", json={"password": PASSWORD})
        assert response.status_code == 200
        assert response.json()["data"]["state"] == "disabled"

        client.post("/v1/auth/sign-out")
        assert _sign_in(client, "tf@example.com").json()["data"]["state"] == "authenticated"


class TestSessionManagement:
    def test_list_marks_current_and_revoke_other(self, client):
        _signup(client, "multi@example.com")
        _sign_in(client, "multi@example.com")
        laptop = TestClient(app_module.app, follow_redirects=False)
        _sign_in(laptop, "multi@example.com")
        laptop_token = laptop.cookies.get(SESSION_COOKIE)

        items = client.get("/v1/auth/sessions").json()["data"]["items"]
        assert len(items) == 2
        assert sum(1 for item in items if item["current"]) == 1

        response = client.post("/v1/auth/sessions/revoke", json={"token": laptop_token})
        assert response.status_code == 200
        assert laptop.get("/v1/auth/me").status_code == 401
        assert client.get("/v1/auth/me").status_code == 200

    def test_cannot_revoke_current_session(self, client):
        _signup(client, "multi@example.com")
        _sign_in(client, "multi@example.com")
        token = client.cookies.get(SESSION_COOKIE)

        response = client.post("/v1/auth/sessions/revoke", json={"token": token})
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_revoked_session_is_redirected_from_dashboard(self, client):
        _signup(client, "multi@example.com")
        _sign_in(client, "multi@example.com")
        other = TestClient(app_module.app, follow_redirects=False)
        _sign_in(other, "multi@example.com")
        client.post("/v1/auth/sessions/revoke", json={"token": other.cookies.get(SESSION_COOKIE)})

        response = other.get("/dashboard")
        assert response.status_code == 307
        assert f"{MARKER_COOKIE}=" in _set_cookie_headers(response)


class TestAdmin:
    @pytest.fixture
    def admin_client(self, monkeypatch):
        monkeypatch.setenv("BOOTSTRAP_ADMIN_EMAIL", "root@example.com")
        monkeypatch.setenv("BOOTSTRAP_ADMIN_PASSWORD", PASSWORD)
        reset_runtime_for_tests()
        admin = TestClient(app_module.app, follow_redirects=False)
        assert _sign_in(admin, "root@example.com").status_code == 200
        return admin

    def test_admin_page_for_admin(self, admin_client):
        response = admin_client.get("/admin")
        assert response.status_code == 200
        assert response.json()["data"]["page"] == "admin"

    def test_admin_page_sends_regular_user_home(self, admin_client, client):
        _signup(client, "user@example.com")
        _sign_in(client, "user@example.com")

        response = client.get("/admin")
        assert response.status_code == 307
        assert response.headers["location"] == "/dashboard"

    def test_admin_api_requires_admin_role(self, admin_client, client):
        _signup(client, "user@example.com")
        _sign_in(client, "user@example.com")
        assert client.get("/v1/admin/users").status_code == 403

        listed = admin_client.get("/v1/admin/users").json()["data"]["items"]
        assert {u["email"] for u in listed} == {"root@example.com", "user@example.com"}

    def test_role_change_revokes_target_sessions(self, admin_client, client):
        user = _signup(client, "user@example.com")
        _sign_in(client, "user@example.com")

        response = admin_client.post(f"/v1/admin/users/{user['id']}/role", json={"role": "admin"})
        assert response.status_code == 200
        assert response.json()["data"]["role"] == "admin"
        assert client.get("/v1/auth/me").status_code == 401


class TestAmbient:
    def test_untrusted_origin_is_rejected_for_cookie_posts(self, client):
        _signup(client, "sam@example.com")
        _sign_in(client, "sam@example.com")

        response = client.post("/v1/auth/sign-out", headers={"Origin": "https://evil.example"})
        assert response.status_code == 403
        assert response.json()["error"]["message"] == "untrusted origin"

    def test_healthz_reports_fallback_cache(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["redis"]["status"] == "not_configured"

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
