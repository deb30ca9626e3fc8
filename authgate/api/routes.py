from __future__ import annotations

from typing import Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request, Response
from fastapi.responses import RedirectResponse

from authgate.api.schemas import (
    EmailVerificationRequest,
    Envelope,
    PageResponse,
    PasswordConfirmRequest,
    RevokeSessionRequest,
    RoleUpdateRequest,
    SessionListResponse,
    SessionResponse,
    SignInRequest,
    SignInResponse,
    SignupRequest,
    TwoFactorCodeRequest,
    TwoFactorEnrollmentResponse,
    TwoFactorSignInRequest,
    TwoFactorStatusResponse,
    UserResponse,
)
from authgate.logging import get_logger
from authgate.service.errors import DependencyUnavailableError
from authgate.service.gateway import client_ip_from, safe_callback
from authgate.service.identity import AuthContext
from authgate.service.runtime import Runtime, get_runtime
from authgate.service.sign_in import SignInState
from authgate.service.two_factor import TwoFactorState
from authgate.storage.models import Session, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")
pages = APIRouter()

TWO_FACTOR_COOKIE = "authgate.two_factor"
TRUSTED_DEVICE_COOKIE = "authgate.trusted_device"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _session_token(request: Request, runtime: Runtime) -> Optional[str]:
    token = request.cookies.get(runtime.settings.session_cookie_name)
    if token:
        return token
    authorization = request.headers.get("Authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()
    return None


def _client_ip(request: Request, runtime: Runtime) -> Optional[str]:
    return client_ip_from(
        request.headers,
        request.client.host if request.client else None,
        trust_proxy_headers=runtime.settings.trust_proxy_headers,
    )


async def get_user(request: Request) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.identity.authenticate(_session_token(request, runtime))
    if not ctx:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    return ctx


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    if principal.role != "admin":
        raise _http_error("forbidden", "admin access required", status_code=403)
    return principal


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        role=user.role,
        two_factor_enabled=user.two_factor_enabled,
        email_verified=user.email_verified,
        created_at=user.created_at,
    )


def _cookie_kwargs(runtime: Runtime) -> dict:
    return {
        "httponly": True,
        "secure": runtime.settings.cookie_secure,
        "samesite": "lax",
        "path": "/",
    }


def _apply_session_cookie(response: Response, runtime: Runtime, session: Session) -> None:
    response.set_cookie(
        runtime.settings.session_cookie_name,
        session.token,
        expires=session.expires_at,
        **_cookie_kwargs(runtime),
    )
    # A fresh session supersedes any stale auth-failure marker.
    response.delete_cookie(runtime.settings.auth_failure_cookie_name, path="/")


def _clear_session_cookie(response: Response, runtime: Runtime) -> None:
    response.delete_cookie(runtime.settings.session_cookie_name, path="/")


# pages


async def _require_page_session(
    request: Request, runtime: Runtime
) -> Tuple[Optional[AuthContext], Optional[RedirectResponse]]:
    """Full downstream validation for page routes.

    On failure the session cookie is cleared and the signed auth-failure
    marker is set so the gateway lets the login page render instead of
    bouncing back here.
    """
    token = _session_token(request, runtime)
    try:
        ctx = await runtime.identity.authenticate(token)
    except DependencyUnavailableError:
        logger.warning("session_validation_unavailable", path=request.url.path)
        ctx = None
    if ctx:
        return ctx, None
    redirect = RedirectResponse(
        runtime.gateway.login_redirect(request.url.path, request.url.query), status_code=307
    )
    _clear_session_cookie(redirect, runtime)
    redirect.set_cookie(
        runtime.settings.auth_failure_cookie_name,
        runtime.gateway.marker.issue(),
        max_age=runtime.settings.auth_failure_ttl_seconds,
        **_cookie_kwargs(runtime),
    )
    return None, redirect


@pages.get("/login", response_model=Envelope, tags=["pages"])
async def login_page(
    request: Request,
    callback_url: Optional[str] = Query(None, alias="callbackUrl"),
):
    runtime = get_runtime()
    challenge = await runtime.identity.resolve_two_factor_challenge(request.cookies.get(TWO_FACTOR_COOKIE))
    state = SignInState.AWAITING_TWO_FACTOR if challenge else SignInState.AWAITING_CREDENTIALS
    return Envelope(
        status="ok",
        data=PageResponse(
            page="login",
            state=state.value,
            callback_url=safe_callback(callback_url, runtime.settings.authenticated_home_path),
        ),
    )


@pages.get("/register", response_model=Envelope, tags=["pages"])
async def register_page():
    runtime = get_runtime()
    if not runtime.settings.allow_signup:
        raise _http_error("forbidden", "signup disabled", status_code=403)
    return Envelope(status="ok", data=PageResponse(page="register"))


@pages.get("/dashboard", response_model=Envelope, tags=["pages"])
async def dashboard_page(request: Request):
    runtime = get_runtime()
    ctx, redirect = await _require_page_session(request, runtime)
    if redirect:
        return redirect
    user = runtime.store.get_user(ctx.user_id)
    return Envelope(status="ok", data=PageResponse(page="dashboard", user=_user_response(user)))


@pages.get("/admin", response_model=Envelope, tags=["pages"])
async def admin_page(request: Request):
    runtime = get_runtime()
    ctx, redirect = await _require_page_session(request, runtime)
    if redirect:
        return redirect
    if ctx.role != "admin":
        logger.info("admin_page_denied", user_id=ctx.user_id)
        return RedirectResponse(runtime.settings.authenticated_home_path, status_code=307)
    user = runtime.store.get_user(ctx.user_id)
    return Envelope(status="ok", data=PageResponse(page="admin", user=_user_response(user)))


# auth


@router.post("/auth/sign-up", response_model=Envelope, status_code=201, tags=["auth"])
async def sign_up(body: SignupRequest):
    """Create an account and send a verification link.

    No session is issued; the client signs in afterwards.

    Raises:
        403: If signup is disabled in settings
        409: If the email is already registered
    """
    runtime = get_runtime()
    if not runtime.settings.allow_signup:
        raise _http_error("forbidden", "signup disabled", status_code=403)
    user = await runtime.identity.signup(body.email, body.password)
    token = await runtime.identity.request_email_verification(user)
    runtime.email.send_email_verification(user.email, token)
    return Envelope(status="ok", data=_user_response(user))


@router.post("/auth/sign-in", response_model=Envelope, tags=["auth"])
async def sign_in(body: SignInRequest, request: Request, response: Response):
    """Password step of sign-in.

    Returns ``authenticated`` with a session cookie, or ``awaiting_two_factor``
    with a short-lived challenge cookie when a second factor is required.
    """
    runtime = get_runtime()
    result = await runtime.sign_in.sign_in(
        body.email,
        body.password,
        trusted_device_token=request.cookies.get(TRUSTED_DEVICE_COOKIE),
        user_agent=request.headers.get("user-agent"),
        ip_address=_client_ip(request, runtime),
    )
    if result.state is SignInState.AWAITING_TWO_FACTOR:
        response.set_cookie(
            TWO_FACTOR_COOKIE,
            result.challenge_token,
            max_age=runtime.settings.two_factor_challenge_ttl_seconds,
            **_cookie_kwargs(runtime),
        )
        return Envelope(
            status="ok",
            data=SignInResponse(
                state=result.state.value,
                two_factor_required=True,
                redirect_to=f"{runtime.settings.auth_entry_path}?2fa=true",
            ),
        )
    _apply_session_cookie(response, runtime, result.session)
    return Envelope(
        status="ok",
        data=SignInResponse(
            state=result.state.value,
            user=_user_response(result.user),
            session_expires_at=result.session.expires_at,
            redirect_to=runtime.settings.authenticated_home_path,
        ),
    )


@router.post("/auth/two-factor/sign-in", response_model=Envelope, tags=["auth"])
async def two_factor_sign_in(body: TwoFactorSignInRequest, request: Request, response: Response):
    runtime = get_runtime()
    session, device_token = await runtime.two_factor.sign_in_verify(
        request.cookies.get(TWO_FACTOR_COOKIE),
        body.code,
        trust_device=body.trust_device,
        user_agent=request.headers.get("user-agent"),
        ip_address=_client_ip(request, runtime),
    )
    _apply_session_cookie(response, runtime, session)
    response.delete_cookie(TWO_FACTOR_COOKIE, path="/")
    if device_token:
        response.set_cookie(
            TRUSTED_DEVICE_COOKIE,
            device_token,
            max_age=runtime.settings.trusted_device_ttl_seconds,
            **_cookie_kwargs(runtime),
        )
    user = runtime.store.get_user(session.user_id)
    return Envelope(
        status="ok",
        data=SignInResponse(
            state=SignInState.AUTHENTICATED.value,
            user=_user_response(user),
            session_expires_at=session.expires_at,
            redirect_to=runtime.settings.authenticated_home_path,
        ),
    )


@router.post("/auth/sign-out", response_model=Envelope, tags=["auth"])
async def sign_out(response: Response, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.sessions.sign_out(principal)
    _clear_session_cookie(response, runtime)
    return Envelope(status="ok", data={"signed_out": True})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.store.get_user(principal.user_id)
    return Envelope(status="ok", data=_user_response(user))


@router.post("/auth/email/verification", response_model=Envelope, tags=["auth"])
async def request_email_verification(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.store.get_user(principal.user_id)
    if user.email_verified:
        return Envelope(status="ok", data={"email_verified": True})
    token = await runtime.identity.request_email_verification(user)
    sent = runtime.email.send_email_verification(user.email, token)
    return Envelope(status="ok", data={"email_verified": False, "sent": sent})


@router.post("/auth/email/verify", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest):
    runtime = get_runtime()
    if not await runtime.identity.complete_email_verification(body.token):
        raise _http_error("validation_error", "invalid or expired token", status_code=400)
    return Envelope(status="ok", data={"email_verified": True})


# two-factor


@router.get("/auth/two-factor", response_model=Envelope, tags=["two-factor"])
async def two_factor_status(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    state = runtime.two_factor.state(principal.user_id)
    return Envelope(
        status="ok",
        data=TwoFactorStatusResponse(
            state=state.value,
            enabled=state is TwoFactorState.ENABLED,
            backup_codes_remaining=runtime.two_factor.backup_codes_remaining(principal.user_id),
        ),
    )


@router.post("/auth/two-factor/enable", response_model=Envelope, tags=["two-factor"])
async def enable_two_factor(body: PasswordConfirmRequest, principal: AuthContext = Depends(get_user)):
    """Start enrollment. The URI and backup codes are shown exactly once."""
    runtime = get_runtime()
    enrollment = await runtime.two_factor.request_enable(principal.user_id, body.password)
    return Envelope(
        status="ok",
        data=TwoFactorEnrollmentResponse(
            state=TwoFactorState.PENDING_VERIFICATION.value,
            totp_uri=enrollment.provisioning_uri,
            backup_codes=enrollment.backup_codes,
        ),
    )


@router.post("/auth/two-factor/verify", response_model=Envelope, tags=["two-factor"])
async def verify_two_factor(body: TwoFactorCodeRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    state = await runtime.two_factor.verify(principal.user_id, body.code)
    user = runtime.store.get_user(principal.user_id)
    runtime.email.send_two_factor_notice(user.email, enabled=True)
    return Envelope(status="ok", data=TwoFactorStatusResponse(
        state=state.value,
        enabled=True,
        backup_codes_remaining=runtime.two_factor.backup_codes_remaining(principal.user_id),
    ))


@router.post("/auth/two-factor/disable", response_model=Envelope, tags=["two-factor"])
async def disable_two_factor(body: PasswordConfirmRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    state = await runtime.two_factor.request_disable(principal.user_id, body.password)
    user = runtime.store.get_user(principal.user_id)
    runtime.email.send_two_factor_notice(user.email, enabled=False)
    return Envelope(status="ok", data=TwoFactorStatusResponse(state=state.value, enabled=False))


# sessions


@router.get("/auth/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    sessions = await runtime.sessions.list_sessions(principal.user_id)
    items = [
        SessionResponse(
            id=s.id,
            token=s.token,
            ip_address=s.ip_address,
            user_agent=s.user_agent,
            created_at=s.created_at,
            expires_at=s.expires_at,
            last_seen_at=s.last_seen_at,
            current=s.token == principal.token,
        )
        for s in sessions
    ]
    return Envelope(status="ok", data=SessionListResponse(items=items))


@router.post("/auth/sessions/revoke", response_model=Envelope, tags=["sessions"])
async def revoke_session(body: RevokeSessionRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.sessions.revoke(principal, body.token)
    return Envelope(status="ok", data={"revoked": True})


# admin


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    limit: int = Query(100, ge=1, le=500),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    users = runtime.identity.list_users(limit=limit)
    return Envelope(status="ok", data={"items": [_user_response(u) for u in users]})


@router.post("/admin/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def admin_set_role(
    body: RoleUpdateRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    """Change a user's role; their existing sessions are revoked."""
    runtime = get_runtime()
    user = await runtime.identity.set_user_role(user_id, body.role)
    if not user:
        raise _http_error("not_found", "user not found", status_code=404)
    logger.info("admin_role_changed", admin_id=principal.user_id, user_id=user_id, role=body.role)
    return Envelope(status="ok", data=_user_response(user))
