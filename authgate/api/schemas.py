from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from authgate.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
})


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    invisible = set("\u200b\u200c\u200d\ufeff")
    invisible.update(chr(c) for c in range(0x202A, 0x202F))
    invisible.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in invisible)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not re.search(r"[a-z]", value):
        raise ValueError("password must contain a lowercase letter")
    if not re.search(r"[A-Z]", value):
        raise ValueError("password must contain an uppercase letter")
    if not re.search(r"\d", value):
        raise ValueError("password must contain a digit")
    if not re.search(r"[^A-Za-z0-9]", value):
        raise ValueError("password must contain a special character")
    return value


class SignupRequest(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class SignInRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_sign_in_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordConfirmRequest(BaseModel):
    """Password re-entry for enabling or disabling two-factor."""

    password: str = Field(..., min_length=1, max_length=128)


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=16)


class TwoFactorSignInRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=16, description="TOTP or backup code")
    trust_device: bool = False


class RevokeSessionRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., max_length=256)


class RoleUpdateRequest(BaseModel):
    role: Literal["user", "admin"]


class UserResponse(BaseModel):
    id: str
    email: str
    role: str
    two_factor_enabled: bool
    email_verified: bool
    created_at: datetime


class SignInResponse(BaseModel):
    state: Literal["awaiting_credentials", "awaiting_two_factor", "authenticated"]
    two_factor_required: bool = False
    user: Optional[UserResponse] = None
    session_expires_at: Optional[datetime] = None
    redirect_to: Optional[str] = None


class TwoFactorEnrollmentResponse(BaseModel):
    state: str
    totp_uri: str
    backup_codes: List[str]


class TwoFactorStatusResponse(BaseModel):
    state: str
    enabled: bool
    backup_codes_remaining: int = 0


class SessionResponse(BaseModel):
    id: str
    token: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    last_seen_at: Optional[datetime] = None
    current: bool = False


class SessionListResponse(BaseModel):
    items: List[SessionResponse]


class PageResponse(BaseModel):
    """JSON stand-in for a rendered page."""

    page: str
    state: Optional[str] = None
    callback_url: Optional[str] = None
    user: Optional[UserResponse] = None
