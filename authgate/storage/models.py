from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

ROLES = ("user", "admin")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    role: str = "user"
    two_factor_enabled: bool = False
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass
class Session:
    """A bearer session; valid while unexpired and not revoked."""

    id: str
    token: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    last_seen_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_seconds: int = 24 * 60 * 60,
        user_agent: str | None = None,
        ip_address: str | None = None,
        *,
        now: datetime | None = None,
    ) -> "Session":
        if ttl_seconds <= 0:
            raise ValueError("session ttl must be positive")
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            token=secrets.token_urlsafe(32),
            user_id=user_id,
            created_at=created,
            expires_at=created + timedelta(seconds=ttl_seconds),
            user_agent=user_agent,
            ip_address=ip_address,
            last_seen_at=created,
        )

    def is_active(self, now: datetime | None = None) -> bool:
        moment = now or utcnow()
        return self.revoked_at is None and moment < self.expires_at


@dataclass
class TwoFactorConfig:
    """Second-factor material for one user.

    Exists only while two-factor is pending or enabled. ``secret`` is the
    base32 TOTP seed; ``backup_code_hashes`` holds digests of unused codes.
    """

    user_id: str
    secret: str
    enabled: bool = False
    backup_code_hashes: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    verified_at: Optional[datetime] = None
