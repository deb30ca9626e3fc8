from __future__ import annotations

import hashlib
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol, Sequence, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from authgate.config import Settings
from authgate.logging import get_logger
from authgate.service import totp
from authgate.service.errors import ConflictError, ValidationError
from authgate.service.session_cookie import is_well_formed_token
from authgate.storage.errors import ConstraintViolation
from authgate.storage.models import Session, TwoFactorConfig, User
from authgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class IdentityStore(Protocol):
    def create_user(
        self, email: str, *, role: str = "user", email_verified: bool = False, meta: Optional[dict] = None
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorConfig]: ...

    def begin_two_factor_enrollment(
        self, user_id: str, secret: str, backup_code_hashes: Sequence[str]
    ) -> TwoFactorConfig: ...

    def activate_two_factor(self, user_id: str, expected_secret: str) -> bool: ...

    def clear_two_factor(self, user_id: str) -> bool: ...

    def consume_backup_code(self, user_id: str, code_hash: str) -> bool: ...

    def create_session(
        self, user_id: str, ttl_seconds: int, user_agent: str | None = None, ip_address: str | None = None
    ) -> Session: ...

    def get_session_by_token(self, token: str) -> Optional[Session]: ...

    def touch_session(self, token: str, seen_at: datetime) -> None: ...

    def revoke_session(self, token: str) -> Optional[Session]: ...

    def list_user_sessions(self, user_id: str) -> List[Session]: ...

    def revoke_user_sessions(self, user_id: str) -> List[str]: ...


@dataclass
class AuthContext:
    user_id: str
    role: str
    session_id: str
    token: str


@dataclass
class CredentialCheck:
    user: User
    two_factor_required: bool


@dataclass
class TwoFactorEnrollment:
    """Returned once by enrollment; neither the URI nor the codes can be re-read."""

    user_id: str
    provisioning_uri: str
    backup_codes: List[str]


class IdentityProvider:
    """Users, passwords, sessions and second-factor material.

    Works with or without a :class:`RedisCache`. Without one, short-lived
    tokens (two-factor challenges, trusted devices, email verification) live in
    per-process dictionaries guarded by ``_state_lock``.
    """

    _PASSWORD_ALGO = "argon2id"

    def __init__(self, store: IdentityStore, cache: Optional[RedisCache], settings: Settings) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self._state_lock = threading.Lock()
        self._challenges: dict[str, tuple[str, datetime]] = {}
        self._trusted_devices: dict[str, tuple[str, datetime]] = {}
        self._email_verification_tokens: dict[str, tuple[str, datetime]] = {}
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # accounts
    async def signup(self, email: str, password: str, *, role: str = "user") -> User:
        try:
            user = self.store.create_user(email, role=role)
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        self.save_password(user.id, password)
        self.logger.info("user_signed_up", user_id=user.id, role=role)
        return user

    async def verify_credentials(self, email: str, password: str) -> Optional[CredentialCheck]:
        """Check email and password; None on any mismatch."""
        user = self.store.get_user_by_email(email)
        if not user:
            # Equalize timing with the wrong-password path.
            self._pwd_hasher.hash(password)
            return None
        if not self.verify_password(user.id, password):
            return None
        cfg = self.store.get_two_factor(user.id)
        return CredentialCheck(user=user, two_factor_required=bool(cfg and cfg.enabled))

    def list_users(self, limit: int = 100) -> List[User]:
        return self.store.list_users(limit=limit)

    async def set_user_role(self, user_id: str, role: str) -> Optional[User]:
        """Change a role and revoke the user's sessions so the new role applies at once."""
        try:
            user = self.store.update_user_role(user_id, role)
        except ConstraintViolation as exc:
            raise ValidationError(exc.message, detail=exc.detail) from exc
        if user:
            revoked = await self.revoke_user_sessions(user_id)
            self.logger.info(
                "user_role_updated_sessions_revoked", user_id=user_id, new_role=role, revoked=revoked
            )
        return user

    def ensure_admin(self, email: str, password: str) -> User:
        """Create or promote the configured bootstrap administrator."""
        existing = self.store.get_user_by_email(email)
        if existing:
            if not existing.is_admin:
                self.store.update_user_role(existing.id, "admin")
                self.logger.info("bootstrap_admin_promoted", user_id=existing.id)
            return existing
        user = self.store.create_user(email, role="admin", email_verified=True)
        self.save_password(user.id, password)
        self.logger.info("bootstrap_admin_created", user_id=user.id)
        return user

    # sessions
    @staticmethod
    def _session_payload(session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "created_at": session.created_at.isoformat(),
            "expires_at": session.expires_at.isoformat(),
            "ip_address": session.ip_address,
            "user_agent": session.user_agent,
        }

    @staticmethod
    def _session_from_payload(token: str, payload: dict) -> Session:
        return Session(
            id=payload["id"],
            token=token,
            user_id=payload["user_id"],
            created_at=datetime.fromisoformat(payload["created_at"]),
            expires_at=datetime.fromisoformat(payload["expires_at"]),
            ip_address=payload.get("ip_address"),
            user_agent=payload.get("user_agent"),
        )

    def _cache_ttl(self, session: Session) -> int:
        remaining = int((session.expires_at - self._now()).total_seconds())
        return min(self.settings.session_cache_seconds, remaining)

    async def _cache_session(self, session: Session) -> None:
        if not self.cache:
            return
        ttl = self._cache_ttl(session)
        if ttl > 0:
            await self.cache.cache_session(session.token, self._session_payload(session), session.user_id, ttl)

    async def issue_session(
        self, user: User, *, user_agent: Optional[str] = None, ip_address: Optional[str] = None
    ) -> Session:
        session = self.store.create_session(
            user.id,
            ttl_seconds=self.settings.session_ttl_seconds,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        await self._cache_session(session)
        self.logger.info("session_issued", user_id=user.id, session_id=session.id)
        return session

    async def validate_session(self, token: Optional[str]) -> Optional[Session]:
        """Authoritative check: the token exists, is unexpired and not revoked."""
        if not is_well_formed_token(token):
            return None
        now = self._now()
        if self.cache:
            if await self.cache.is_session_revoked(token):
                return None
            payload = await self.cache.get_cached_session(token)
            if payload:
                cached = self._session_from_payload(token, payload)
                stored = self.store.get_session_by_token(token)
                # The store stays authoritative for revocation.
                if stored and stored.is_active(now) and now < cached.expires_at:
                    return cached
        session = self.store.get_session_by_token(token)
        if not session or not session.is_active(now):
            return None
        self.store.touch_session(token, now)
        # Refreshing the cache never extends past the absolute expiry.
        await self._cache_session(session)
        return session

    async def authenticate(self, token: Optional[str]) -> Optional[AuthContext]:
        session = await self.validate_session(token)
        if not session:
            return None
        user = self.store.get_user(session.user_id)
        if not user:
            self.logger.warning("session_user_missing", session_id=session.id)
            return None
        return AuthContext(user_id=user.id, role=user.role, session_id=session.id, token=session.token)

    async def revoke_session(self, token: str) -> bool:
        """Mark the token revoked in the store, then evict and denylist it in the cache.

        The store decides validity, so the token stops working even if the cache
        write fails. Calling again for an already revoked token repeats the
        cache eviction and returns False.
        """
        session = self.store.get_session_by_token(token)
        if not session:
            return False
        newly_revoked = self.store.revoke_session(token) is not None
        if self.cache:
            await self.cache.revoke_session(token, session.expires_at)
        if newly_revoked:
            self.logger.info("session_revoked", user_id=session.user_id, session_id=session.id)
        return newly_revoked

    async def revoke_user_sessions(self, user_id: str) -> int:
        tokens = self.store.revoke_user_sessions(user_id)
        if self.cache:
            for token in tokens:
                session = self.store.get_session_by_token(token)
                if session:
                    await self.cache.revoke_session(token, session.expires_at)
            await self.cache.revoke_user_sessions(user_id)
        return len(tokens)

    async def list_sessions(self, user_id: str) -> List[Session]:
        now = self._now()
        return [s for s in self.store.list_user_sessions(user_id) if s.is_active(now)]

    # two-factor
    def get_two_factor(self, user_id: str) -> Optional[TwoFactorConfig]:
        return self.store.get_two_factor(user_id)

    async def enroll_two_factor(self, user_id: str, password: str) -> Optional[TwoFactorEnrollment]:
        """Mint a new secret and backup batch; None when the password is wrong.

        Any earlier pending secret and its backup codes are replaced.
        """
        user = self.store.get_user(user_id)
        if not user or not self.verify_password(user_id, password):
            return None
        secret = totp.generate_secret()
        codes = totp.generate_backup_codes(self.settings.backup_code_count)
        hashes = [totp.hash_backup_code(code, self.settings.secret_key) for code in codes]
        try:
            self.store.begin_two_factor_enrollment(user_id, secret, hashes)
        except ConstraintViolation as exc:
            raise ValidationError("two-factor already enabled", detail=exc.detail) from exc
        uri = totp.provisioning_uri(secret, user.email, self.settings.two_factor_issuer)
        self.logger.info("two_factor_enrollment_started", user_id=user_id)
        return TwoFactorEnrollment(user_id=user_id, provisioning_uri=uri, backup_codes=codes)

    async def verify_two_factor_enrollment(self, user_id: str, code: str) -> bool:
        cfg = self.store.get_two_factor(user_id)
        if not cfg or cfg.enabled:
            return False
        if not totp.verify_code(cfg.secret, code):
            self.logger.info("two_factor_enrollment_code_rejected", user_id=user_id)
            return False
        # Fails if a concurrent request_enable swapped the secret meanwhile.
        activated = self.store.activate_two_factor(user_id, cfg.secret)
        if activated:
            self.logger.info("two_factor_enabled", user_id=user_id)
        return activated

    async def verify_two_factor_login(self, user_id: str, code: str) -> bool:
        """Accept a live TOTP code or consume an unused backup code."""
        cfg = self.store.get_two_factor(user_id)
        if not cfg or not cfg.enabled:
            return False
        totp_code = totp.normalize_totp(code)
        if totp_code is not None:
            return totp.verify_code(cfg.secret, totp_code)
        if totp.normalize_backup_code(code) is None:
            return False
        consumed = self.store.consume_backup_code(
            user_id, totp.hash_backup_code(code, self.settings.secret_key)
        )
        if consumed:
            self.logger.info("backup_code_consumed", user_id=user_id)
        return consumed

    async def disable_two_factor(self, user_id: str, password: str) -> bool:
        if not self.verify_password(user_id, password):
            return False
        cleared = self.store.clear_two_factor(user_id)
        if cleared:
            self.logger.info("two_factor_disabled", user_id=user_id)
        return cleared

    # short-lived tokens
    def _remember(self, bucket: dict, token: str, user_id: str, ttl_seconds: int) -> None:
        with self._state_lock:
            bucket[token] = (user_id, self._now() + timedelta(seconds=ttl_seconds))

    def _recall(self, bucket: dict, token: str, *, pop: bool) -> Optional[str]:
        with self._state_lock:
            stored = bucket.pop(token, None) if pop else bucket.get(token)
            if not stored:
                return None
            user_id, expires_at = stored
            if expires_at <= self._now():
                bucket.pop(token, None)
                return None
            return user_id

    async def create_two_factor_challenge(self, user_id: str) -> str:
        token = secrets.token_urlsafe(32)
        await self.store_two_factor_challenge(token, user_id, self.settings.two_factor_challenge_ttl_seconds)
        return token

    async def store_two_factor_challenge(self, token: str, user_id: str, ttl_seconds: int) -> None:
        if self.cache:
            await self.cache.set_two_factor_challenge(token, user_id, ttl_seconds)
        else:
            self._remember(self._challenges, token, user_id, ttl_seconds)

    async def resolve_two_factor_challenge(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        if self.cache:
            return await self.cache.get_two_factor_challenge(token)
        return self._recall(self._challenges, token, pop=False)

    async def claim_two_factor_challenge(self, token: Optional[str]) -> Optional[Tuple[str, int]]:
        """Remove a live challenge; returns its owner and the seconds it had left."""
        if not token:
            return None
        if self.cache:
            return await self.cache.pop_two_factor_challenge(token)
        with self._state_lock:
            stored = self._challenges.pop(token, None)
        if not stored:
            return None
        user_id, expires_at = stored
        remaining = int((expires_at - self._now()).total_seconds())
        if remaining < 1:
            return None
        return user_id, remaining

    async def issue_trusted_device(self, user_id: str) -> str:
        token = secrets.token_urlsafe(32)
        ttl = self.settings.trusted_device_ttl_seconds
        if self.cache:
            await self.cache.set_trusted_device(token, user_id, ttl)
        else:
            self._remember(self._trusted_devices, token, user_id, ttl)
        return token

    async def is_trusted_device(self, token: Optional[str], user_id: str) -> bool:
        if not token:
            return False
        if self.cache:
            owner = await self.cache.get_trusted_device(token)
        else:
            owner = self._recall(self._trusted_devices, token, pop=False)
        return owner == user_id

    async def request_email_verification(self, user: User) -> str:
        token = secrets.token_urlsafe(32)
        ttl = 24 * 60 * 60
        if self.cache:
            await self.cache.set_email_verification(token, user.id, ttl)
        else:
            self._remember(self._email_verification_tokens, token, user.id, ttl)
        self.logger.info("email_verification_requested", user_id=user.id)
        return token

    async def complete_email_verification(self, token: str) -> bool:
        if self.cache:
            user_id = await self.cache.pop_email_verification(token)
        else:
            user_id = self._recall(self._email_verification_tokens, token, pop=True)
        if not user_id:
            self.logger.warning("email_verification_invalid_token", token_prefix=token[:8])
            return False
        if not self.store.mark_email_verified(user_id):
            self.logger.warning("email_verification_missing_user", user_id=user_id)
            return False
        self.logger.info("email_verified", user_id=user_id)
        return True

    # passwords
    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), self._PASSWORD_ALGO

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != self._PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            self.logger.info("password_verification_failed", user_id=user_id)
            return False

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)


def email_fingerprint(email: str) -> str:
    return hashlib.sha256(email.encode()).hexdigest()[:16]
