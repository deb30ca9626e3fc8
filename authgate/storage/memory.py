from __future__ import annotations

import base64
import hashlib
import hmac
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from cryptography.fernet import Fernet, InvalidToken

from authgate.logging import get_logger
from authgate.storage.errors import ConstraintViolation
from authgate.storage.models import ROLES, Session, TwoFactorConfig, User, utcnow


class MemoryStore:
    """Thread-safe in-process store for users, credentials, sessions and 2FA.

    All mutations happen under a single re-entrant lock, so the compare-and-swap
    helpers used by the two-factor flow (enrollment, activation, backup-code
    consumption) are atomic with respect to concurrent requests.
    """

    def __init__(self, *, secret_key: str) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.sessions: Dict[str, Session] = {}
        self.two_factor: Dict[str, TwoFactorConfig] = {}
        self._data_lock = threading.RLock()
        self._cipher = self._build_cipher(secret_key)

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_cipher(self, key_material: str) -> Fernet:
        if not key_material:
            raise RuntimeError("secret key required to encrypt two-factor secrets")
        return Fernet(self._derive_cipher_key(key_material))

    def _encrypt_secret(self, secret: str) -> str:
        return self._cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, secret: str) -> str:
        try:
            return self._cipher.decrypt(secret.encode()).decode()
        except InvalidToken as exc:
            self.logger.error("two_factor_secret_decrypt_failed")
            raise RuntimeError("two-factor secret could not be decrypted") from exc

    # users
    def create_user(
        self,
        email: str,
        *,
        role: str = "user",
        email_verified: bool = False,
        meta: Optional[Dict] = None,
    ) -> User:
        if role not in ROLES:
            raise ConstraintViolation("invalid role", {"role": role})
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                role=role,
                email_verified=email_verified,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            return sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)[:limit]

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        if role not in ROLES:
            raise ConstraintViolation("invalid role", {"role": role})
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            return user

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_verified = True
            return user

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # two-factor
    def get_two_factor(self, user_id: str) -> Optional[TwoFactorConfig]:
        with self._data_lock:
            cfg = self.two_factor.get(user_id)
            if not cfg:
                return None
            return replace(
                cfg,
                secret=self._decrypt_secret(cfg.secret),
                backup_code_hashes=list(cfg.backup_code_hashes),
            )

    def begin_two_factor_enrollment(
        self, user_id: str, secret: str, backup_code_hashes: Sequence[str]
    ) -> TwoFactorConfig:
        """Store a pending secret and backup batch, replacing any earlier pending one."""
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for two-factor", {"user_id": user_id})
            existing = self.two_factor.get(user_id)
            if existing and existing.enabled:
                raise ConstraintViolation(
                    "two-factor already enabled", {"user_id": user_id}
                )
            record = TwoFactorConfig(
                user_id=user_id,
                secret=self._encrypt_secret(secret),
                enabled=False,
                backup_code_hashes=list(backup_code_hashes),
            )
            self.two_factor[user_id] = record
            return replace(record, secret=secret, backup_code_hashes=list(backup_code_hashes))

    def activate_two_factor(self, user_id: str, expected_secret: str) -> bool:
        """Flip a pending record to enabled if it still holds ``expected_secret``."""
        with self._data_lock:
            cfg = self.two_factor.get(user_id)
            user = self.users.get(user_id)
            if not cfg or not user or cfg.enabled:
                return False
            if not hmac.compare_digest(self._decrypt_secret(cfg.secret), expected_secret):
                return False
            cfg.enabled = True
            cfg.verified_at = utcnow()
            user.two_factor_enabled = True
            return True

    def clear_two_factor(self, user_id: str) -> bool:
        with self._data_lock:
            removed = self.two_factor.pop(user_id, None)
            user = self.users.get(user_id)
            if user:
                user.two_factor_enabled = False
            return removed is not None

    def consume_backup_code(self, user_id: str, code_hash: str) -> bool:
        """Remove ``code_hash`` from the unused set; False if absent or already used."""
        with self._data_lock:
            cfg = self.two_factor.get(user_id)
            if not cfg or not cfg.enabled:
                return False
            for stored in cfg.backup_code_hashes:
                if hmac.compare_digest(stored, code_hash):
                    cfg.backup_code_hashes.remove(stored)
                    return True
            return False

    # sessions
    def create_session(
        self,
        user_id: str,
        ttl_seconds: int,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id=user_id,
                ttl_seconds=ttl_seconds,
                user_agent=user_agent,
                ip_address=ip_address,
            )
            self.sessions[sess.token] = sess
            return sess

    def get_session_by_token(self, token: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(token)

    def touch_session(self, token: str, seen_at: datetime) -> None:
        with self._data_lock:
            sess = self.sessions.get(token)
            if sess:
                sess.last_seen_at = seen_at

    def revoke_session(self, token: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(token)
            if not sess or sess.revoked_at is not None:
                return None
            sess.revoked_at = utcnow()
            return sess

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            return [s for s in self.sessions.values() if s.user_id == user_id]

    def revoke_user_sessions(self, user_id: str) -> List[str]:
        with self._data_lock:
            now = utcnow()
            revoked = []
            for sess in self.sessions.values():
                if sess.user_id == user_id and sess.revoked_at is None:
                    sess.revoked_at = now
                    revoked.append(sess.token)
            return revoked
