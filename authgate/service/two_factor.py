from __future__ import annotations

from enum import Enum
from typing import Optional

from authgate.logging import get_logger
from authgate.service import totp
from authgate.service.errors import AuthenticationError, ValidationError
from authgate.service.identity import IdentityProvider, TwoFactorEnrollment

logger = get_logger(__name__)


class TwoFactorState(str, Enum):
    DISABLED = "disabled"
    PENDING_VERIFICATION = "pending_verification"
    ENABLED = "enabled"


class TwoFactorService:
    """Enrollment state machine: disabled -> pending_verification -> enabled -> disabled.

    Enabling and disabling both require the current password. A pending
    enrollment can be restarted with :meth:`request_enable`, which replaces the
    secret and invalidates every backup code from the previous batch. There is
    no path from ``disabled`` to ``enabled`` that skips code verification.
    """

    def __init__(self, identity: IdentityProvider) -> None:
        self.identity = identity

    def state(self, user_id: str) -> TwoFactorState:
        cfg = self.identity.get_two_factor(user_id)
        if not cfg:
            return TwoFactorState.DISABLED
        return TwoFactorState.ENABLED if cfg.enabled else TwoFactorState.PENDING_VERIFICATION

    def backup_codes_remaining(self, user_id: str) -> int:
        cfg = self.identity.get_two_factor(user_id)
        return len(cfg.backup_code_hashes) if cfg and cfg.enabled else 0

    async def request_enable(self, user_id: str, password: str) -> TwoFactorEnrollment:
        if self.state(user_id) is TwoFactorState.ENABLED:
            raise ValidationError("two-factor authentication is already enabled")
        enrollment = await self.identity.enroll_two_factor(user_id, password)
        if enrollment is None:
            raise AuthenticationError("invalid credentials")
        return enrollment

    async def verify(self, user_id: str, code: str) -> TwoFactorState:
        if self.state(user_id) is not TwoFactorState.PENDING_VERIFICATION:
            raise ValidationError("no two-factor enrollment is pending")
        normalized = totp.normalize_totp(code)
        if normalized is None:
            raise ValidationError("code must be 6 digits")
        if not await self.identity.verify_two_factor_enrollment(user_id, normalized):
            raise AuthenticationError("invalid code")
        return TwoFactorState.ENABLED

    async def request_disable(self, user_id: str, password: str) -> TwoFactorState:
        if self.state(user_id) is TwoFactorState.DISABLED:
            raise ValidationError("two-factor authentication is not enabled")
        if not await self.identity.disable_two_factor(user_id, password):
            raise AuthenticationError("invalid credentials")
        return TwoFactorState.DISABLED

    async def sign_in_verify(
        self,
        challenge_token: Optional[str],
        code: str,
        *,
        trust_device: bool = False,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ):
        """Finish a password sign-in with a TOTP or backup code.

        Returns ``(session, trusted_device_token)``; the device token is None
        unless ``trust_device`` was requested. The challenge is claimed before
        the code is checked, so a backup code is only spent by the request that
        holds the challenge. A wrong code puts the challenge back with the time
        it had left.
        """
        if totp.normalize_totp(code) is None and totp.normalize_backup_code(code) is None:
            raise ValidationError("code must be a 6 digit code or a backup code")
        claimed = await self.identity.claim_two_factor_challenge(challenge_token)
        if not claimed:
            raise AuthenticationError("two-factor challenge expired or missing")
        user_id, remaining = claimed
        if not await self.identity.verify_two_factor_login(user_id, code):
            await self.identity.store_two_factor_challenge(challenge_token, user_id, remaining)
            logger.info("two_factor_sign_in_rejected", user_id=user_id)
            raise AuthenticationError("invalid code")
        user = self.identity.store.get_user(user_id)
        if not user:
            raise AuthenticationError("two-factor challenge expired or missing")
        session = await self.identity.issue_session(user, user_agent=user_agent, ip_address=ip_address)
        device_token = await self.identity.issue_trusted_device(user_id) if trust_device else None
        logger.info("two_factor_sign_in_completed", user_id=user_id, trusted_device=trust_device)
        return session, device_token
