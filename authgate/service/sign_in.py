from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from authgate.config import Settings
from authgate.logging import get_logger
from authgate.service.errors import AuthenticationError, ForbiddenError
from authgate.service.identity import IdentityProvider, email_fingerprint
from authgate.storage.models import Session, User

logger = get_logger(__name__)


class SignInState(str, Enum):
    AWAITING_CREDENTIALS = "awaiting_credentials"
    AWAITING_TWO_FACTOR = "awaiting_two_factor"
    AUTHENTICATED = "authenticated"


@dataclass
class SignInResult:
    """Outcome of a password step.

    Exactly one of ``session`` (authenticated) or ``challenge_token``
    (awaiting_two_factor) is set.
    """

    state: SignInState
    user: User
    session: Optional[Session] = None
    challenge_token: Optional[str] = None


class SignInService:
    def __init__(self, identity: IdentityProvider, settings: Settings) -> None:
        self.identity = identity
        self.settings = settings

    async def sign_in(
        self,
        email: str,
        password: str,
        *,
        trusted_device_token: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> SignInResult:
        check = await self.identity.verify_credentials(email, password)
        if check is None:
            logger.info("sign_in_rejected", email_hash=email_fingerprint(email))
            raise AuthenticationError("invalid credentials")
        user = check.user
        if self.settings.require_email_verification and not user.email_verified:
            raise ForbiddenError("email address not verified", detail={"reason": "email_unverified"})

        if check.two_factor_required and not await self.identity.is_trusted_device(
            trusted_device_token, user.id
        ):
            token = await self.identity.create_two_factor_challenge(user.id)
            logger.info("sign_in_two_factor_required", user_id=user.id)
            return SignInResult(SignInState.AWAITING_TWO_FACTOR, user, challenge_token=token)

        session = await self.identity.issue_session(user, user_agent=user_agent, ip_address=ip_address)
        return SignInResult(SignInState.AUTHENTICATED, user, session=session)
