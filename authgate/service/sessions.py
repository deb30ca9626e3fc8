from __future__ import annotations

from typing import List

from authgate.logging import get_logger
from authgate.service.errors import ForbiddenError, NotFoundError
from authgate.service.identity import AuthContext, IdentityProvider
from authgate.storage.models import Session

logger = get_logger(__name__)


class SessionLifecycleView:
    """List and revoke a user's sessions on their behalf."""

    def __init__(self, identity: IdentityProvider) -> None:
        self.identity = identity

    async def list_sessions(self, user_id: str) -> List[Session]:
        sessions = await self.identity.list_sessions(user_id)
        return sorted(sessions, key=lambda s: s.created_at, reverse=True)

    async def revoke(self, ctx: AuthContext, token: str) -> None:
        """Revoke another of the caller's sessions.

        The caller's own session cannot be revoked here; sign-out does that.
        Tokens that belong to someone else are reported as missing so this
        cannot be used to probe for valid tokens.
        """
        if token == ctx.token:
            raise ForbiddenError("cannot revoke the current session")
        owned = {s.token for s in await self.identity.list_sessions(ctx.user_id)}
        if token not in owned:
            raise NotFoundError("session not found")
        await self.identity.revoke_session(token)
        logger.info("session_revoked_by_owner", user_id=ctx.user_id, current_session_id=ctx.session_id)

    async def sign_out(self, ctx: AuthContext) -> None:
        await self.identity.revoke_session(ctx.token)
