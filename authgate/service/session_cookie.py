from __future__ import annotations

import re
from typing import Mapping

# Tokens are issued by secrets.token_urlsafe(32): 43 url-safe base64 chars.
_TOKEN_SHAPE = re.compile(r"^[A-Za-z0-9_-]{32,128}$")


def is_well_formed_token(token: str | None) -> bool:
    return bool(token) and _TOKEN_SHAPE.fullmatch(token) is not None


def has_session_cookie(cookies: Mapping[str, str], cookie_name: str) -> bool:
    """Cheap presence and shape check, with no store or cache lookups.

    A True result says nothing about expiry or revocation; handlers behind the
    gateway must still call ``IdentityProvider.validate_session``.
    """
    return is_well_formed_token(cookies.get(cookie_name))
