"""TOTP and backup-code helpers.

Secrets are RFC 6238 base32 seeds (SHA1, 6 digits, 30 second step) so any
standard authenticator app can scan the provisioning URI. Backup codes are
formatted ``XXXXX-XXXXX`` for readability and stored only as keyed digests.
"""
from __future__ import annotations

import hashlib
import hmac
import re
import secrets
from typing import List, Optional

import pyotp

TOTP_DIGITS = 6
BACKUP_CODE_LENGTH = 10

_TOTP_PATTERN = re.compile(r"^\d{6}$")
_BACKUP_PATTERN = re.compile(r"^[0-9A-F]{10}$")


def generate_secret() -> str:
    return pyotp.random_base32()


def provisioning_uri(secret: str, account_name: str, issuer: str) -> str:
    return pyotp.TOTP(secret).provisioning_uri(name=account_name, issuer_name=issuer)


def verify_code(secret: str, code: str, window: int = 1) -> bool:
    """Accept the current step and ``window`` adjacent steps either side."""
    if not secret or not code:
        return False
    return pyotp.TOTP(secret).verify(code, valid_window=window)


def normalize_totp(code: str) -> Optional[str]:
    cleaned = code.replace(" ", "").strip()
    return cleaned if _TOTP_PATTERN.match(cleaned) else None


def normalize_backup_code(code: str) -> Optional[str]:
    cleaned = code.replace("-", "").replace(" ", "").strip().upper()
    return cleaned if _BACKUP_PATTERN.match(cleaned) else None


def generate_backup_codes(count: int) -> List[str]:
    codes = []
    for _ in range(count):
        raw = secrets.token_hex(BACKUP_CODE_LENGTH // 2).upper()
        codes.append(f"{raw[:5]}-{raw[5:]}")
    return codes


def hash_backup_code(code: str, key: str) -> str:
    """Keyed digest of a normalized backup code."""
    normalized = normalize_backup_code(code)
    if normalized is None:
        raise ValueError("malformed backup code")
    return hmac.new(key.encode(), normalized.encode(), hashlib.sha256).hexdigest()
