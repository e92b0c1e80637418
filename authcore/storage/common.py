"""Common storage utilities shared between memory and postgres implementations.

Both backends normalise email addresses the same way and keep TOTP secrets
encrypted at rest with the same Fernet key derivation, so a deployment can
move between them without re-enrolling users.
"""

from __future__ import annotations

import base64
import hashlib
import os
import secrets
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from authcore.logging import get_logger

logger = get_logger(__name__)


def normalize_email(email: str) -> str:
    """Canonical form used for uniqueness checks and lookups."""
    return (email or "").strip().lower()


def emails_match(left: Optional[str], right: Optional[str]) -> bool:
    if left is None or right is None:
        return False
    return normalize_email(left) == normalize_email(right)


class SecretCipher:
    """Fernet wrapper for TOTP secrets stored by either backend."""

    def __init__(self, key_material: Optional[str] = None) -> None:
        material = key_material or os.getenv("MFA_SECRET_KEY")
        if not material:
            # Without configured key material secrets only survive this process.
            logger.warning("mfa_secret_key_missing", fallback="ephemeral")
            material = secrets.token_urlsafe(64)
        self._fernet = Fernet(self._derive_key(material))

    @staticmethod
    def _derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return token
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken:
            logger.warning("mfa_secret_decrypt_failed")
            return None
