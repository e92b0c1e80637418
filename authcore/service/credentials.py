from __future__ import annotations

import secrets
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authcore.logging import get_logger
from authcore.storage.models import Identity

logger = get_logger(__name__)


class CredentialVerifier:
    """argon2id password hashing and verification."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        # Verified against when there is no real hash so both paths cost the same.
        self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(24))

    def hash_password(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, identity: Optional[Identity], candidate_password: str) -> bool:
        """Check ``candidate_password`` against the identity's stored hash.

        Identities without a password (or no identity at all) still pay for a
        full verification against a throwaway hash and then fail.
        """

        if identity is None or not identity.password_hash:
            try:
                self._hasher.verify(self._dummy_hash, candidate_password or "")
            except VerificationError:
                pass
            return False
        try:
            return self._hasher.verify(identity.password_hash, candidate_password or "")
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_invalid", identity_id=identity.id)
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True
