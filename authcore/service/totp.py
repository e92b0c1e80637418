from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import re
import secrets
import time
from typing import Callable, List, Optional
from urllib.parse import quote, urlencode

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from authcore.logging import get_logger
from authcore.service.repository import AuthStore

logger = get_logger(__name__)

_TOTP_CODE_RE = re.compile(r"^\d{6}$")
_BACKUP_CODE_RE = re.compile(r"^[0-9A-F]{10}$")


def normalize_code(code: Optional[str]) -> str:
    """Strip whitespace and hyphens; backup codes compare case-insensitively."""
    if not code:
        return ""
    return re.sub(r"[\s-]", "", code).upper()


class TotpVerifier:
    """RFC 6238 time-based one-time passwords (HMAC-SHA1, six digits)."""

    def __init__(
        self,
        *,
        window: int = 2,
        interval: int = 30,
        digits: int = 6,
        issuer: str = "authcore",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.window = window
        self.interval = interval
        self.digits = digits
        self.issuer = issuer
        self._clock = clock

    @staticmethod
    def generate_secret() -> str:
        # 160-bit key, the size RFC 4226 recommends for SHA1
        return base64.b32encode(secrets.token_bytes(20)).decode().rstrip("=")

    def provisioning_uri(self, secret: str, account_name: str) -> str:
        label = quote(f"{self.issuer}:{account_name}")
        query = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": self.digits,
                "period": self.interval,
            }
        )
        return f"otpauth://totp/{label}?{query}"

    @staticmethod
    def is_valid_format(code: Optional[str]) -> bool:
        return bool(code) and bool(_TOTP_CODE_RE.match(normalize_code(code)))

    def code_at(self, secret: str, timestamp: float) -> str:
        """The code for the step containing ``timestamp``, or "" for a bad secret."""

        cleaned = (secret or "").replace(" ", "").upper()
        padded = cleaned + "=" * ((8 - len(cleaned) % 8) % 8)
        try:
            key = base64.b32decode(padded, casefold=True)
        except (binascii.Error, ValueError):
            logger.warning("totp_secret_invalid")
            return ""
        if not key:
            return ""
        counter = int(timestamp // self.interval).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**self.digits
        )
        return str(code_int).zfill(self.digits)

    def verify(self, secret: Optional[str], code: Optional[str]) -> bool:
        """Accept any code within ``window`` steps either side of now."""

        if not secret or not self.is_valid_format(code):
            return False
        candidate = normalize_code(code)
        now = self._clock()
        matched = False
        for offset in range(-self.window, self.window + 1):
            generated = self.code_at(secret, now + offset * self.interval)
            if not generated:
                return False
            # no early exit so every step costs the same
            if hmac.compare_digest(generated, candidate):
                matched = True
        return matched


class BackupCodeStore:
    """Single-use recovery codes; only argon2 hashes are ever persisted."""

    def __init__(
        self,
        store: AuthStore,
        *,
        count: int = 8,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.count = count
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    @staticmethod
    def is_valid_format(code: Optional[str]) -> bool:
        return bool(_BACKUP_CODE_RE.match(normalize_code(code)))

    def generate(self, n: Optional[int] = None) -> List[str]:
        """Fresh plaintext codes formatted ``XXXXX-XXXXX``."""

        codes = []
        for _ in range(n or self.count):
            raw = secrets.token_hex(5).upper()
            codes.append(f"{raw[:5]}-{raw[5:]}")
        return codes

    def hash_codes(self, codes: List[str]) -> List[str]:
        return [self._hasher.hash(normalize_code(code)) for code in codes]

    def _matches(self, code_hash: str, normalized: str) -> bool:
        try:
            return self._hasher.verify(code_hash, normalized)
        except (InvalidHash, VerificationError):
            return False

    def consume(self, identity_id: str, code: str) -> bool:
        """Remove and accept ``code`` if it is one of the identity's unused codes.

        The lookup and the removal share one transaction with the identity row
        locked, so two concurrent submissions of the same code cannot both win.
        """

        normalized = normalize_code(code)
        if not _BACKUP_CODE_RE.match(normalized):
            return False
        with self.store.transaction() as repo:
            identity = repo.lock_identity(identity_id)
            if identity is None:
                return False
            for code_hash in identity.backup_codes:
                if self._matches(code_hash, normalized):
                    return repo.remove_backup_code(identity_id, code_hash)
        return False

    def remaining(self, identity_id: str) -> int:
        with self.store.transaction() as repo:
            identity = repo.get_identity(identity_id)
            return len(identity.backup_codes) if identity else 0

    def replace(self, identity_id: str) -> List[str]:
        """Invalidate all existing codes and return a new set (shown once)."""

        codes = self.generate()
        hashes = self.hash_codes(codes)
        with self.store.transaction() as repo:
            repo.set_backup_codes(identity_id, hashes)
        logger.info("backup_codes_replaced", identity_id=identity_id, count=len(codes))
        return codes
