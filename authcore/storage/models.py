from __future__ import annotations

import hashlib
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_token(nbytes: int = 32) -> str:
    """Opaque hex token; 32 bytes gives 256 bits of entropy."""
    return secrets.token_hex(nbytes)


@dataclass
class Identity:
    id: str
    email: str
    password_hash: Optional[str] = None
    totp_secret: Optional[str] = None
    totp_enabled: bool = False
    # argon2 hashes of the unused backup codes
    backup_codes: List[str] = field(default_factory=list)
    name: Optional[str] = None
    email_verified_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    @property
    def requires_step_up(self) -> bool:
        return bool(self.totp_enabled and self.totp_secret)


@dataclass
class ClientMetadata:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None

    @property
    def location(self) -> Optional[str]:
        if self.country and self.city:
            return f"{self.city}, {self.country}"
        return self.country


@dataclass
class Session:
    id: str
    token: str
    identity_id: str
    step_up_verified: bool
    created_at: datetime
    last_active: datetime
    expires_at: datetime
    client: ClientMetadata = field(default_factory=ClientMetadata)

    @classmethod
    def new(
        cls,
        identity_id: str,
        ttl: timedelta,
        *,
        step_up_verified: bool,
        client: ClientMetadata | None = None,
        now: datetime | None = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            token=new_token(),
            identity_id=identity_id,
            step_up_verified=step_up_verified,
            created_at=now,
            last_active=now,
            expires_at=now + ttl,
            client=client or ClientMetadata(),
        )

    @property
    def is_pending(self) -> bool:
        return not self.step_up_verified

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at


class EmailChangeState(str, Enum):
    CREATED = "created"
    VERIFIED = "verified"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


@dataclass
class PendingEmailChange:
    id: str
    identity_id: str
    old_email: str
    new_email: str
    verify_token: str
    cancel_token: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    finalized: bool = False
    finalized_at: Optional[datetime] = None
    cancelled: bool = False
    cancelled_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        identity_id: str,
        old_email: str,
        new_email: str,
        ttl: timedelta,
        *,
        now: datetime | None = None,
    ) -> "PendingEmailChange":
        now = now or utcnow()
        verify_token = new_token()
        cancel_token = new_token()
        while cancel_token == verify_token:
            cancel_token = new_token()
        return cls(
            id=str(uuid.uuid4()),
            identity_id=identity_id,
            old_email=old_email,
            new_email=new_email,
            verify_token=verify_token,
            cancel_token=cancel_token,
            expires_at=now + ttl,
            created_at=now,
        )

    def state(self, now: datetime | None = None) -> EmailChangeState:
        """Lifecycle state; expiry is derived from the clock, never stored."""
        if self.finalized:
            return EmailChangeState.VERIFIED
        if self.cancelled:
            return EmailChangeState.CANCELLED
        if (now or utcnow()) >= self.expires_at:
            return EmailChangeState.EXPIRED
        return EmailChangeState.CREATED

    def is_active(self, now: datetime | None = None) -> bool:
        return self.state(now) is EmailChangeState.CREATED


@dataclass
class RateLimitWindow:
    identifier: str
    endpoint: str
    window_start: datetime
    window_ends: datetime
    attempt_count: int = 0


class AccountTokenPurpose(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


def hash_token(token: str) -> str:
    """Account tokens are looked up by their SHA-256 digest, never stored raw."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass
class AccountToken:
    """Single-use emailed token for signup verification or password reset."""

    id: str
    identity_id: str
    purpose: AccountTokenPurpose
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    used_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        identity_id: str,
        purpose: AccountTokenPurpose,
        ttl: timedelta,
        *,
        now: datetime | None = None,
    ) -> tuple["AccountToken", str]:
        """Return the record and the plaintext token to email."""
        now = now or utcnow()
        token = new_token()
        record = cls(
            id=str(uuid.uuid4()),
            identity_id=identity_id,
            purpose=purpose,
            token_hash=hash_token(token),
            expires_at=now + ttl,
            created_at=now,
        )
        return record, token

    def is_usable(self, now: datetime | None = None) -> bool:
        return self.used_at is None and (now or utcnow()) < self.expires_at
