from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from authcore.config import RateLimitedEndpoint, Settings
from authcore.logging import get_logger
from authcore.service.audit import AuditSink, StructlogAuditSink
from authcore.service.credentials import CredentialVerifier
from authcore.service.errors import AuthenticationError, ConflictError, ValidationError
from authcore.service.notifier import Notifier, TwoFactorDisabledNotice
from authcore.service.rate_limit import RateLimiter
from authcore.service.repository import AuthStore
from authcore.service.step_up import StepUpGate
from authcore.service.totp import BackupCodeStore, TotpVerifier
from authcore.storage.models import Identity, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class TotpEnrollment:
    secret: str
    otpauth_uri: str


@dataclass(frozen=True)
class TwoFactorStatus:
    enabled: bool
    backup_codes_remaining: int


class TwoFactorService:
    """Enrolment, removal and backup-code management for TOTP."""

    def __init__(
        self,
        store: AuthStore,
        totp: TotpVerifier,
        backup_codes: BackupCodeStore,
        credentials: CredentialVerifier,
        step_up: StepUpGate,
        rate_limiter: RateLimiter,
        notifier: Notifier,
        settings: Settings,
        *,
        audit: Optional[AuditSink] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.totp = totp
        self.backup_codes = backup_codes
        self.credentials = credentials
        self.step_up = step_up
        self.rate_limiter = rate_limiter
        self.notifier = notifier
        self.settings = settings
        self.audit = audit or StructlogAuditSink()
        self._clock = clock

    def _load(self, identity_id: str) -> Identity:
        with self.store.transaction() as repo:
            identity = repo.get_identity(identity_id)
        if identity is None:
            raise AuthenticationError("authentication required")
        return identity

    async def _limit_setup(self, identity_id: str) -> None:
        await self.rate_limiter.enforce(
            identity_id,
            RateLimitedEndpoint.TWO_FACTOR_SETUP,
            self.settings.rate_limit_policy(RateLimitedEndpoint.TWO_FACTOR_SETUP),
        )

    async def begin_setup(self, identity_id: str) -> TotpEnrollment:
        """Store a fresh (not yet enabled) secret and return its otpauth URI."""

        await self._limit_setup(identity_id)
        identity = self._load(identity_id)
        if identity.totp_enabled:
            raise ConflictError("two-factor authentication is already enabled")
        secret = self.totp.generate_secret()
        with self.store.transaction() as repo:
            repo.set_totp(identity_id, secret, enabled=False)
        logger.info("totp_setup_started", identity_id=identity_id)
        return TotpEnrollment(
            secret=secret,
            otpauth_uri=self.totp.provisioning_uri(secret, identity.email),
        )

    async def enable(self, identity_id: str, code: str) -> List[str]:
        """Confirm enrolment with a first code; returns the backup codes once."""

        await self._limit_setup(identity_id)
        identity = self._load(identity_id)
        if identity.totp_enabled:
            raise ConflictError("two-factor authentication is already enabled")
        if not identity.totp_secret:
            raise ValidationError("two-factor setup has not been started")
        if not self.totp.verify(identity.totp_secret, code):
            logger.warning("totp_enable_invalid_code", identity_id=identity_id)
            raise ValidationError("invalid two-factor authentication code")
        codes = self.backup_codes.generate()
        hashes = self.backup_codes.hash_codes(codes)
        with self.store.transaction() as repo:
            repo.set_totp(identity_id, identity.totp_secret, enabled=True)
            repo.set_backup_codes(identity_id, hashes)
        self.audit.record("two_factor_enabled", {"identity_id": identity_id})
        return codes

    async def disable(
        self,
        identity_id: str,
        *,
        password: Optional[str] = None,
        code: Optional[str] = None,
        session_token: Optional[str] = None,
    ) -> None:
        """Turn TOTP off.

        Identities with a password must re-enter it; passwordless identities
        prove possession of the second factor instead.
        """

        await self._limit_setup(identity_id)
        identity = self._load(identity_id)
        if not identity.totp_enabled:
            raise ValidationError("two-factor authentication is not enabled")
        if identity.has_password:
            if not password:
                raise ValidationError("password is required")
            if not self.credentials.verify(identity, password):
                logger.warning("totp_disable_invalid_password", identity_id=identity_id)
                raise ValidationError("invalid password")
        else:
            await self.step_up.enforce(identity_id, code, session_token)
        with self.store.transaction() as repo:
            repo.set_totp(identity_id, None, enabled=False)
            repo.set_backup_codes(identity_id, [])
        self.audit.record("two_factor_disabled", {"identity_id": identity_id})
        notice = TwoFactorDisabledNotice(disabled_at=self._clock())
        try:
            sent = await asyncio.to_thread(
                self.notifier.send_security_notice, identity.email, notice
            )
        except Exception as exc:
            logger.error("security_notice_error", kind=notice.kind, error=str(exc))
            sent = False
        if not sent:
            logger.warning("security_notice_failed", identity_id=identity_id, kind=notice.kind)

    async def regenerate_backup_codes(
        self, identity_id: str, code: Optional[str], *, session_token: Optional[str] = None
    ) -> List[str]:
        identity = self._load(identity_id)
        if not identity.totp_enabled:
            raise ValidationError("two-factor authentication is not enabled")
        await self.step_up.enforce(identity_id, code, session_token)
        codes = self.backup_codes.replace(identity_id)
        self.audit.record("backup_codes_regenerated", {"identity_id": identity_id})
        return codes

    def status(self, identity_id: str) -> TwoFactorStatus:
        identity = self._load(identity_id)
        return TwoFactorStatus(
            enabled=identity.totp_enabled,
            backup_codes_remaining=len(identity.backup_codes),
        )
