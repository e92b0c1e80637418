"""Account lifecycle outside login: signup, email confirmation and passwords.

Forgot-password and resend-verification answer the same way whether or not
the address belongs to an account; the difference only shows in the audit
trail.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from authcore.config import RateLimitedEndpoint, Settings
from authcore.logging import get_logger
from authcore.service.audit import AuditSink, StructlogAuditSink
from authcore.service.credentials import CredentialVerifier
from authcore.service.errors import (
    AuthenticationError,
    ConflictError,
    ExpiredError,
    NotFoundError,
    ValidationError,
)
from authcore.service.notifier import Notifier, PasswordChangedNotice
from authcore.service.rate_limit import RateLimiter
from authcore.service.repository import AuthStore
from authcore.service.step_up import StepUpGate
from authcore.storage.errors import EmailTaken
from authcore.storage.models import (
    AccountToken,
    AccountTokenPurpose,
    Identity,
    hash_token,
    utcnow,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class SignupResult:
    identity: Identity
    verification_sent: bool


class AccountService:
    def __init__(
        self,
        store: AuthStore,
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
        self.credentials = credentials
        self.step_up = step_up
        self.rate_limiter = rate_limiter
        self.notifier = notifier
        self.settings = settings
        self.audit = audit or StructlogAuditSink()
        self._clock = clock

    async def _limit(self, identifier: Optional[str], endpoint: RateLimitedEndpoint) -> None:
        await self.rate_limiter.enforce(
            identifier or "unknown", endpoint, self.settings.rate_limit_policy(endpoint)
        )

    async def _send(self, identity_id: str, kind: str, send, *args) -> bool:
        """Deliver after commit; a failure is logged and never undoes the change."""

        try:
            sent = bool(await asyncio.to_thread(send, *args))
        except Exception as exc:
            logger.error(
                "account_email_error",
                identity_id=identity_id,
                kind=kind,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            sent = False
        if not sent:
            logger.warning("account_email_failed", identity_id=identity_id, kind=kind)
        return sent

    def _issue_token(self, identity_id: str, purpose: AccountTokenPurpose, ttl: timedelta) -> str:
        record, token = AccountToken.new(identity_id, purpose, ttl, now=self._clock())
        with self.store.transaction() as repo:
            repo.replace_account_token(record)
        return token

    # signup and email confirmation

    async def signup(
        self,
        email: str,
        password: str,
        *,
        name: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> SignupResult:
        """Create an unverified identity and email it a confirmation link.

        No session is issued; login opens once the address is confirmed.
        """

        await self._limit(client_ip, RateLimitedEndpoint.SIGNUP)
        password_hash = self.credentials.hash_password(password)
        record = None
        try:
            with self.store.transaction() as repo:
                identity = repo.create_identity(email, password_hash=password_hash, name=name)
                record, token = AccountToken.new(
                    identity.id,
                    AccountTokenPurpose.EMAIL_VERIFICATION,
                    timedelta(hours=self.settings.email_verification_ttl_hours),
                    now=self._clock(),
                )
                repo.replace_account_token(record)
        except EmailTaken as exc:
            raise ConflictError("email already in use", detail={"code": "EMAIL_TAKEN"}) from exc
        logger.info("identity_created", identity_id=identity.id)
        self.audit.record("signup", {"identity_id": identity.id})
        sent = await self._send(
            identity.id,
            AccountTokenPurpose.EMAIL_VERIFICATION.value,
            self.notifier.send_account_verification,
            identity.email,
            token,
        )
        return SignupResult(identity=identity, verification_sent=sent)

    async def verify_email(self, token: str, *, client_ip: Optional[str] = None) -> Identity:
        await self._limit(client_ip, RateLimitedEndpoint.EMAIL_VERIFICATION)
        if not token:
            raise ValidationError("verification token is required")
        now = self._clock()
        with self.store.transaction() as repo:
            record = repo.get_account_token(
                hash_token(token), AccountTokenPurpose.EMAIL_VERIFICATION
            )
            if record is None:
                raise NotFoundError("invalid verification token")
            if record.used_at is not None:
                raise ConflictError("this email address has already been verified")
            if now >= record.expires_at:
                raise ExpiredError("this verification link has expired")
            if not repo.consume_account_token(record.id, at=now):
                raise ConflictError("this email address has already been verified")
            repo.mark_email_verified(record.identity_id, at=now)
            identity = repo.get_identity(record.identity_id)
        logger.info("email_verified", identity_id=record.identity_id)
        self.audit.record("email_verified", {"identity_id": record.identity_id})
        return identity

    async def resend_verification(self, email: str, *, client_ip: Optional[str] = None) -> None:
        await self._limit(client_ip, RateLimitedEndpoint.RESEND_VERIFICATION)
        with self.store.transaction() as repo:
            identity = repo.get_identity_by_email(email)
        if identity is None or identity.email_verified_at is not None:
            self.audit.record(
                "verification_resend_skipped",
                {
                    "identity_id": identity.id if identity else None,
                    "reason": "unknown_email" if identity is None else "already_verified",
                },
            )
            return
        token = self._issue_token(
            identity.id,
            AccountTokenPurpose.EMAIL_VERIFICATION,
            timedelta(hours=self.settings.email_verification_ttl_hours),
        )
        self.audit.record("verification_resent", {"identity_id": identity.id})
        await self._send(
            identity.id,
            AccountTokenPurpose.EMAIL_VERIFICATION.value,
            self.notifier.send_account_verification,
            identity.email,
            token,
        )

    # forgotten passwords

    async def request_password_reset(
        self, email: str, *, client_ip: Optional[str] = None
    ) -> None:
        """Email a single-use reset link when ``email`` has a password login."""

        await self._limit(client_ip, RateLimitedEndpoint.PASSWORD_RESET)
        with self.store.transaction() as repo:
            identity = repo.get_identity_by_email(email)
        if identity is None or not identity.has_password:
            logger.info("password_reset_not_applicable")
            self.audit.record(
                "password_reset_skipped",
                {
                    "identity_id": identity.id if identity else None,
                    "reason": "unknown_email" if identity is None else "no_password",
                },
            )
            return
        token = self._issue_token(
            identity.id,
            AccountTokenPurpose.PASSWORD_RESET,
            timedelta(minutes=self.settings.password_reset_ttl_minutes),
        )
        self.audit.record("password_reset_requested", {"identity_id": identity.id})
        await self._send(
            identity.id,
            AccountTokenPurpose.PASSWORD_RESET.value,
            self.notifier.send_password_reset,
            identity.email,
            token,
        )

    def validate_reset_token(self, token: str) -> bool:
        """Whether ``token`` would currently be accepted; nothing is consumed."""

        if not token:
            return False
        with self.store.transaction() as repo:
            record = repo.get_account_token(hash_token(token), AccountTokenPurpose.PASSWORD_RESET)
            if record is None or not record.is_usable(self._clock()):
                return False
            return repo.get_identity(record.identity_id) is not None

    async def reset_password(
        self, token: str, new_password: str, *, client_ip: Optional[str] = None
    ) -> int:
        """Set a new password from a reset link and sign out every session.

        Returns the number of sessions revoked. Unknown, used and expired
        tokens fail alike.
        """

        await self._limit(client_ip, RateLimitedEndpoint.PASSWORD_RESET_CONFIRM)
        new_hash = self.credentials.hash_password(new_password)
        now = self._clock()
        with self.store.transaction() as repo:
            record = repo.get_account_token(
                hash_token(token or ""), AccountTokenPurpose.PASSWORD_RESET
            )
            if (
                record is None
                or not record.is_usable(now)
                or not repo.consume_account_token(record.id, at=now)
            ):
                raise ValidationError("invalid or expired reset token")
            identity = repo.lock_identity(record.identity_id)
            if identity is None:
                raise ValidationError("invalid or expired reset token")
            repo.set_password_hash(identity.id, new_hash)
            revoked = repo.delete_sessions(identity.id)
        logger.info("password_reset_completed", identity_id=identity.id, sessions_revoked=revoked)
        self.audit.record(
            "password_reset", {"identity_id": identity.id, "sessions_revoked": revoked}
        )
        await self._send(
            identity.id,
            "password_changed",
            self.notifier.send_security_notice,
            identity.email,
            PasswordChangedNotice(changed_at=now),
        )
        return revoked

    async def change_password(
        self,
        identity_id: str,
        current_password: Optional[str],
        new_password: str,
        *,
        step_up_code: Optional[str] = None,
        session_token: Optional[str] = None,
    ) -> int:
        """Replace the password and sign out every other session.

        Returns the number of sessions revoked.
        """

        await self._limit(identity_id, RateLimitedEndpoint.PASSWORD_CHANGE)
        await self.step_up.enforce(identity_id, step_up_code, session_token)

        with self.store.transaction() as repo:
            identity = repo.get_identity(identity_id)
        if identity is None:
            raise AuthenticationError("authentication required")
        if identity.has_password and not self.credentials.verify(identity, current_password or ""):
            logger.warning("password_change_invalid_current", identity_id=identity_id)
            raise ValidationError("current password is incorrect")

        new_hash = self.credentials.hash_password(new_password)
        with self.store.transaction() as repo:
            repo.set_password_hash(identity_id, new_hash)
            revoked = repo.delete_sessions(identity_id, keep_token=session_token)
        self.audit.record(
            "password_changed", {"identity_id": identity_id, "sessions_revoked": revoked}
        )
        await self._send(
            identity_id,
            "password_changed",
            self.notifier.send_security_notice,
            identity.email,
            PasswordChangedNotice(changed_at=self._clock()),
        )
        return revoked
