from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from authcore.config import RateLimitedEndpoint, Settings
from authcore.logging import get_logger
from authcore.service.audit import AuditSink, StructlogAuditSink
from authcore.service.errors import (
    AuthenticationError,
    ConflictError,
    ExpiredError,
    NotFoundError,
    ValidationError,
)
from authcore.service.notifier import EmailChangeRequestedNotice, Notifier
from authcore.service.rate_limit import RateLimiter
from authcore.service.repository import AuthRepository, AuthStore
from authcore.service.step_up import StepUpGate
from authcore.storage.common import emails_match, normalize_email
from authcore.storage.errors import EmailTaken
from authcore.storage.models import EmailChangeState, PendingEmailChange, utcnow

logger = get_logger(__name__)


def mask_email(email: str) -> str:
    """``alice@example.com`` -> ``al***@example.com``; short local parts keep all of it."""

    if "@" not in email:
        return "***"
    local, domain = email.split("@", 1)
    if len(local) <= 2:
        return f"{local}***@{domain}"
    return f"{local[:2]}***@{domain}"


@dataclass(frozen=True)
class EmailChangeRequested:
    change_id: str
    new_email: str
    expires_at: datetime
    verification_sent: bool
    notice_sent: bool
    superseded_change_id: Optional[str] = None


@dataclass(frozen=True)
class EmailChangeVerified:
    identity_id: str
    new_email: str
    sessions_revoked: int


@dataclass(frozen=True)
class EmailChangePreview:
    old_email: str
    new_email: str
    expires_at: datetime


class EmailChangeWorkflow:
    """Two-token email change: verify from the new address, cancel from the old.

    Records move CREATED -> VERIFIED or CREATED -> CANCELLED exactly once;
    EXPIRED is derived from the clock when a token is presented.
    """

    def __init__(
        self,
        store: AuthStore,
        step_up: StepUpGate,
        notifier: Notifier,
        rate_limiter: RateLimiter,
        settings: Settings,
        *,
        audit: Optional[AuditSink] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.step_up = step_up
        self.notifier = notifier
        self.rate_limiter = rate_limiter
        self.settings = settings
        self.audit = audit or StructlogAuditSink()
        self._clock = clock

    @property
    def ttl(self) -> timedelta:
        return timedelta(hours=self.settings.email_change_ttl_hours)

    async def request_change(
        self,
        identity_id: str,
        new_email: str,
        step_up_code: Optional[str] = None,
        *,
        session_token: Optional[str] = None,
    ) -> EmailChangeRequested:
        await self.rate_limiter.enforce(
            identity_id,
            RateLimitedEndpoint.EMAIL_CHANGE,
            self.settings.rate_limit_policy(RateLimitedEndpoint.EMAIL_CHANGE),
        )
        await self.step_up.enforce(identity_id, step_up_code, session_token)

        target = normalize_email(new_email)
        if "@" not in target:
            raise ValidationError("invalid email address", detail={"field": "new_email"})
        now = self._clock()
        with self.store.transaction() as repo:
            identity = repo.lock_identity(identity_id)
            if identity is None:
                raise AuthenticationError("authentication required")
            if emails_match(identity.email, target):
                raise ValidationError("new email must be different from the current email")
            if repo.get_identity_by_email(target) is not None:
                raise ConflictError("email already in use", detail={"code": "EMAIL_TAKEN"})
            if repo.email_pending_for_other(target, identity_id, now=now):
                raise ConflictError(
                    "email already has a pending change", detail={"code": "EMAIL_PENDING"}
                )
            superseded = repo.find_active_email_change(identity_id, now=now)
            if superseded is not None:
                repo.mark_email_change_cancelled(superseded.id, at=now)
            change = PendingEmailChange.new(
                identity_id, identity.email, target, self.ttl, now=now
            )
            repo.insert_email_change(change)

        superseded_id = superseded.id if superseded else None
        logger.info(
            "email_change_requested",
            identity_id=identity_id,
            change_id=change.id,
            superseded_change_id=superseded_id,
        )
        self.audit.record(
            "email_change_requested",
            {"identity_id": identity_id, "change_id": change.id, "superseded": superseded_id},
        )

        verification_sent = await self._deliver(
            change,
            "verification",
            self.notifier.send_verification,
            change.new_email,
            change.verify_token,
        )
        notice_sent = await self._deliver(
            change,
            "security_notice",
            self.notifier.send_security_notice,
            change.old_email,
            EmailChangeRequestedNotice(
                new_email=change.new_email,
                cancel_token=change.cancel_token,
                expires_at=change.expires_at,
            ),
        )
        return EmailChangeRequested(
            change_id=change.id,
            new_email=change.new_email,
            expires_at=change.expires_at,
            verification_sent=verification_sent,
            notice_sent=notice_sent,
            superseded_change_id=superseded_id,
        )

    async def _deliver(self, change: PendingEmailChange, channel: str, send, *args) -> bool:
        """Best-effort delivery after commit; the record stands either way."""

        try:
            sent = bool(await asyncio.to_thread(send, *args))
        except Exception as exc:
            logger.error(
                "email_change_notification_error",
                change_id=change.id,
                channel=channel,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            sent = False
        if not sent:
            logger.warning(
                "email_change_notification_failed", change_id=change.id, channel=channel
            )
            self.audit.record(
                "email_change_notification_failed",
                {"identity_id": change.identity_id, "change_id": change.id, "channel": channel},
            )
        return sent

    def _check_usable(self, change: Optional[PendingEmailChange], now: datetime) -> PendingEmailChange:
        if change is None:
            raise NotFoundError("invalid or unknown email change token")
        state = change.state(now)
        if state is EmailChangeState.CANCELLED:
            raise ConflictError("this email change was cancelled")
        if state is EmailChangeState.VERIFIED:
            raise ConflictError("this email change has already been completed")
        if state is EmailChangeState.EXPIRED:
            raise ExpiredError("this email change link has expired")
        return change

    def _locked_change(
        self, repo: AuthRepository, lookup: Callable[[str], Optional[PendingEmailChange]], token: str, now: datetime
    ) -> PendingEmailChange:
        change = lookup(token)
        if change is not None:
            # serialise against a racing verify/cancel of the same record
            repo.lock_identity(change.identity_id)
            change = lookup(token)
        return self._check_usable(change, now)

    async def _limit_link(self, client_ip: Optional[str]) -> None:
        await self.rate_limiter.enforce(
            client_ip or "unknown",
            RateLimitedEndpoint.EMAIL_VERIFICATION,
            self.settings.rate_limit_policy(RateLimitedEndpoint.EMAIL_VERIFICATION),
        )

    async def verify(
        self,
        verify_token: str,
        current_session_token: Optional[str] = None,
        *,
        client_ip: Optional[str] = None,
    ) -> EmailChangeVerified:
        """Apply the change and sign out every other session of the identity."""

        await self._limit_link(client_ip)
        if not verify_token:
            raise ValidationError("verification token is required")
        now = self._clock()
        with self.store.transaction() as repo:
            change = self._locked_change(
                repo, repo.get_email_change_by_verify_token, verify_token, now
            )
            owner = repo.get_identity_by_email(change.new_email)
            if owner is not None and owner.id != change.identity_id:
                raise ConflictError("email already in use", detail={"code": "EMAIL_TAKEN"})
            try:
                repo.update_email(change.identity_id, change.new_email, verified_at=now)
            except EmailTaken as exc:
                raise ConflictError(
                    "email already in use", detail={"code": "EMAIL_TAKEN"}
                ) from exc
            repo.mark_email_change_finalized(change.id, at=now)
            revoked = repo.delete_sessions(change.identity_id, keep_token=current_session_token)

        logger.info(
            "email_change_verified",
            identity_id=change.identity_id,
            change_id=change.id,
            sessions_revoked=revoked,
        )
        self.audit.record(
            "email_change_verified",
            {"identity_id": change.identity_id, "change_id": change.id, "sessions_revoked": revoked},
        )
        return EmailChangeVerified(
            identity_id=change.identity_id,
            new_email=change.new_email,
            sessions_revoked=revoked,
        )

    async def cancel(self, cancel_token: str, *, client_ip: Optional[str] = None) -> PendingEmailChange:
        await self._limit_link(client_ip)
        if not cancel_token:
            raise ValidationError("cancel token is required")
        now = self._clock()
        with self.store.transaction() as repo:
            change = self._locked_change(
                repo, repo.get_email_change_by_cancel_token, cancel_token, now
            )
            repo.mark_email_change_cancelled(change.id, at=now)
        change.cancelled = True
        change.cancelled_at = now
        logger.info("email_change_cancelled", identity_id=change.identity_id, change_id=change.id)
        self.audit.record(
            "email_change_cancelled", {"identity_id": change.identity_id, "change_id": change.id}
        )
        return change

    async def preview(
        self, cancel_token: str, *, client_ip: Optional[str] = None
    ) -> EmailChangePreview:
        """Masked details shown before the old-address owner confirms a cancel."""

        await self._limit_link(client_ip)
        if not cancel_token:
            raise ValidationError("cancel token is required")
        with self.store.transaction() as repo:
            change = repo.get_email_change_by_cancel_token(cancel_token)
        change = self._check_usable(change, self._clock())
        return EmailChangePreview(
            old_email=mask_email(change.old_email),
            new_email=mask_email(change.new_email),
            expires_at=change.expires_at,
        )
