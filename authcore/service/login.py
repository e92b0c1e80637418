"""Password login and completion of the second factor.

``login`` never raises for a bad attempt; callers switch on the ``kind`` of the
returned result.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal, Optional, Union

from authcore.config import RateLimitedEndpoint, Settings
from authcore.logging import get_logger
from authcore.service.audit import AuditSink
from authcore.service.credentials import CredentialVerifier
from authcore.service.errors import SessionExpiredError
from authcore.service.rate_limit import RateLimiter
from authcore.service.repository import AuthStore
from authcore.service.sessions import SessionStore
from authcore.service.step_up import StepUpGate
from authcore.storage.models import ClientMetadata, Identity, Session

logger = get_logger(__name__)


@dataclass(frozen=True)
class LoginDone:
    session: Session
    identity: Identity
    kind: Literal["done"] = field(default="done", init=False)


@dataclass(frozen=True)
class LoginRequireStepUp:
    session_token: str
    expires_at: datetime
    identity_id: str
    kind: Literal["require_step_up"] = field(default="require_step_up", init=False)


@dataclass(frozen=True)
class LoginRejected:
    reason: Literal["invalid_credentials", "rate_limited", "email_not_verified"]
    retry_after_seconds: int = 0
    kind: Literal["rejected"] = field(default="rejected", init=False)


LoginResult = Union[LoginDone, LoginRequireStepUp, LoginRejected]


async def login(
    email: str,
    password: str,
    metadata: Optional[ClientMetadata] = None,
    *,
    store: AuthStore,
    credentials: CredentialVerifier,
    sessions: SessionStore,
    rate_limiter: RateLimiter,
    settings: Settings,
    audit: AuditSink,
) -> LoginResult:
    metadata = metadata or ClientMetadata()
    limit = await rate_limiter.check(
        metadata.ip_address or "unknown",
        RateLimitedEndpoint.LOGIN,
        settings.login_max_attempts,
        settings.login_window_minutes,
    )
    if limit.limited:
        return LoginRejected("rate_limited", retry_after_seconds=limit.retry_after_seconds)

    with store.transaction() as repo:
        identity = repo.get_identity_by_email(email)
    if not credentials.verify(identity, password):
        logger.warning("login_failed", reason="invalid_credentials")
        audit.record(
            "login_failed",
            {"identity_id": identity.id if identity else None, "ip": metadata.ip_address},
        )
        return LoginRejected("invalid_credentials")

    if settings.require_verified_email and identity.email_verified_at is None:
        # only revealed once the password has matched
        logger.info("login_blocked_unverified", identity_id=identity.id)
        audit.record("login_blocked_unverified", {"identity_id": identity.id})
        return LoginRejected("email_not_verified")

    if credentials.needs_rehash(identity.password_hash):
        with store.transaction() as repo:
            repo.set_password_hash(identity.id, credentials.hash_password(password))

    session = sessions.create_session(identity.id, identity.requires_step_up, metadata)
    if session.is_pending:
        audit.record("login_step_up_required", {"identity_id": identity.id})
        return LoginRequireStepUp(
            session_token=session.token,
            expires_at=session.expires_at,
            identity_id=identity.id,
        )
    audit.record("login_succeeded", {"identity_id": identity.id, "session_id": session.id})
    return LoginDone(session=session, identity=identity)


async def complete_step_up(
    session_token: str,
    code: str,
    *,
    sessions: SessionStore,
    step_up: StepUpGate,
) -> Session:
    """Verify the second factor for a pending session and upgrade it."""

    pending = sessions.get_pending(session_token)
    if pending.step_up_verified:
        return pending
    with step_up.store.transaction() as repo:
        identity = repo.get_identity(pending.identity_id)
    if identity is None:
        raise SessionExpiredError("session expired, please log in again")
    await step_up.verify_code(identity, code)
    return sessions.upgrade_session(session_token)
