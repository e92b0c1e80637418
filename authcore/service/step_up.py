from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from authcore.config import RateLimitedEndpoint, Settings
from authcore.logging import get_logger
from authcore.service.audit import AuditSink, StructlogAuditSink
from authcore.service.errors import (
    AuthenticationError,
    StepUpRequiredError,
    ValidationError,
)
from authcore.service.rate_limit import RateLimiter
from authcore.service.repository import AuthStore
from authcore.service.totp import BackupCodeStore, TotpVerifier
from authcore.storage.models import Identity

logger = get_logger(__name__)


@dataclass(frozen=True)
class StepUpResult:
    ok: bool
    requires_step_up: bool
    method: Optional[str] = None


class StepUpGate:
    """Second-factor check in front of sensitive actions.

    Nothing is remembered between calls: every gated action presents its own
    code, which is tried as a TOTP code first and then as a backup code.
    """

    def __init__(
        self,
        store: AuthStore,
        totp: TotpVerifier,
        backup_codes: BackupCodeStore,
        rate_limiter: RateLimiter,
        settings: Settings,
        *,
        audit: Optional[AuditSink] = None,
    ) -> None:
        self.store = store
        self.totp = totp
        self.backup_codes = backup_codes
        self.rate_limiter = rate_limiter
        self.settings = settings
        self.audit = audit or StructlogAuditSink()

    def _load(self, identity_id: str) -> Identity:
        with self.store.transaction() as repo:
            identity = repo.get_identity(identity_id)
        if identity is None:
            raise AuthenticationError("authentication required")
        return identity

    def requires_step_up(self, identity_id: str) -> bool:
        return self._load(identity_id).requires_step_up

    def _match_code(self, identity: Identity, code: str) -> Optional[str]:
        if self.totp.is_valid_format(code) and self.totp.verify(identity.totp_secret, code):
            return "totp"
        if self.backup_codes.is_valid_format(code) and self.backup_codes.consume(
            identity.id, code
        ):
            return "backup_code"
        return None

    async def _attempt(self, identity: Identity, code: str) -> Optional[str]:
        """Try ``code`` as TOTP then backup code; returns the method or None.

        Attempts count against the identity's two-factor verification budget.
        """

        await self.rate_limiter.enforce(
            identity.id,
            RateLimitedEndpoint.TWO_FACTOR_VERIFY,
            self.settings.rate_limit_policy(RateLimitedEndpoint.TWO_FACTOR_VERIFY),
        )
        method = self._match_code(identity, code)
        if method is None:
            logger.warning("step_up_failed", identity_id=identity.id)
            self.audit.record("step_up_failed", {"identity_id": identity.id})
            return None
        if method == "backup_code":
            logger.info("backup_code_used", identity_id=identity.id)
        self.audit.record("step_up_succeeded", {"identity_id": identity.id, "method": method})
        return method

    async def verify_code(self, identity: Identity, code: str) -> str:
        """Like ``_attempt`` but a wrong code raises ``ValidationError``."""

        method = await self._attempt(identity, code)
        if method is None:
            raise ValidationError("invalid two-factor authentication code")
        return method

    async def require_step_up(
        self,
        identity_id: str,
        provided_code: Optional[str] = None,
        session_token: Optional[str] = None,
    ) -> StepUpResult:
        """Decide whether a sensitive action may proceed.

        An identity without TOTP passes straight through. Otherwise ``ok``
        is True only when the provided code matched; a missing or wrong code
        both give ``ok=False, requires_step_up=True``.
        """

        identity = self._load(identity_id)
        if session_token is not None:
            self._check_session_owner(identity_id, session_token)
        if not identity.requires_step_up:
            return StepUpResult(ok=True, requires_step_up=False)
        if not provided_code or not provided_code.strip():
            return StepUpResult(ok=False, requires_step_up=True)
        method = await self._attempt(identity, provided_code)
        return StepUpResult(ok=method is not None, requires_step_up=True, method=method)

    async def enforce(
        self,
        identity_id: str,
        provided_code: Optional[str] = None,
        session_token: Optional[str] = None,
    ) -> StepUpResult:
        """Raise unless ``require_step_up`` passes.

        No code is ``StepUpRequiredError`` (403); a wrong one is
        ``ValidationError`` (400).
        """

        result = await self.require_step_up(identity_id, provided_code, session_token)
        if result.ok:
            return result
        if provided_code and provided_code.strip():
            raise ValidationError("invalid two-factor authentication code")
        raise StepUpRequiredError()

    def _check_session_owner(self, identity_id: str, session_token: str) -> None:
        with self.store.transaction() as repo:
            session = repo.get_session_by_token(session_token)
        if session is None or session.identity_id != identity_id:
            raise AuthenticationError("session does not belong to this account")
