from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from authcore.logging import get_logger
from authcore.service.audit import AuditSink, StructlogAuditSink
from authcore.service.errors import (
    AuthenticationError,
    ForbiddenError,
    NotFoundError,
    PendingStepUpError,
    SessionExpiredError,
)
from authcore.service.repository import AuthStore
from authcore.storage.models import ClientMetadata, Identity, Session, utcnow

logger = get_logger(__name__)

# last_active is written back at most this often per session
TOUCH_INTERVAL = timedelta(minutes=1)


@dataclass
class AuthContext:
    session: Session
    identity: Identity


class SessionStore:
    """Creates, upgrades, lists and revokes login sessions."""

    def __init__(
        self,
        store: AuthStore,
        *,
        pending_ttl: timedelta = timedelta(minutes=15),
        full_ttl: timedelta = timedelta(days=30),
        audit: Optional[AuditSink] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.pending_ttl = pending_ttl
        self.full_ttl = full_ttl
        self.audit = audit or StructlogAuditSink()
        self._clock = clock

    def create_session(
        self,
        identity_id: str,
        requires_step_up: bool,
        metadata: Optional[ClientMetadata] = None,
    ) -> Session:
        """Pending short-lived session when step-up is required, else a full one."""

        ttl = self.pending_ttl if requires_step_up else self.full_ttl
        session = Session.new(
            identity_id,
            ttl,
            step_up_verified=not requires_step_up,
            client=metadata,
            now=self._clock(),
        )
        with self.store.transaction() as repo:
            repo.insert_session(session)
        logger.info(
            "session_created",
            identity_id=identity_id,
            session_id=session.id,
            pending=session.is_pending,
        )
        return session

    def upgrade_session(self, token: str) -> Session:
        """Mark a pending session verified and extend it to the full lifetime.

        Every other pending session of the identity is deleted in the same
        transaction. The identity row lock serialises concurrent upgrades so
        at most one of two racing pending sessions survives.
        """

        now = self._clock()
        with self.store.transaction() as repo:
            session = repo.get_session_by_token(token)
            if session is None or session.is_expired(now):
                raise SessionExpiredError("session expired, please log in again")
            if session.step_up_verified:
                return session
            repo.lock_identity(session.identity_id)
            # a concurrent upgrade may have removed this session while we waited
            session = repo.get_session_by_token(token)
            if session is None:
                raise SessionExpiredError("session expired, please log in again")
            if session.step_up_verified:
                return session
            session.step_up_verified = True
            session.expires_at = now + self.full_ttl
            session.last_active = now
            repo.update_session(session)
            removed = repo.delete_sessions(
                session.identity_id,
                exclude_session_id=session.id,
                pending_only=True,
            )
        self.audit.record(
            "session_upgraded",
            {
                "identity_id": session.identity_id,
                "session_id": session.id,
                "pending_removed": removed,
            },
        )
        return session

    def list_sessions(self, identity_id: str) -> List[Session]:
        with self.store.transaction() as repo:
            return repo.list_sessions(identity_id, now=self._clock())

    def revoke_session(self, session_id: str, requester_identity_id: str) -> None:
        with self.store.transaction() as repo:
            session = repo.get_session(session_id)
            if session is None:
                raise NotFoundError("session not found")
            if session.identity_id != requester_identity_id:
                logger.warning(
                    "session_revoke_forbidden",
                    session_id=session_id,
                    requester_identity_id=requester_identity_id,
                )
                raise ForbiddenError("cannot revoke another user's session")
            repo.delete_session(session_id)
        self.audit.record(
            "session_revoked",
            {"identity_id": requester_identity_id, "session_id": session_id},
        )

    def revoke_all_except(self, identity_id: str, keep_token: Optional[str]) -> int:
        with self.store.transaction() as repo:
            count = repo.delete_sessions(identity_id, keep_token=keep_token)
        self.audit.record(
            "sessions_revoked", {"identity_id": identity_id, "count": count}
        )
        return count

    def delete_session(self, token: str) -> bool:
        """Logout: remove the session carrying ``token``."""

        with self.store.transaction() as repo:
            session = repo.get_session_by_token(token)
            if session is None:
                return False
            return repo.delete_session(session.id)

    def get_pending(self, token: str) -> Session:
        """The live session behind ``token`` (pending or already verified)."""

        with self.store.transaction() as repo:
            session = repo.get_session_by_token(token)
        if session is None or session.is_expired(self._clock()):
            raise SessionExpiredError("session expired, please log in again")
        return session

    def resolve(self, token: Optional[str], *, allow_pending: bool = False) -> AuthContext:
        """Authenticate a request token.

        Pending sessions are refused with ``PendingStepUpError`` unless
        ``allow_pending`` is set.
        """

        if not token:
            raise AuthenticationError("authentication required")
        now = self._clock()
        with self.store.transaction() as repo:
            session = repo.get_session_by_token(token)
            if session is None or session.is_expired(now):
                raise SessionExpiredError("session expired or invalid")
            if session.is_pending and not allow_pending:
                raise PendingStepUpError()
            identity = repo.get_identity(session.identity_id)
            if identity is None:
                raise AuthenticationError("authentication required")
            self._touch(repo, session, now)
        return AuthContext(session=session, identity=identity)

    @staticmethod
    def _touch(repo, session: Session, now: datetime) -> None:
        if now - session.last_active < TOUCH_INTERVAL:
            return
        session.last_active = now
        repo.update_session(session)
