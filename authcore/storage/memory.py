from __future__ import annotations

import copy
import dataclasses
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from authcore.logging import get_logger
from authcore.storage.common import SecretCipher, emails_match, normalize_email
from authcore.storage.errors import ConstraintViolation, EmailTaken
from authcore.storage.models import (
    AccountToken,
    AccountTokenPurpose,
    Identity,
    PendingEmailChange,
    Session,
)


class MemoryStore:
    """In-process backing store used for tests and single-node development.

    Units of work serialise on one reentrant lock; a unit that raises is
    rolled back by restoring the snapshot taken when it started.
    """

    def __init__(self, *, mfa_encryption_key: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[str, Identity] = {}
        self.sessions: Dict[str, Session] = {}
        self.email_changes: Dict[str, PendingEmailChange] = {}
        self.account_tokens: Dict[str, AccountToken] = {}
        # RLock so a unit of work may call helpers that re-acquire it
        self._data_lock = threading.RLock()
        self._cipher = SecretCipher(mfa_encryption_key)

    @contextmanager
    def transaction(self) -> Iterator["_MemoryRepository"]:
        with self._data_lock:
            snapshot = (
                copy.deepcopy(self.identities),
                copy.deepcopy(self.sessions),
                copy.deepcopy(self.email_changes),
                copy.deepcopy(self.account_tokens),
            )
            try:
                yield _MemoryRepository(self)
            except BaseException:
                (
                    self.identities,
                    self.sessions,
                    self.email_changes,
                    self.account_tokens,
                ) = snapshot
                raise

    def close(self) -> None:
        return None


class _MemoryRepository:
    def __init__(self, store: MemoryStore) -> None:
        self._store = store
        self._cipher = store._cipher

    # identities
    def _public(self, identity: Identity) -> Identity:
        return dataclasses.replace(
            identity,
            totp_secret=self._cipher.decrypt(identity.totp_secret),
            backup_codes=list(identity.backup_codes),
        )

    def _require_identity(self, identity_id: str) -> Identity:
        identity = self._store.identities.get(identity_id)
        if not identity:
            raise ConstraintViolation("identity does not exist", {"identity_id": identity_id})
        return identity

    def create_identity(
        self,
        email: str,
        *,
        password_hash: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Identity:
        normalized = normalize_email(email)
        if any(emails_match(i.email, normalized) for i in self._store.identities.values()):
            raise EmailTaken(normalized)
        identity = Identity(
            id=str(uuid.uuid4()),
            email=normalized,
            password_hash=password_hash,
            name=name,
        )
        self._store.identities[identity.id] = identity
        return self._public(identity)

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        identity = self._store.identities.get(identity_id)
        return self._public(identity) if identity else None

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        identity = next(
            (i for i in self._store.identities.values() if emails_match(i.email, email)),
            None,
        )
        return self._public(identity) if identity else None

    def lock_identity(self, identity_id: str) -> Optional[Identity]:
        # The store lock is already held for the whole unit of work.
        return self.get_identity(identity_id)

    def update_email(self, identity_id: str, email: str, *, verified_at: datetime) -> None:
        identity = self._require_identity(identity_id)
        normalized = normalize_email(email)
        for other in self._store.identities.values():
            if other.id != identity_id and emails_match(other.email, normalized):
                raise EmailTaken(normalized)
        identity.email = normalized
        identity.email_verified_at = verified_at

    def set_password_hash(self, identity_id: str, password_hash: str) -> None:
        self._require_identity(identity_id).password_hash = password_hash

    def mark_email_verified(self, identity_id: str, *, at: datetime) -> None:
        identity = self._require_identity(identity_id)
        if identity.email_verified_at is None:
            identity.email_verified_at = at

    def set_totp(self, identity_id: str, secret: Optional[str], *, enabled: bool) -> None:
        identity = self._require_identity(identity_id)
        identity.totp_secret = self._cipher.encrypt(secret)
        identity.totp_enabled = enabled

    def set_backup_codes(self, identity_id: str, code_hashes: List[str]) -> None:
        self._require_identity(identity_id).backup_codes = list(code_hashes)

    def remove_backup_code(self, identity_id: str, code_hash: str) -> bool:
        identity = self._require_identity(identity_id)
        if code_hash not in identity.backup_codes:
            return False
        identity.backup_codes.remove(code_hash)
        return True

    # sessions
    def insert_session(self, session: Session) -> None:
        self._require_identity(session.identity_id)
        if any(s.token == session.token for s in self._store.sessions.values()):
            raise ConstraintViolation("session token collision", {"field": "token"})
        self._store.sessions[session.id] = copy.deepcopy(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        session = self._store.sessions.get(session_id)
        return copy.deepcopy(session) if session else None

    def get_session_by_token(self, token: str) -> Optional[Session]:
        session = next((s for s in self._store.sessions.values() if s.token == token), None)
        return copy.deepcopy(session) if session else None

    def list_sessions(self, identity_id: str, *, now: datetime) -> List[Session]:
        live = [
            copy.deepcopy(s)
            for s in self._store.sessions.values()
            if s.identity_id == identity_id and s.expires_at > now
        ]
        return sorted(live, key=lambda s: s.last_active, reverse=True)

    def update_session(self, session: Session) -> None:
        stored = self._store.sessions.get(session.id)
        if not stored:
            return
        stored.step_up_verified = session.step_up_verified
        stored.expires_at = session.expires_at
        stored.last_active = session.last_active

    def delete_session(self, session_id: str) -> bool:
        return self._store.sessions.pop(session_id, None) is not None

    def delete_sessions(
        self,
        identity_id: str,
        *,
        keep_token: Optional[str] = None,
        exclude_session_id: Optional[str] = None,
        pending_only: bool = False,
    ) -> int:
        doomed = [
            sid
            for sid, s in self._store.sessions.items()
            if s.identity_id == identity_id
            and (keep_token is None or s.token != keep_token)
            and (exclude_session_id is None or sid != exclude_session_id)
            and (not pending_only or not s.step_up_verified)
        ]
        for sid in doomed:
            self._store.sessions.pop(sid, None)
        return len(doomed)

    # pending email changes
    def insert_email_change(self, change: PendingEmailChange) -> None:
        for existing in self._store.email_changes.values():
            tokens = {existing.verify_token, existing.cancel_token}
            if change.verify_token in tokens or change.cancel_token in tokens:
                raise ConstraintViolation("email change token collision", {"field": "token"})
        self._store.email_changes[change.id] = copy.deepcopy(change)

    def get_email_change_by_verify_token(self, token: str) -> Optional[PendingEmailChange]:
        change = next(
            (c for c in self._store.email_changes.values() if c.verify_token == token), None
        )
        return copy.deepcopy(change) if change else None

    def get_email_change_by_cancel_token(self, token: str) -> Optional[PendingEmailChange]:
        change = next(
            (c for c in self._store.email_changes.values() if c.cancel_token == token), None
        )
        return copy.deepcopy(change) if change else None

    def find_active_email_change(
        self, identity_id: str, *, now: datetime
    ) -> Optional[PendingEmailChange]:
        active = [
            c
            for c in self._store.email_changes.values()
            if c.identity_id == identity_id and c.is_active(now)
        ]
        if not active:
            return None
        return copy.deepcopy(max(active, key=lambda c: c.created_at))

    def email_pending_for_other(self, new_email: str, identity_id: str, *, now: datetime) -> bool:
        return any(
            c.identity_id != identity_id
            and emails_match(c.new_email, new_email)
            and c.is_active(now)
            for c in self._store.email_changes.values()
        )

    def mark_email_change_cancelled(self, change_id: str, *, at: datetime) -> None:
        change = self._store.email_changes.get(change_id)
        if change:
            change.cancelled = True
            change.cancelled_at = at

    def mark_email_change_finalized(self, change_id: str, *, at: datetime) -> None:
        change = self._store.email_changes.get(change_id)
        if change:
            change.finalized = True
            change.finalized_at = at

    # account tokens
    def replace_account_token(self, token: AccountToken) -> None:
        self._require_identity(token.identity_id)
        stale = [
            tid
            for tid, t in self._store.account_tokens.items()
            if t.identity_id == token.identity_id
            and t.purpose == token.purpose
            and t.used_at is None
        ]
        for tid in stale:
            del self._store.account_tokens[tid]
        self._store.account_tokens[token.id] = copy.deepcopy(token)

    def get_account_token(
        self, token_hash: str, purpose: AccountTokenPurpose
    ) -> Optional[AccountToken]:
        token = next(
            (
                t
                for t in self._store.account_tokens.values()
                if t.token_hash == token_hash and t.purpose == purpose
            ),
            None,
        )
        return copy.deepcopy(token) if token else None

    def consume_account_token(self, token_id: str, *, at: datetime) -> bool:
        token = self._store.account_tokens.get(token_id)
        if token is None or token.used_at is not None:
            return False
        token.used_at = at
        return True
