from __future__ import annotations

from contextlib import AbstractContextManager
from datetime import datetime
from typing import List, Optional, Protocol

from authcore.storage.models import (
    AccountToken,
    AccountTokenPurpose,
    Identity,
    PendingEmailChange,
    Session,
)


class AuthRepository(Protocol):
    """Operations available inside one storage transaction.

    Every method runs against the unit of work opened by
    ``AuthStore.transaction()``; nothing is visible to other units until the
    block exits without raising.
    """

    # identities
    def create_identity(
        self,
        email: str,
        *,
        password_hash: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Identity: ...

    def get_identity(self, identity_id: str) -> Optional[Identity]: ...

    def get_identity_by_email(self, email: str) -> Optional[Identity]: ...

    def lock_identity(self, identity_id: str) -> Optional[Identity]: ...

    def update_email(
        self, identity_id: str, email: str, *, verified_at: datetime
    ) -> None: ...

    def set_password_hash(self, identity_id: str, password_hash: str) -> None: ...

    def mark_email_verified(self, identity_id: str, *, at: datetime) -> None: ...

    def set_totp(
        self, identity_id: str, secret: Optional[str], *, enabled: bool
    ) -> None: ...

    def set_backup_codes(self, identity_id: str, code_hashes: List[str]) -> None: ...

    def remove_backup_code(self, identity_id: str, code_hash: str) -> bool: ...

    # sessions
    def insert_session(self, session: Session) -> None: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_session_by_token(self, token: str) -> Optional[Session]: ...

    def list_sessions(self, identity_id: str, *, now: datetime) -> List[Session]: ...

    def update_session(self, session: Session) -> None: ...

    def delete_session(self, session_id: str) -> bool: ...

    def delete_sessions(
        self,
        identity_id: str,
        *,
        keep_token: Optional[str] = None,
        exclude_session_id: Optional[str] = None,
        pending_only: bool = False,
    ) -> int: ...

    # pending email changes
    def insert_email_change(self, change: PendingEmailChange) -> None: ...

    def get_email_change_by_verify_token(
        self, token: str
    ) -> Optional[PendingEmailChange]: ...

    def get_email_change_by_cancel_token(
        self, token: str
    ) -> Optional[PendingEmailChange]: ...

    def find_active_email_change(
        self, identity_id: str, *, now: datetime
    ) -> Optional[PendingEmailChange]: ...

    def email_pending_for_other(
        self, new_email: str, identity_id: str, *, now: datetime
    ) -> bool: ...

    def mark_email_change_cancelled(self, change_id: str, *, at: datetime) -> None: ...

    def mark_email_change_finalized(self, change_id: str, *, at: datetime) -> None: ...

    # signup verification and password reset tokens
    def replace_account_token(self, token: AccountToken) -> None:
        """Store ``token`` and drop the identity's unused tokens of the same purpose."""

    def get_account_token(
        self, token_hash: str, purpose: AccountTokenPurpose
    ) -> Optional[AccountToken]: ...

    def consume_account_token(self, token_id: str, *, at: datetime) -> bool:
        """Mark the token used; False when another unit already used it."""


class AuthStore(Protocol):
    def transaction(self) -> AbstractContextManager[AuthRepository]: ...

    def close(self) -> None: ...
