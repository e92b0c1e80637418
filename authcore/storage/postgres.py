from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authcore.logging import get_logger
from authcore.storage.common import SecretCipher, normalize_email
from authcore.storage.errors import ConstraintViolation, EmailTaken
from authcore.storage.models import (
    AccountToken,
    AccountTokenPurpose,
    ClientMetadata,
    Identity,
    PendingEmailChange,
    Session,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS identity (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        password_hash TEXT,
        totp_secret TEXT,
        totp_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        backup_codes TEXT[] NOT NULL DEFAULT '{}',
        name TEXT,
        email_verified_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS identity_email_ci_idx ON identity (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        token TEXT NOT NULL UNIQUE,
        identity_id TEXT NOT NULL REFERENCES identity(id) ON DELETE CASCADE,
        step_up_verified BOOLEAN NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        last_active TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        ip_address TEXT,
        user_agent TEXT,
        country TEXT,
        city TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_identity_idx ON auth_session (identity_id)",
    """
    CREATE TABLE IF NOT EXISTS pending_email_change (
        id TEXT PRIMARY KEY,
        identity_id TEXT NOT NULL REFERENCES identity(id) ON DELETE CASCADE,
        old_email TEXT NOT NULL,
        new_email TEXT NOT NULL,
        verify_token TEXT NOT NULL UNIQUE,
        cancel_token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        finalized BOOLEAN NOT NULL DEFAULT FALSE,
        finalized_at TIMESTAMPTZ,
        cancelled BOOLEAN NOT NULL DEFAULT FALSE,
        cancelled_at TIMESTAMPTZ,
        CHECK (verify_token <> cancel_token)
    )
    """,
    "CREATE INDEX IF NOT EXISTS pending_email_change_identity_idx ON pending_email_change (identity_id)",
    """
    CREATE TABLE IF NOT EXISTS account_token (
        id TEXT PRIMARY KEY,
        identity_id TEXT NOT NULL REFERENCES identity(id) ON DELETE CASCADE,
        purpose TEXT NOT NULL,
        token_hash TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        used_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS account_token_identity_idx ON account_token (identity_id, purpose)",
)

_ACTIVE_CHANGE = "NOT finalized AND NOT cancelled AND expires_at > %s"


class PostgresStore:
    """Postgres-backed store; each unit of work is one database transaction."""

    def __init__(self, dsn: str, *, mfa_encryption_key: str | None = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._cipher = SecretCipher(mfa_encryption_key)
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the identity, session, email-change and account-token tables if missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    @contextmanager
    def transaction(self) -> Iterator["_PostgresRepository"]:
        with self._connect() as conn:
            with conn.transaction():
                yield _PostgresRepository(conn, self._cipher)

    def close(self) -> None:
        self.pool.close()


class _PostgresRepository:
    def __init__(self, conn, cipher: SecretCipher) -> None:
        self.conn = conn
        self._cipher = cipher

    def _identity_from_row(self, row: Dict[str, Any]) -> Identity:
        return Identity(
            id=row["id"],
            email=row["email"],
            password_hash=row.get("password_hash"),
            totp_secret=self._cipher.decrypt(row.get("totp_secret")),
            totp_enabled=bool(row.get("totp_enabled")),
            backup_codes=list(row.get("backup_codes") or []),
            name=row.get("name"),
            email_verified_at=row.get("email_verified_at"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=row["id"],
            token=row["token"],
            identity_id=row["identity_id"],
            step_up_verified=row["step_up_verified"],
            created_at=row["created_at"],
            last_active=row["last_active"],
            expires_at=row["expires_at"],
            client=ClientMetadata(
                ip_address=row.get("ip_address"),
                user_agent=row.get("user_agent"),
                country=row.get("country"),
                city=row.get("city"),
            ),
        )

    @staticmethod
    def _change_from_row(row: Dict[str, Any]) -> PendingEmailChange:
        return PendingEmailChange(**row)

    @staticmethod
    def _account_token_from_row(row: Dict[str, Any]) -> AccountToken:
        return AccountToken(
            id=row["id"],
            identity_id=row["identity_id"],
            purpose=AccountTokenPurpose(row["purpose"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            used_at=row.get("used_at"),
        )

    # identities
    def create_identity(
        self,
        email: str,
        *,
        password_hash: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Identity:
        identity = Identity(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            password_hash=password_hash,
            name=name,
        )
        try:
            row = self.conn.execute(
                """
                INSERT INTO identity (id, email, password_hash, name, created_at)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING *
                """,
                (identity.id, identity.email, password_hash, name, identity.created_at),
            ).fetchone()
        except errors.UniqueViolation as exc:
            raise EmailTaken(identity.email) from exc
        return self._identity_from_row(row)

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        row = self.conn.execute(
            "SELECT * FROM identity WHERE id = %s", (identity_id,)
        ).fetchone()
        return self._identity_from_row(row) if row else None

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        row = self.conn.execute(
            "SELECT * FROM identity WHERE lower(email) = %s", (normalize_email(email),)
        ).fetchone()
        return self._identity_from_row(row) if row else None

    def lock_identity(self, identity_id: str) -> Optional[Identity]:
        row = self.conn.execute(
            "SELECT * FROM identity WHERE id = %s FOR UPDATE", (identity_id,)
        ).fetchone()
        return self._identity_from_row(row) if row else None

    def update_email(self, identity_id: str, email: str, *, verified_at: datetime) -> None:
        normalized = normalize_email(email)
        try:
            self.conn.execute(
                "UPDATE identity SET email = %s, email_verified_at = %s WHERE id = %s",
                (normalized, verified_at, identity_id),
            )
        except errors.UniqueViolation as exc:
            raise EmailTaken(normalized) from exc

    def set_password_hash(self, identity_id: str, password_hash: str) -> None:
        self.conn.execute(
            "UPDATE identity SET password_hash = %s WHERE id = %s",
            (password_hash, identity_id),
        )

    def mark_email_verified(self, identity_id: str, *, at: datetime) -> None:
        self.conn.execute(
            """
            UPDATE identity SET email_verified_at = %s
            WHERE id = %s AND email_verified_at IS NULL
            """,
            (at, identity_id),
        )

    def set_totp(self, identity_id: str, secret: Optional[str], *, enabled: bool) -> None:
        self.conn.execute(
            "UPDATE identity SET totp_secret = %s, totp_enabled = %s WHERE id = %s",
            (self._cipher.encrypt(secret), enabled, identity_id),
        )

    def set_backup_codes(self, identity_id: str, code_hashes: List[str]) -> None:
        self.conn.execute(
            "UPDATE identity SET backup_codes = %s WHERE id = %s",
            (list(code_hashes), identity_id),
        )

    def remove_backup_code(self, identity_id: str, code_hash: str) -> bool:
        cur = self.conn.execute(
            """
            UPDATE identity SET backup_codes = array_remove(backup_codes, %s)
            WHERE id = %s AND %s = ANY(backup_codes)
            """,
            (code_hash, identity_id, code_hash),
        )
        return cur.rowcount == 1

    # sessions
    def insert_session(self, session: Session) -> None:
        try:
            self.conn.execute(
                """
                INSERT INTO auth_session (
                    id, token, identity_id, step_up_verified, created_at, last_active,
                    expires_at, ip_address, user_agent, country, city
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    session.id,
                    session.token,
                    session.identity_id,
                    session.step_up_verified,
                    session.created_at,
                    session.last_active,
                    session.expires_at,
                    session.client.ip_address,
                    session.client.user_agent,
                    session.client.country,
                    session.client.city,
                ),
            )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("session token collision", {"field": "token"}) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "identity does not exist", {"identity_id": session.identity_id}
            ) from exc

    def get_session(self, session_id: str) -> Optional[Session]:
        row = self.conn.execute(
            "SELECT * FROM auth_session WHERE id = %s", (session_id,)
        ).fetchone()
        return self._session_from_row(row) if row else None

    def get_session_by_token(self, token: str) -> Optional[Session]:
        row = self.conn.execute(
            "SELECT * FROM auth_session WHERE token = %s", (token,)
        ).fetchone()
        return self._session_from_row(row) if row else None

    def list_sessions(self, identity_id: str, *, now: datetime) -> List[Session]:
        rows = self.conn.execute(
            """
            SELECT * FROM auth_session
            WHERE identity_id = %s AND expires_at > %s
            ORDER BY last_active DESC
            """,
            (identity_id, now),
        ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def update_session(self, session: Session) -> None:
        self.conn.execute(
            """
            UPDATE auth_session
            SET step_up_verified = %s, expires_at = %s, last_active = %s
            WHERE id = %s
            """,
            (session.step_up_verified, session.expires_at, session.last_active, session.id),
        )

    def delete_session(self, session_id: str) -> bool:
        cur = self.conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
        return cur.rowcount > 0

    def delete_sessions(
        self,
        identity_id: str,
        *,
        keep_token: Optional[str] = None,
        exclude_session_id: Optional[str] = None,
        pending_only: bool = False,
    ) -> int:
        clauses = ["identity_id = %s"]
        params: list[Any] = [identity_id]
        if keep_token is not None:
            clauses.append("token <> %s")
            params.append(keep_token)
        if exclude_session_id is not None:
            clauses.append("id <> %s")
            params.append(exclude_session_id)
        if pending_only:
            clauses.append("NOT step_up_verified")
        cur = self.conn.execute(
            f"DELETE FROM auth_session WHERE {' AND '.join(clauses)}", params
        )
        return cur.rowcount

    # pending email changes
    def insert_email_change(self, change: PendingEmailChange) -> None:
        try:
            self.conn.execute(
                """
                INSERT INTO pending_email_change (
                    id, identity_id, old_email, new_email, verify_token, cancel_token,
                    expires_at, created_at, finalized, finalized_at, cancelled, cancelled_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    change.id,
                    change.identity_id,
                    change.old_email,
                    change.new_email,
                    change.verify_token,
                    change.cancel_token,
                    change.expires_at,
                    change.created_at,
                    change.finalized,
                    change.finalized_at,
                    change.cancelled,
                    change.cancelled_at,
                ),
            )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email change token collision", {"field": "token"}) from exc

    def get_email_change_by_verify_token(self, token: str) -> Optional[PendingEmailChange]:
        row = self.conn.execute(
            "SELECT * FROM pending_email_change WHERE verify_token = %s", (token,)
        ).fetchone()
        return self._change_from_row(row) if row else None

    def get_email_change_by_cancel_token(self, token: str) -> Optional[PendingEmailChange]:
        row = self.conn.execute(
            "SELECT * FROM pending_email_change WHERE cancel_token = %s", (token,)
        ).fetchone()
        return self._change_from_row(row) if row else None

    def find_active_email_change(
        self, identity_id: str, *, now: datetime
    ) -> Optional[PendingEmailChange]:
        row = self.conn.execute(
            f"""
            SELECT * FROM pending_email_change
            WHERE identity_id = %s AND {_ACTIVE_CHANGE}
            ORDER BY created_at DESC
            LIMIT 1
            FOR UPDATE
            """,
            (identity_id, now),
        ).fetchone()
        return self._change_from_row(row) if row else None

    def email_pending_for_other(self, new_email: str, identity_id: str, *, now: datetime) -> bool:
        row = self.conn.execute(
            f"""
            SELECT 1 FROM pending_email_change
            WHERE lower(new_email) = %s AND identity_id <> %s AND {_ACTIVE_CHANGE}
            LIMIT 1
            """,
            (normalize_email(new_email), identity_id, now),
        ).fetchone()
        return row is not None

    def mark_email_change_cancelled(self, change_id: str, *, at: datetime) -> None:
        self.conn.execute(
            "UPDATE pending_email_change SET cancelled = TRUE, cancelled_at = %s WHERE id = %s",
            (at, change_id),
        )

    def mark_email_change_finalized(self, change_id: str, *, at: datetime) -> None:
        self.conn.execute(
            "UPDATE pending_email_change SET finalized = TRUE, finalized_at = %s WHERE id = %s",
            (at, change_id),
        )

    # account tokens
    def replace_account_token(self, token: AccountToken) -> None:
        self.conn.execute(
            """
            DELETE FROM account_token
            WHERE identity_id = %s AND purpose = %s AND used_at IS NULL
            """,
            (token.identity_id, token.purpose.value),
        )
        try:
            self.conn.execute(
                """
                INSERT INTO account_token (
                    id, identity_id, purpose, token_hash, expires_at, created_at, used_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    token.id,
                    token.identity_id,
                    token.purpose.value,
                    token.token_hash,
                    token.expires_at,
                    token.created_at,
                    token.used_at,
                ),
            )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("account token collision", {"field": "token"}) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "identity does not exist", {"identity_id": token.identity_id}
            ) from exc

    def get_account_token(
        self, token_hash: str, purpose: AccountTokenPurpose
    ) -> Optional[AccountToken]:
        row = self.conn.execute(
            "SELECT * FROM account_token WHERE token_hash = %s AND purpose = %s",
            (token_hash, purpose.value),
        ).fetchone()
        return self._account_token_from_row(row) if row else None

    def consume_account_token(self, token_id: str, *, at: datetime) -> bool:
        cur = self.conn.execute(
            "UPDATE account_token SET used_at = %s WHERE id = %s AND used_at IS NULL",
            (at, token_id),
        )
        return cur.rowcount == 1
