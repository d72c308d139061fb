from __future__ import annotations

import contextlib
import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from passgate.logging import get_logger
from passgate.storage.errors import ConstraintViolation, StoreUnavailableError
from passgate.storage.models import (
    AuditEvent,
    EmailVerification,
    PasswordReset,
    User,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        full_name TEXT NOT NULL,
        email TEXT NOT NULL,
        password_hash TEXT,
        avatar_url TEXT,
        currency_code TEXT NOT NULL DEFAULT 'USD',
        email_verified BOOLEAN NOT NULL DEFAULT false,
        onboarding_completed BOOLEAN NOT NULL DEFAULT false,
        locked_until TIMESTAMPTZ,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0 CHECK (failed_login_attempts >= 0),
        last_failed_login_at TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS users_email_key ON users (email)",
    """
    CREATE TABLE IF NOT EXISTS password_resets (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users (id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        used_at TIMESTAMPTZ,
        ip_address TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS password_resets_token_hash_idx ON password_resets (token_hash)",
    """
    CREATE TABLE IF NOT EXISTS email_verifications (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users (id) ON DELETE CASCADE,
        email TEXT NOT NULL,
        token_hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        verified_at TIMESTAMPTZ,
        ip_address TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS email_verifications_token_hash_idx ON email_verifications (token_hash)",
    """
    CREATE TABLE IF NOT EXISTS audit_logs (
        id TEXT PRIMARY KEY,
        user_id TEXT,
        action TEXT NOT NULL,
        resource_type TEXT,
        resource_id TEXT,
        ip_address TEXT,
        user_agent TEXT,
        metadata JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_logs_user_id_idx ON audit_logs (user_id)",
    "CREATE INDEX IF NOT EXISTS audit_logs_action_idx ON audit_logs (action)",
    "CREATE INDEX IF NOT EXISTS audit_logs_created_at_idx ON audit_logs (created_at)",
)


class PostgresStore:
    """Postgres-backed credential store: users, one-time token rows and the audit log."""

    def __init__(self, dsn: str, *, timeout_seconds: float = 5.0) -> None:
        self.dsn = dsn
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout_seconds,
            open=True,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout_seconds)),
                "options": f"-c statement_timeout={int(timeout_seconds * 1000)}",
            },
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self):
        try:
            with self.pool.connection() as conn:
                yield conn
        except (PoolTimeout, psycopg.OperationalError) as exc:
            self.logger.error("credential_store_unavailable", error=str(exc))
            raise StoreUnavailableError("credential store unavailable", backend="postgres") from exc

    def _ensure_schema(self) -> None:
        """Create the auth tables and indexes if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            full_name=row["full_name"],
            password_hash=row.get("password_hash"),
            currency_code=row.get("currency_code") or "USD",
            avatar_url=row.get("avatar_url"),
            email_verified=bool(row.get("email_verified", False)),
            onboarding_completed=bool(row.get("onboarding_completed", False)),
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            last_failed_login_at=row.get("last_failed_login_at"),
            locked_until=row.get("locked_until"),
            last_login_at=row.get("last_login_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    # users
    def create_user(
        self,
        email: str,
        full_name: str,
        password_hash: Optional[str],
        *,
        currency_code: str = "USD",
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (id, full_name, email, password_hash, currency_code)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, full_name, email, password_hash, currency_code),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def record_failed_login(
        self,
        user_id: str,
        *,
        now: datetime,
        threshold: int,
        lock_until: datetime,
    ) -> Optional[User]:
        # Single-row update so concurrent failures never lose a write; SET
        # expressions see the pre-update counter.
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users
                SET failed_login_attempts = failed_login_attempts + 1,
                    last_failed_login_at = %(now)s,
                    locked_until = CASE WHEN failed_login_attempts + 1 >= %(threshold)s
                                        THEN %(lock_until)s::timestamptz ELSE NULL END,
                    updated_at = %(now)s
                WHERE id = %(user_id)s
                RETURNING *
                """,
                {
                    "user_id": user_id,
                    "now": now,
                    "threshold": threshold,
                    "lock_until": lock_until,
                },
            ).fetchone()
        return self._user_from_row(row) if row else None

    def record_successful_login(self, user_id: str, *, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE users
                SET failed_login_attempts = 0,
                    last_failed_login_at = NULL,
                    locked_until = NULL,
                    last_login_at = %s,
                    updated_at = %s
                WHERE id = %s
                """,
                (now, now, user_id),
            )

    def update_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE users SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, user_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})

    # email verification
    def create_email_verification(self, record: EmailVerification) -> EmailVerification:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO email_verifications
                        (id, user_id, email, token_hash, expires_at, ip_address, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.user_id,
                        record.email,
                        record.token_hash,
                        record.expires_at,
                        record.ip_address,
                        record.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": record.user_id})
        return record

    @staticmethod
    def _verification_from_row(row: Dict[str, Any]) -> EmailVerification:
        return EmailVerification(
            id=row["id"],
            user_id=row["user_id"],
            email=row["email"],
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            verified_at=row.get("verified_at"),
            ip_address=row.get("ip_address"),
            created_at=row["created_at"],
        )

    def find_pending_email_verification(
        self, token_hash: str, *, now: datetime
    ) -> Optional[EmailVerification]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM email_verifications
                WHERE token_hash = %s AND verified_at IS NULL AND expires_at > %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (token_hash, now),
            ).fetchone()
        return self._verification_from_row(row) if row else None

    def list_email_verifications(self, user_id: str) -> List[EmailVerification]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM email_verifications WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._verification_from_row(row) for row in rows]

    def apply_email_verification(
        self, verification_id: str, user_id: str, *, now: datetime
    ) -> bool:
        """Mark the user verified and consume the row in one transaction.

        Returns False (and changes nothing) when the row was consumed or expired
        in the meantime.
        """
        with self._connect() as conn:
            with conn.transaction():
                conn.execute(
                    "UPDATE users SET email_verified = true, updated_at = %s WHERE id = %s",
                    (now, user_id),
                )
                cur = conn.execute(
                    """
                    UPDATE email_verifications SET verified_at = %s
                    WHERE id = %s AND user_id = %s AND verified_at IS NULL AND expires_at > %s
                    """,
                    (now, verification_id, user_id, now),
                )
                if cur.rowcount != 1:
                    raise psycopg.Rollback()
                return True
        return False

    # password reset
    def create_password_reset(self, record: PasswordReset) -> PasswordReset:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO password_resets
                        (id, user_id, token_hash, expires_at, ip_address, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.user_id,
                        record.token_hash,
                        record.expires_at,
                        record.ip_address,
                        record.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": record.user_id})
        return record

    @staticmethod
    def _reset_from_row(row: Dict[str, Any]) -> PasswordReset:
        return PasswordReset(
            id=row["id"],
            user_id=row["user_id"],
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            used_at=row.get("used_at"),
            ip_address=row.get("ip_address"),
            created_at=row["created_at"],
        )

    def find_pending_password_reset(
        self, token_hash: str, *, now: datetime
    ) -> Optional[PasswordReset]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM password_resets
                WHERE token_hash = %s AND used_at IS NULL AND expires_at > %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (token_hash, now),
            ).fetchone()
        return self._reset_from_row(row) if row else None

    def list_password_resets(self, user_id: str) -> List[PasswordReset]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM password_resets WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._reset_from_row(row) for row in rows]

    def apply_password_reset(
        self,
        reset_id: str,
        user_id: str,
        password_hash: str,
        *,
        now: datetime,
    ) -> bool:
        """Store the new hash, clear lockout state and consume the reset row atomically."""
        with self._connect() as conn:
            with conn.transaction():
                conn.execute(
                    """
                    UPDATE users
                    SET password_hash = %s,
                        failed_login_attempts = 0,
                        last_failed_login_at = NULL,
                        locked_until = NULL,
                        updated_at = %s
                    WHERE id = %s
                    """,
                    (password_hash, now, user_id),
                )
                cur = conn.execute(
                    """
                    UPDATE password_resets SET used_at = %s
                    WHERE id = %s AND user_id = %s AND used_at IS NULL AND expires_at > %s
                    """,
                    (now, reset_id, user_id, now),
                )
                if cur.rowcount != 1:
                    raise psycopg.Rollback()
                return True
        return False

    # audit
    def record_audit_event(self, event: AuditEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_logs
                    (id, user_id, action, resource_type, resource_id, ip_address, user_agent, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.user_id,
                    event.action,
                    event.resource_type,
                    event.resource_id,
                    event.ip_address,
                    event.user_agent,
                    json.dumps(event.metadata) if event.metadata else None,
                    event.created_at,
                ),
            )

    def list_audit_events(
        self, *, user_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]:
        with self._connect() as conn:
            if user_id:
                rows = conn.execute(
                    "SELECT * FROM audit_logs WHERE user_id = %s ORDER BY created_at DESC LIMIT %s",
                    (user_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM audit_logs ORDER BY created_at DESC LIMIT %s",
                    (limit,),
                ).fetchall()
        return [
            AuditEvent(
                id=row["id"],
                action=row["action"],
                user_id=row.get("user_id"),
                resource_type=row.get("resource_type"),
                resource_id=row.get("resource_id"),
                ip_address=row.get("ip_address"),
                user_agent=row.get("user_agent"),
                metadata=row.get("metadata"),
                created_at=row["created_at"],
            )
            for row in rows
        ]
