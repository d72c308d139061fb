from __future__ import annotations

import threading
import time
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from passgate.logging import get_logger
from passgate.storage.errors import ConstraintViolation
from passgate.storage.models import (
    AuditEvent,
    EmailVerification,
    PasswordReset,
    Session,
    User,
    utcnow,
)


class MemoryStore:
    """In-process credential store for tests and local development.

    Mirrors the relational store's contract, including the single-transaction
    semantics of ``apply_password_reset`` and ``apply_email_verification``.
    Returned records are copies, so callers cannot mutate stored state.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.email_verifications: Dict[str, EmailVerification] = {}
        self.password_resets: Dict[str, PasswordReset] = {}
        self.audit_events: List[AuditEvent] = []
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    # -- users ---------------------------------------------------------------

    def create_user(
        self,
        email: str,
        full_name: str,
        password_hash: Optional[str],
        *,
        currency_code: str = "USD",
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                full_name=full_name,
                password_hash=password_hash,
                currency_code=currency_code,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def record_failed_login(
        self,
        user_id: str,
        *,
        now: datetime,
        threshold: int,
        lock_until: datetime,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            attempts = user.failed_login_attempts + 1
            user.failed_login_attempts = attempts
            user.last_failed_login_at = now
            user.locked_until = lock_until if attempts >= threshold else None
            user.updated_at = now
            return replace(user)

    def record_successful_login(self, user_id: str, *, now: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.failed_login_attempts = 0
            user.last_failed_login_at = None
            user.locked_until = None
            user.last_login_at = now
            user.updated_at = now

    def update_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            user.password_hash = password_hash
            user.updated_at = utcnow()

    # -- email verification --------------------------------------------------

    def create_email_verification(self, record: EmailVerification) -> EmailVerification:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": record.user_id})
            self.email_verifications[record.id] = replace(record)
            return record

    def find_pending_email_verification(
        self, token_hash: str, *, now: datetime
    ) -> Optional[EmailVerification]:
        with self._data_lock:
            matches = [
                row
                for row in self.email_verifications.values()
                if row.token_hash == token_hash and row.is_pending(now)
            ]
            if not matches:
                return None
            return replace(max(matches, key=lambda row: row.created_at))

    def list_email_verifications(self, user_id: str) -> List[EmailVerification]:
        with self._data_lock:
            rows = [row for row in self.email_verifications.values() if row.user_id == user_id]
            return [replace(row) for row in sorted(rows, key=lambda row: row.created_at)]

    def apply_email_verification(
        self, verification_id: str, user_id: str, *, now: datetime
    ) -> bool:
        with self._data_lock:
            row = self.email_verifications.get(verification_id)
            user = self.users.get(user_id)
            if not row or not user or row.user_id != user_id or not row.is_pending(now):
                return False
            user.email_verified = True
            user.updated_at = now
            row.verified_at = now
            return True

    # -- password reset ------------------------------------------------------

    def create_password_reset(self, record: PasswordReset) -> PasswordReset:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": record.user_id})
            self.password_resets[record.id] = replace(record)
            return record

    def find_pending_password_reset(
        self, token_hash: str, *, now: datetime
    ) -> Optional[PasswordReset]:
        with self._data_lock:
            matches = [
                row
                for row in self.password_resets.values()
                if row.token_hash == token_hash and row.is_pending(now)
            ]
            if not matches:
                return None
            return replace(max(matches, key=lambda row: row.created_at))

    def list_password_resets(self, user_id: str) -> List[PasswordReset]:
        with self._data_lock:
            rows = [row for row in self.password_resets.values() if row.user_id == user_id]
            return [replace(row) for row in sorted(rows, key=lambda row: row.created_at)]

    def apply_password_reset(
        self,
        reset_id: str,
        user_id: str,
        password_hash: str,
        *,
        now: datetime,
    ) -> bool:
        with self._data_lock:
            row = self.password_resets.get(reset_id)
            user = self.users.get(user_id)
            if not row or not user or row.user_id != user_id or not row.is_pending(now):
                return False
            user.password_hash = password_hash
            user.failed_login_attempts = 0
            user.last_failed_login_at = None
            user.locked_until = None
            user.updated_at = now
            row.used_at = now
            return True

    # -- audit ---------------------------------------------------------------

    def record_audit_event(self, event: AuditEvent) -> None:
        with self._data_lock:
            self.audit_events.append(event)

    def list_audit_events(
        self, *, user_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]:
        with self._data_lock:
            events = [e for e in self.audit_events if not user_id or e.user_id == user_id]
            return sorted(events, key=lambda e: e.created_at, reverse=True)[:limit]


class MemorySessionStore:
    """Process-local session store; expired entries are dropped on read and on writes.

    Used in tests and as the development fallback when Redis is unreachable.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, Tuple[Session, float]] = {}
        self._lock = threading.Lock()

    def _live(self, token_hash: str, now: float) -> Optional[Session]:
        entry = self._sessions.get(token_hash)
        if not entry:
            return None
        session, expires_at = entry
        if expires_at <= now:
            self._sessions.pop(token_hash, None)
            return None
        return session

    def _purge_expired(self, now: float) -> None:
        expired = [key for key, (_, expires_at) in self._sessions.items() if expires_at <= now]
        for key in expired:
            del self._sessions[key]

    async def ping(self) -> bool:
        return True

    async def put(self, session: Session, ttl_seconds: int) -> None:
        now = time.monotonic()
        with self._lock:
            self._purge_expired(now)
            self._sessions[session.token_hash] = (
                replace(session),
                now + max(1, int(ttl_seconds)),
            )

    async def get(self, token_hash: str) -> Optional[Session]:
        with self._lock:
            session = self._live(token_hash, time.monotonic())
            return replace(session) if session else None

    async def take(self, token_hash: str) -> Optional[Session]:
        with self._lock:
            session = self._live(token_hash, time.monotonic())
            if session is None:
                return None
            self._sessions.pop(token_hash, None)
            return session

    async def delete(self, user_id: str, token_hash: str) -> bool:
        with self._lock:
            session = self._live(token_hash, time.monotonic())
            if session is None or session.user_id != user_id:
                return False
            self._sessions.pop(token_hash, None)
            return True

    async def delete_user_sessions(self, user_id: str) -> int:
        with self._lock:
            self._purge_expired(time.monotonic())
            stale = [
                token_hash
                for token_hash, (session, _) in self._sessions.items()
                if session.user_id == user_id
            ]
            for token_hash in stale:
                self._sessions.pop(token_hash, None)
            return len(stale)

    def count_user_sessions(self, user_id: str) -> int:
        now = time.monotonic()
        count = 0
        with self._lock:
            for token_hash in list(self._sessions):
                session = self._live(token_hash, now)
                if session and session.user_id == user_id:
                    count += 1
        return count

    async def close(self) -> None:
        with self._lock:
            self._sessions.clear()
