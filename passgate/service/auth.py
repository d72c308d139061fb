from __future__ import annotations

import asyncio
import functools
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

from passgate.config import Settings
from passgate.logging import email_fingerprint, get_logger
from passgate.service import audit as audit_actions
from passgate.service.audit import AuditService
from passgate.service.email import EmailService
from passgate.service.errors import (
    AccountLockedError,
    AuthenticationError,
    BadRequestError,
    ConflictError,
    TransientError,
    ValidationError,
)
from passgate.service.guard import AccountGuard
from passgate.service.tokens import TokenCodec
from passgate.service.validation import (
    normalize_currency_code,
    normalize_email,
    normalize_full_name,
    validate_opaque_token,
    validate_password_input,
    validate_password_strength,
)
from passgate.storage.errors import ConstraintViolation, StoreUnavailableError
from passgate.storage.models import (
    AuditEvent,
    EmailVerification,
    PasswordReset,
    Session,
    User,
)

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid credentials"
INVALID_TOKEN = "Invalid or expired token"


class CredentialStore(Protocol):
    def create_user(
        self,
        email: str,
        full_name: str,
        password_hash: Optional[str],
        *,
        currency_code: str = "USD",
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def record_failed_login(
        self, user_id: str, *, now: datetime, threshold: int, lock_until: datetime
    ) -> Optional[User]: ...

    def record_successful_login(self, user_id: str, *, now: datetime) -> None: ...

    def update_password_hash(self, user_id: str, password_hash: str) -> None: ...

    def create_email_verification(self, record: EmailVerification) -> EmailVerification: ...

    def find_pending_email_verification(
        self, token_hash: str, *, now: datetime
    ) -> Optional[EmailVerification]: ...

    def apply_email_verification(
        self, verification_id: str, user_id: str, *, now: datetime
    ) -> bool: ...

    def create_password_reset(self, record: PasswordReset) -> PasswordReset: ...

    def find_pending_password_reset(
        self, token_hash: str, *, now: datetime
    ) -> Optional[PasswordReset]: ...

    def apply_password_reset(
        self, reset_id: str, user_id: str, password_hash: str, *, now: datetime
    ) -> bool: ...

    def record_audit_event(self, event: AuditEvent) -> None: ...

    def list_audit_events(
        self, *, user_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]: ...


class SessionStore(Protocol):
    async def put(self, session: Session, ttl_seconds: int) -> None: ...

    async def get(self, token_hash: str) -> Optional[Session]: ...

    async def take(self, token_hash: str) -> Optional[Session]: ...

    async def delete(self, user_id: str, token_hash: str) -> bool: ...

    async def delete_user_sessions(self, user_id: str) -> int: ...


@dataclass
class AuthContext:
    user_id: str
    email: str
    email_verified: bool


@dataclass
class AuthTokens:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


@dataclass
class AuthResult:
    tokens: AuthTokens
    user: Dict[str, Any]


def _surfaces_store_outages(func):
    """Report store outages as ``TransientError`` instead of a security failure."""

    @functools.wraps(func)
    async def wrapper(self: "AuthService", *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except StoreUnavailableError as exc:
            self.logger.error(
                "auth_store_unavailable",
                operation=func.__name__,
                backend=exc.backend,
                error=exc.message,
            )
            raise TransientError("Service temporarily unavailable, please retry") from exc

    return wrapper


class AuthService:
    """Signup, login, token rotation, password reset and email verification.

    Collaborators are injected; the service itself keeps no mutable state and
    takes no locks. Blocking store calls and password hashing run in worker
    threads so the event loop stays free.
    """

    def __init__(
        self,
        store: CredentialStore,
        sessions: SessionStore,
        settings: Settings,
        *,
        codec: Optional[TokenCodec] = None,
        guard: Optional[AccountGuard] = None,
        email: Optional[EmailService] = None,
        audit: Optional[AuditService] = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.settings = settings
        self.codec = codec or TokenCodec(settings)
        self.guard = guard or AccountGuard(store, settings)
        self.email = email or EmailService()
        self.audit = audit or AuditService(store, timeout_seconds=settings.store_timeout_seconds)
        self.logger = logger
        self._session_ttl = timedelta(days=settings.session_ttl_days)
        self._verification_ttl = timedelta(hours=settings.verification_token_ttl_hours)
        self._reset_ttl = timedelta(minutes=settings.password_reset_ttl_minutes)
        self._pending_notices: set[asyncio.Task] = set()

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    @property
    def session_ttl_seconds(self) -> int:
        return int(self._session_ttl.total_seconds())

    async def _store(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await asyncio.to_thread(fn, *args, **kwargs)

    @staticmethod
    def _validated(validator: Callable[[Any], Any], value: Any, field: str) -> Any:
        try:
            return validator(value)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"field": field}) from exc

    async def _notify(self, kind: str, send: Callable[..., bool], *args: Any) -> bool:
        """Run one email send with a bounded wait; never raises."""
        try:
            delivered = await asyncio.wait_for(
                asyncio.to_thread(send, *args),
                timeout=self.settings.email_timeout_seconds,
            )
        except Exception as exc:
            self.logger.warning(
                "notification_failed", kind=kind, error=str(exc) or type(exc).__name__
            )
            return False
        if not delivered:
            self.logger.warning("notification_not_delivered", kind=kind)
        return bool(delivered)

    def _defer_notice(self, kind: str, send: Callable[..., bool], *args: Any) -> None:
        """Send off the caller's path; the task is kept until it finishes."""
        task = asyncio.create_task(self._notify(kind, send, *args))
        self._pending_notices.add(task)
        task.add_done_callback(self._notice_done)

    def _notice_done(self, task: asyncio.Task) -> None:
        self._pending_notices.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self.logger.error("deferred_notification_failed", error=str(task.exception()))

    async def drain_notifications(self) -> None:
        """Wait for deferred sends started by this engine."""
        pending = list(self._pending_notices)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _open_session(
        self, user: User, ip_address: Optional[str], user_agent: Optional[str]
    ) -> AuthTokens:
        now = self._now()
        access = self.codec.sign_access_token(
            user.id, user.email, user.email_verified, now=now
        )
        refresh_token = self.codec.new_opaque_token()
        session = Session.new(
            user.id,
            self.codec.hash_token(refresh_token),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        await self.sessions.put(session, self.session_ttl_seconds)
        return AuthTokens(
            access_token=access.token,
            refresh_token=refresh_token,
            access_expires_at=access.expires_at,
            refresh_expires_at=now + self._session_ttl,
        )

    async def _issue_email_verification(
        self, user: User, ip_address: Optional[str]
    ) -> EmailVerification:
        token = self.codec.new_opaque_token()
        record = EmailVerification.new(
            user.id,
            user.email,
            self.codec.hash_token(token),
            self._verification_ttl,
            ip_address=ip_address,
        )
        await self._store(self.store.create_email_verification, record)
        delivered = await self._notify(
            "email_verification",
            self.email.send_email_verification,
            user.email,
            token,
            user.full_name,
        )
        if not delivered and self.settings.email_delivery_required:
            raise TransientError("Verification email could not be sent, please retry")
        return record

    @_surfaces_store_outages
    async def signup(
        self,
        full_name: str,
        email: str,
        password: str,
        currency_code: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        name = self._validated(normalize_full_name, full_name, "full_name")
        normalized_email = self._validated(normalize_email, email, "email")
        self._validated(validate_password_strength, password, "password")
        currency = self._validated(
            lambda value: normalize_currency_code(value, self.settings.default_currency),
            currency_code,
            "currency_code",
        )

        if await self._store(self.store.get_user_by_email, normalized_email):
            raise ConflictError("Email already registered", detail={"field": "email"})
        password_hash = await asyncio.to_thread(self.codec.hash_password, password)
        try:
            user = await self._store(
                self.store.create_user,
                normalized_email,
                name,
                password_hash,
                currency_code=currency,
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent signup for the same address
            raise ConflictError("Email already registered", detail={"field": "email"}) from exc

        await self._issue_email_verification(user, ip_address)
        tokens = await self._open_session(user, ip_address, user_agent)
        await self.audit.record(
            audit_actions.USER_SIGNUP,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"email": user.email},
        )
        self.logger.info("user_signed_up", user_id=user.id)
        return AuthResult(tokens=tokens, user=user.to_public())

    @_surfaces_store_outages
    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        normalized_email = self._validated(normalize_email, email, "email")
        self._validated(validate_password_input, password, "password")

        user = await self._store(self.store.get_user_by_email, normalized_email)
        if user is None or not user.password_hash:
            # Same cost as a wrong password so the response time does not reveal the account
            await asyncio.to_thread(self.codec.burn_password_check, password)
            await self.audit.record(
                audit_actions.LOGIN_FAILED,
                user_id=user.id if user else None,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={"email": normalized_email},
            )
            self.logger.info(
                "login_failed",
                reason="no_local_password" if user else "unknown_account",
                email_hash=email_fingerprint(normalized_email),
            )
            raise AuthenticationError(INVALID_CREDENTIALS)

        now = self._now()
        status = self.guard.status(user, now)
        if status.is_locked:
            minutes = self.guard.remaining_minutes(status.locked_until, now)
            self.logger.info("login_rejected_locked", user_id=user.id, retry_after_minutes=minutes)
            raise AccountLockedError(minutes)

        verified = await asyncio.to_thread(
            self.codec.verify_password, password, user.password_hash
        )
        if not verified:
            outcome = await self._store(self.guard.record_failure, user, self._now())
            if outcome.locked:
                await self.audit.record(
                    audit_actions.ACCOUNT_LOCKED,
                    user_id=user.id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    metadata={"failed_attempts": outcome.attempts},
                )
                self.logger.warning(
                    "account_locked", user_id=user.id, failed_attempts=outcome.attempts
                )
            else:
                await self.audit.record(
                    audit_actions.LOGIN_FAILED,
                    user_id=user.id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    metadata={"email": user.email},
                )
                self.logger.info(
                    "login_failed", user_id=user.id, failed_attempts=outcome.attempts
                )
            raise AuthenticationError(INVALID_CREDENTIALS)

        login_at = self._now()
        await self._store(self.guard.record_success, user, login_at)
        if self.codec.password_needs_rehash(user.password_hash):
            new_hash = await asyncio.to_thread(self.codec.hash_password, password)
            await self._store(self.store.update_password_hash, user.id, new_hash)
            self.logger.info("password_rehashed", user_id=user.id)
        user.failed_login_attempts = 0
        user.last_failed_login_at = None
        user.locked_until = None
        user.last_login_at = login_at

        tokens = await self._open_session(user, ip_address, user_agent)
        await self.audit.record(
            audit_actions.USER_LOGIN,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.logger.info("user_logged_in", user_id=user.id)
        return AuthResult(tokens=tokens, user=user.to_public())

    @_surfaces_store_outages
    async def logout(
        self,
        user_id: str,
        refresh_token: Optional[str],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        if refresh_token:
            await self.sessions.delete(user_id, self.codec.hash_token(refresh_token))
        await self.audit.record(
            audit_actions.USER_LOGOUT,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.logger.info("user_logged_out", user_id=user_id)

    @_surfaces_store_outages
    async def refresh(self, refresh_token: str) -> AuthTokens:
        """Rotate a refresh token. The presented token is consumed even if rotation is refused."""
        if not refresh_token or len(refresh_token) > 256:
            raise AuthenticationError("Invalid refresh token")
        session = await self.sessions.take(self.codec.hash_token(refresh_token))
        if session is None:
            self.logger.info("refresh_rejected", reason="unknown_session")
            raise AuthenticationError("Invalid refresh token")
        user = await self._store(self.store.get_user, session.user_id)
        if user is None:
            self.logger.warning("refresh_rejected", reason="user_missing", user_id=session.user_id)
            raise AuthenticationError("Invalid refresh token")
        if self.guard.status(user, self._now()).is_locked:
            self.logger.info("refresh_rejected", reason="account_locked", user_id=user.id)
            raise AuthenticationError("Account is locked")
        tokens = await self._open_session(user, session.ip_address, session.user_agent)
        self.logger.info("tokens_refreshed", user_id=user.id)
        return tokens

    async def revoke_all_sessions(self, user_id: str) -> int:
        revoked = await self.sessions.delete_user_sessions(user_id)
        self.logger.info("all_sessions_revoked", user_id=user_id, count=revoked)
        return revoked

    @_surfaces_store_outages
    async def forgot_password(
        self,
        email: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        defer: Optional[Callable[..., Any]] = None,
    ) -> None:
        """Start a password reset without revealing whether the address exists.

        The reset email never delays the return: it goes to ``defer`` (for
        example ``BackgroundTasks.add_task``) when given, otherwise to a
        tracked task.
        """
        normalized_email = self._validated(normalize_email, email, "email")
        user = await self._store(self.store.get_user_by_email, normalized_email)
        if user is None:
            self.logger.info(
                "password_reset_unknown_email", email_hash=email_fingerprint(normalized_email)
            )
            return None

        token = self.codec.new_opaque_token()
        record = PasswordReset.new(
            user.id,
            self.codec.hash_token(token),
            self._reset_ttl,
            ip_address=ip_address,
        )
        await self._store(self.store.create_password_reset, record)
        notice = (
            "password_reset",
            self.email.send_password_reset,
            user.email,
            token,
            user.full_name,
        )
        if defer is not None:
            defer(self._notify, *notice)
        else:
            self._defer_notice(*notice)
        await self.audit.record(
            audit_actions.PASSWORD_RESET_REQUESTED,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.logger.info("password_reset_requested", user_id=user.id)
        return None

    @_surfaces_store_outages
    async def reset_password(
        self,
        token: str,
        new_password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        token = self._validated(validate_opaque_token, token, "token")
        self._validated(validate_password_strength, new_password, "new_password")

        token_hash = self.codec.hash_token(token)
        reset = await self._store(
            self.store.find_pending_password_reset, token_hash, now=self._now()
        )
        if reset is None:
            self.logger.info("password_reset_invalid_token")
            raise BadRequestError(INVALID_TOKEN)

        password_hash = await asyncio.to_thread(self.codec.hash_password, new_password)
        applied = await self._store(
            self.store.apply_password_reset,
            reset.id,
            reset.user_id,
            password_hash,
            now=self._now(),
        )
        if not applied:
            # Consumed by a concurrent request, or expired while hashing
            self.logger.info("password_reset_lost_race", user_id=reset.user_id)
            raise BadRequestError(INVALID_TOKEN)

        await self.revoke_all_sessions(reset.user_id)
        user = await self._store(self.store.get_user, reset.user_id)
        if user is not None:
            await self._notify(
                "password_changed", self.email.send_password_changed, user.email, user.full_name
            )
        await self.audit.record(
            audit_actions.PASSWORD_CHANGED,
            user_id=reset.user_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.logger.info("password_reset_completed", user_id=reset.user_id)

    @_surfaces_store_outages
    async def verify_email(
        self,
        token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        token = self._validated(validate_opaque_token, token, "token")
        token_hash = self.codec.hash_token(token)
        verification = await self._store(
            self.store.find_pending_email_verification, token_hash, now=self._now()
        )
        if verification is None:
            self.logger.info("email_verification_invalid_token")
            raise BadRequestError(INVALID_TOKEN)
        applied = await self._store(
            self.store.apply_email_verification,
            verification.id,
            verification.user_id,
            now=self._now(),
        )
        if not applied:
            raise BadRequestError(INVALID_TOKEN)
        await self.audit.record(
            audit_actions.EMAIL_VERIFIED,
            user_id=verification.user_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.logger.info("email_verified", user_id=verification.user_id)

    @_surfaces_store_outages
    async def resend_verification(
        self, user_id: str, *, ip_address: Optional[str] = None
    ) -> None:
        user = await self._store(self.store.get_user, user_id)
        if user is None:
            raise BadRequestError("User not found")
        if user.email_verified:
            raise BadRequestError("Email is already verified")
        await self._issue_email_verification(user, ip_address)
        self.logger.info("email_verification_resent", user_id=user.id)

    @_surfaces_store_outages
    async def whoami(self, user_id: str) -> Dict[str, Any]:
        user = await self._store(self.store.get_user, user_id)
        if user is None:
            raise BadRequestError("User not found")
        return user.to_public()

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    @_surfaces_store_outages
    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Resolve a bearer header to the caller, rejecting unknown or locked accounts."""
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("Missing bearer token")
        claims = self.codec.verify_access_token(token)
        if claims is None:
            raise AuthenticationError("Invalid or expired access token")
        user = await self._store(self.store.get_user, claims.user_id)
        if user is None:
            raise AuthenticationError("Invalid or expired access token")
        if self.guard.status(user, self._now()).is_locked:
            raise AuthenticationError("Account is locked")
        return AuthContext(
            user_id=user.id,
            email=user.email,
            email_verified=user.email_verified,
        )
