"""Unit tests for the auth engine.

Tests for:
- Signup and duplicate detection
- Login, generic failures and lockout
- Refresh-token rotation
- Logout
- Password reset and email verification
- Notification and audit failure policy
"""

import asyncio
import time
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from passgate.service import audit as audit_actions
from passgate.service.auth import INVALID_CREDENTIALS, INVALID_TOKEN, AuthService
from passgate.service.errors import (
    AccountLockedError,
    AuthenticationError,
    BadRequestError,
    ConflictError,
    TransientError,
    ValidationError,
)
from passgate.storage.errors import StoreUnavailableError

PASSWORD = "Secur3Pass"


async def _signup(auth_service, email="alice@x.com", password=PASSWORD, name="Alice"):
    return await auth_service.signup(name, email, password)


async def _request_reset(auth_service, email="alice@x.com"):
    await auth_service.forgot_password(email)
    await auth_service.drain_notifications()


def _actions(memory_store, user_id=None):
    return [event.action for event in memory_store.list_audit_events(user_id=user_id)]


class TestSignup:
    """Tests for account creation."""

    async def test_signup_returns_tokens_and_unverified_projection(
        self, auth_service, memory_store, session_store
    ):
        result = await _signup(auth_service)

        assert result.tokens.access_token
        assert result.tokens.refresh_token
        assert result.tokens.token_type == "bearer"
        assert result.user["email"] == "alice@x.com"
        assert result.user["full_name"] == "Alice"
        assert result.user["email_verified"] is False
        assert result.user["currency_code"] == "USD"
        assert "password_hash" not in result.user
        assert session_store.count_user_sessions(result.user["id"]) == 1

    async def test_signup_creates_exactly_one_pending_verification(
        self, auth_service, memory_store, mailer
    ):
        result = await _signup(auth_service)

        rows = memory_store.list_email_verifications(result.user["id"])
        assert len(rows) == 1
        assert rows[0].verified_at is None
        assert rows[0].expires_at > datetime.now(timezone.utc) + timedelta(hours=23)
        assert len(mailer.messages_to("alice@x.com", "verify")) == 1

    async def test_signup_stores_only_token_digest(self, auth_service, memory_store, mailer):
        result = await _signup(auth_service)
        token = mailer.last_token("alice@x.com", "verify")

        row = memory_store.list_email_verifications(result.user["id"])[0]
        assert row.token_hash != token
        assert row.token_hash == auth_service.codec.hash_token(token)

    async def test_signup_normalizes_email(self, auth_service):
        result = await _signup(auth_service, email="  Alice@X.com ")
        assert result.user["email"] == "alice@x.com"

    async def test_signup_accepts_currency_code(self, auth_service):
        result = await auth_service.signup("Bob Builder", "bob@x.com", PASSWORD, "eur")
        assert result.user["currency_code"] == "EUR"

    async def test_signup_rejects_duplicate_email_case_insensitively(self, auth_service):
        await _signup(auth_service)

        with pytest.raises(ConflictError):
            await _signup(auth_service, email="ALICE@x.com")

    async def test_concurrent_signups_for_one_email_create_one_account(
        self, auth_service, memory_store
    ):
        results = await asyncio.gather(
            _signup(auth_service),
            _signup(auth_service),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], ConflictError)
        assert len(memory_store.users) == 1

    @pytest.mark.parametrize(
        "password",
        ["short1A", "alllowercase1", "ALLUPPERCASE1", "NoDigitsHere", "A1" + "a" * 127],
    )
    async def test_signup_rejects_weak_password(self, auth_service, memory_store, password):
        with pytest.raises(ValidationError) as excinfo:
            await _signup(auth_service, password=password)

        assert excinfo.value.detail == {"field": "password"}
        assert memory_store.users == {}

    async def test_validation_error_is_a_bad_request(self, auth_service):
        with pytest.raises(BadRequestError):
            await _signup(auth_service, email="not-an-email")

    async def test_signup_audits_event(self, auth_service, memory_store):
        result = await _signup(auth_service)
        assert audit_actions.USER_SIGNUP in _actions(memory_store, result.user["id"])


class TestLogin:
    """Tests for password login and the account guard."""

    async def test_login_success_returns_tokens_and_stamps_last_login(
        self, auth_service, memory_store, session_store
    ):
        signup = await _signup(auth_service)

        result = await auth_service.login("alice@x.com", PASSWORD)

        assert result.tokens.access_token
        assert result.tokens.refresh_token != signup.tokens.refresh_token
        assert result.user["last_login_at"] is not None
        assert memory_store.get_user(signup.user["id"]).last_login_at is not None
        assert session_store.count_user_sessions(signup.user["id"]) == 2

    async def test_login_email_lookup_is_case_insensitive(self, auth_service):
        await _signup(auth_service)
        result = await auth_service.login("ALICE@X.COM", PASSWORD)
        assert result.user["email"] == "alice@x.com"

    async def test_wrong_password_and_unknown_email_fail_identically(self, auth_service):
        await _signup(auth_service)

        with pytest.raises(AuthenticationError) as wrong_password:
            await auth_service.login("alice@x.com", "Wrong1Pass")
        with pytest.raises(AuthenticationError) as unknown_email:
            await auth_service.login("nobody@x.com", PASSWORD)

        assert type(wrong_password.value) is type(unknown_email.value)
        assert wrong_password.value.message == INVALID_CREDENTIALS
        assert unknown_email.value.message == INVALID_CREDENTIALS
        assert wrong_password.value.detail == unknown_email.value.detail == {}

    async def test_unknown_email_audits_failed_login_without_user(
        self, auth_service, memory_store
    ):
        with pytest.raises(AuthenticationError):
            await auth_service.login("nobody@x.com", PASSWORD)

        events = memory_store.list_audit_events()
        assert events[0].action == audit_actions.LOGIN_FAILED
        assert events[0].user_id is None
        assert events[0].metadata == {"email": "nobody@x.com"}

    async def test_wrong_password_increments_counter(self, auth_service, memory_store):
        signup = await _signup(auth_service)

        for _ in range(2):
            with pytest.raises(AuthenticationError):
                await auth_service.login("alice@x.com", "Wrong1Pass")

        user = memory_store.get_user(signup.user["id"])
        assert user.failed_login_attempts == 2
        assert user.locked_until is None

    async def test_five_failures_lock_even_the_correct_password(
        self, auth_service, memory_store
    ):
        signup = await _signup(auth_service)
        await auth_service.login("alice@x.com", PASSWORD)

        for _ in range(5):
            with pytest.raises(AuthenticationError) as excinfo:
                await auth_service.login("alice@x.com", "wrong")
            assert excinfo.value.message == INVALID_CREDENTIALS

        user = memory_store.get_user(signup.user["id"])
        assert user.failed_login_attempts == 5
        assert user.locked_until is not None

        with pytest.raises(AccountLockedError) as locked:
            await auth_service.login("alice@x.com", PASSWORD)

        assert isinstance(locked.value, AuthenticationError)
        assert locked.value.retry_after_minutes == 30
        assert locked.value.message == "Account is locked. Please try again in 30 minutes"
        assert audit_actions.ACCOUNT_LOCKED in _actions(memory_store, signup.user["id"])

    async def test_locked_login_does_not_verify_or_count(self, auth_service, memory_store):
        signup = await _signup(auth_service)
        user_id = signup.user["id"]
        memory_store.users[user_id].failed_login_attempts = 5
        memory_store.users[user_id].locked_until = datetime.now(timezone.utc) + timedelta(
            seconds=30
        )

        def _fail(*_args, **_kwargs):
            raise AssertionError("password verification must not run while locked")

        auth_service.codec.verify_password = _fail

        with pytest.raises(AccountLockedError) as excinfo:
            await auth_service.login("alice@x.com", "wrong")

        assert excinfo.value.retry_after_minutes == 1
        assert excinfo.value.message.endswith("1 minute")
        assert memory_store.get_user(user_id).failed_login_attempts == 5

    async def test_expired_lock_is_ignored_and_success_clears_state(
        self, auth_service, memory_store
    ):
        signup = await _signup(auth_service)
        user_id = signup.user["id"]
        memory_store.users[user_id].failed_login_attempts = 5
        memory_store.users[user_id].locked_until = datetime.now(timezone.utc) - timedelta(
            minutes=1
        )

        await auth_service.login("alice@x.com", PASSWORD)

        user = memory_store.get_user(user_id)
        assert user.failed_login_attempts == 0
        assert user.locked_until is None

    async def test_failure_after_expired_lock_locks_again(
        self, auth_service, memory_store
    ):
        signup = await _signup(auth_service)
        user_id = signup.user["id"]
        memory_store.users[user_id].failed_login_attempts = 5
        memory_store.users[user_id].locked_until = datetime.now(timezone.utc) - timedelta(
            minutes=1
        )

        with pytest.raises(AuthenticationError):
            await auth_service.login("alice@x.com", "wrong")

        user = memory_store.get_user(user_id)
        assert user.failed_login_attempts == 6
        assert user.locked_until is not None
        assert user.locked_until > datetime.now(timezone.utc)
        assert audit_actions.ACCOUNT_LOCKED in _actions(memory_store, user_id)

        with pytest.raises(AccountLockedError):
            await auth_service.login("alice@x.com", PASSWORD)

    async def test_concurrent_failures_converge_to_locked(self, auth_service, memory_store):
        signup = await _signup(auth_service)

        results = await asyncio.gather(
            *[auth_service.login("alice@x.com", "wrong") for _ in range(8)],
            return_exceptions=True,
        )

        assert all(isinstance(r, AuthenticationError) for r in results)
        user = memory_store.get_user(signup.user["id"])
        assert user.failed_login_attempts >= 5
        assert user.locked_until is not None

    async def test_login_rejects_oversized_password_before_lookup(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.login("alice@x.com", "a" * 129)


class TestRefresh:
    """Tests for refresh-token rotation."""

    async def test_refresh_rotates_tokens(self, auth_service, session_store):
        signup = await _signup(auth_service)
        old = signup.tokens.refresh_token

        tokens = await auth_service.refresh(old)

        assert tokens.refresh_token != old
        assert tokens.access_token
        with pytest.raises(AuthenticationError):
            await auth_service.refresh(old)
        assert session_store.count_user_sessions(signup.user["id"]) == 1

    async def test_refresh_carries_forward_client_metadata(
        self, auth_service, session_store
    ):
        result = await auth_service.signup(
            "Alice", "alice@x.com", PASSWORD, ip_address="10.0.0.1", user_agent="pytest"
        )

        tokens = await auth_service.refresh(result.tokens.refresh_token)

        session = await session_store.get(auth_service.codec.hash_token(tokens.refresh_token))
        assert session.ip_address == "10.0.0.1"
        assert session.user_agent == "pytest"

    async def test_concurrent_refresh_has_exactly_one_winner(self, auth_service):
        signup = await _signup(auth_service)
        token = signup.tokens.refresh_token

        results = await asyncio.gather(
            auth_service.refresh(token),
            auth_service.refresh(token),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], AuthenticationError)

    async def test_refresh_rejects_unknown_token(self, auth_service):
        with pytest.raises(AuthenticationError):
            await auth_service.refresh("not-a-real-token")

    async def test_refresh_rejects_locked_user(self, auth_service, memory_store):
        signup = await _signup(auth_service)
        memory_store.users[signup.user["id"]].locked_until = datetime.now(
            timezone.utc
        ) + timedelta(minutes=10)

        with pytest.raises(AuthenticationError):
            await auth_service.refresh(signup.tokens.refresh_token)

    async def test_refresh_rejects_deleted_user(self, auth_service, memory_store):
        signup = await _signup(auth_service)
        del memory_store.users[signup.user["id"]]

        with pytest.raises(AuthenticationError):
            await auth_service.refresh(signup.tokens.refresh_token)


class TestLogout:
    """Tests for logout."""

    async def test_logout_revokes_only_that_session(self, auth_service, session_store):
        signup = await _signup(auth_service)
        other = await auth_service.login("alice@x.com", PASSWORD)
        user_id = signup.user["id"]

        await auth_service.logout(user_id, signup.tokens.refresh_token)

        with pytest.raises(AuthenticationError):
            await auth_service.refresh(signup.tokens.refresh_token)
        assert await auth_service.refresh(other.tokens.refresh_token)

    async def test_logout_is_idempotent(self, auth_service, memory_store):
        signup = await _signup(auth_service)
        user_id = signup.user["id"]

        await auth_service.logout(user_id, signup.tokens.refresh_token)
        await auth_service.logout(user_id, signup.tokens.refresh_token)
        await auth_service.logout(user_id, None)

        assert _actions(memory_store, user_id).count(audit_actions.USER_LOGOUT) == 3

    async def test_logout_cannot_revoke_another_users_session(
        self, auth_service, session_store
    ):
        alice = await _signup(auth_service)
        bob = await _signup(auth_service, email="bob@x.com", name="Bob")

        await auth_service.logout(bob.user["id"], alice.tokens.refresh_token)

        assert session_store.count_user_sessions(alice.user["id"]) == 1


class TestPasswordReset:
    """Tests for forgot-password and reset-password."""

    async def test_forgot_password_for_unknown_email_is_silent(
        self, auth_service, memory_store, mailer
    ):
        await _signup(auth_service)
        mailer.sent.clear()

        assert await auth_service.forgot_password("nobody@x.com") is None

        assert mailer.sent == []
        assert memory_store.password_resets == {}

    async def test_forgot_password_creates_row_and_sends_mail(
        self, auth_service, memory_store, mailer
    ):
        signup = await _signup(auth_service)

        assert await auth_service.forgot_password("alice@x.com") is None
        await auth_service.drain_notifications()

        rows = memory_store.list_password_resets(signup.user["id"])
        assert len(rows) == 1
        assert rows[0].expires_at <= datetime.now(timezone.utc) + timedelta(hours=1)
        assert mailer.last_token("alice@x.com", "reset")

    async def test_slow_mail_relay_does_not_delay_forgot_password(self, auth_service, mailer):
        await _signup(auth_service)
        deliver = mailer.send_password_reset

        def _slow(*args):
            time.sleep(0.5)
            return deliver(*args)

        mailer.send_password_reset = _slow

        started = time.monotonic()
        await auth_service.forgot_password("alice@x.com")
        known_elapsed = time.monotonic() - started

        assert known_elapsed < 0.25
        assert not mailer.messages_to("alice@x.com", "reset")

        await auth_service.drain_notifications()
        assert mailer.last_token("alice@x.com", "reset")

    async def test_forgot_password_hands_send_to_scheduler(self, auth_service, mailer):
        await _signup(auth_service)
        scheduled = []

        await auth_service.forgot_password(
            "alice@x.com", defer=lambda func, *args: scheduled.append((func, args))
        )

        assert len(scheduled) == 1
        assert not mailer.messages_to("alice@x.com", "reset")
        func, args = scheduled[0]
        assert await func(*args) is True
        assert mailer.last_token("alice@x.com", "reset")

    async def test_reset_password_is_single_use(self, auth_service, mailer):
        await _signup(auth_service)
        await _request_reset(auth_service)
        token = mailer.last_token("alice@x.com", "reset")

        await auth_service.reset_password(token, "NewPass1")

        with pytest.raises(BadRequestError) as excinfo:
            await auth_service.reset_password(token, "AnotherPass1")
        assert excinfo.value.message == INVALID_TOKEN

        await auth_service.login("alice@x.com", "NewPass1")
        with pytest.raises(AuthenticationError):
            await auth_service.login("alice@x.com", "AnotherPass1")

    async def test_reset_password_revokes_every_session(self, auth_service, mailer):
        signup = await _signup(auth_service)
        second = await auth_service.login("alice@x.com", PASSWORD)
        await _request_reset(auth_service)
        token = mailer.last_token("alice@x.com", "reset")

        await auth_service.reset_password(token, "NewPass1")

        for refresh_token in (signup.tokens.refresh_token, second.tokens.refresh_token):
            with pytest.raises(AuthenticationError):
                await auth_service.refresh(refresh_token)

    async def test_reset_password_clears_lockout(self, auth_service, memory_store, mailer):
        signup = await _signup(auth_service)
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await auth_service.login("alice@x.com", "wrong")
        await _request_reset(auth_service)
        token = mailer.last_token("alice@x.com", "reset")

        await auth_service.reset_password(token, "NewPass1")

        user = memory_store.get_user(signup.user["id"])
        assert user.failed_login_attempts == 0
        assert user.locked_until is None
        await auth_service.login("alice@x.com", "NewPass1")

    async def test_reset_password_sends_change_notice_and_audits(
        self, auth_service, memory_store, mailer
    ):
        signup = await _signup(auth_service)
        await _request_reset(auth_service)
        token = mailer.last_token("alice@x.com", "reset")

        await auth_service.reset_password(token, "NewPass1")

        assert mailer.messages_to("alice@x.com", "password was changed")
        assert audit_actions.PASSWORD_CHANGED in _actions(memory_store, signup.user["id"])

    async def test_expired_reset_token_is_rejected(self, auth_service, memory_store, mailer):
        await _signup(auth_service)
        await _request_reset(auth_service)
        token = mailer.last_token("alice@x.com", "reset")
        for reset_id, row in list(memory_store.password_resets.items()):
            memory_store.password_resets[reset_id] = replace(
                row, expires_at=datetime.now(timezone.utc) - timedelta(seconds=1)
            )

        with pytest.raises(BadRequestError):
            await auth_service.reset_password(token, "NewPass1")

    async def test_reset_rejects_weak_new_password(self, auth_service, mailer):
        await _signup(auth_service)
        await _request_reset(auth_service)
        token = mailer.last_token("alice@x.com", "reset")

        with pytest.raises(ValidationError):
            await auth_service.reset_password(token, "weak")

        # Token is still usable after a rejected attempt
        await auth_service.reset_password(token, "NewPass1")

    async def test_concurrent_resets_with_one_token_have_one_winner(
        self, auth_service, mailer
    ):
        await _signup(auth_service)
        await _request_reset(auth_service)
        token = mailer.last_token("alice@x.com", "reset")

        results = await asyncio.gather(
            auth_service.reset_password(token, "NewPass1"),
            auth_service.reset_password(token, "OtherPass2"),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], BadRequestError)


class TestEmailVerification:
    """Tests for verify-email and resend-verification."""

    async def test_verify_email_marks_user_verified_once(
        self, auth_service, memory_store, mailer
    ):
        signup = await _signup(auth_service)
        token = mailer.last_token("alice@x.com", "verify")

        await auth_service.verify_email(token)

        assert memory_store.get_user(signup.user["id"]).email_verified is True
        assert audit_actions.EMAIL_VERIFIED in _actions(memory_store, signup.user["id"])
        with pytest.raises(BadRequestError):
            await auth_service.verify_email(token)

    async def test_expired_verification_token_is_rejected(
        self, auth_service, memory_store, mailer
    ):
        signup = await _signup(auth_service)
        token = mailer.last_token("alice@x.com", "verify")
        for row_id, row in list(memory_store.email_verifications.items()):
            memory_store.email_verifications[row_id] = replace(
                row, expires_at=datetime.now(timezone.utc) - timedelta(seconds=1)
            )

        with pytest.raises(BadRequestError):
            await auth_service.verify_email(token)
        assert memory_store.get_user(signup.user["id"]).email_verified is False

    async def test_unknown_verification_token_is_rejected(self, auth_service):
        with pytest.raises(BadRequestError) as excinfo:
            await auth_service.verify_email("made-up-token")
        assert excinfo.value.message == INVALID_TOKEN

    async def test_resend_creates_new_row_and_keeps_old(
        self, auth_service, memory_store, mailer
    ):
        signup = await _signup(auth_service)
        first = mailer.last_token("alice@x.com", "verify")

        await auth_service.resend_verification(signup.user["id"])

        second = mailer.last_token("alice@x.com", "verify")
        assert first != second
        assert len(memory_store.list_email_verifications(signup.user["id"])) == 2
        # Earlier links stay valid until they expire
        await auth_service.verify_email(first)

    async def test_resend_rejects_verified_user(self, auth_service, mailer):
        signup = await _signup(auth_service)
        await auth_service.verify_email(mailer.last_token("alice@x.com", "verify"))

        with pytest.raises(BadRequestError) as excinfo:
            await auth_service.resend_verification(signup.user["id"])
        assert excinfo.value.message == "Email is already verified"

    async def test_resend_rejects_unknown_user(self, auth_service):
        with pytest.raises(BadRequestError):
            await auth_service.resend_verification("missing-user")


class TestWhoamiAndAuthenticate:
    """Tests for bearer-token resolution."""

    async def test_authenticate_resolves_bearer_token(self, auth_service):
        signup = await _signup(auth_service)

        ctx = await auth_service.authenticate(f"Bearer {signup.tokens.access_token}")

        assert ctx.user_id == signup.user["id"]
        assert ctx.email == "alice@x.com"
        assert (await auth_service.whoami(ctx.user_id))["id"] == ctx.user_id

    @pytest.mark.parametrize("header", [None, "", "Bearer", "Basic abc", "Bearer not.a.jwt"])
    async def test_authenticate_rejects_bad_headers(self, auth_service, header):
        with pytest.raises(AuthenticationError):
            await auth_service.authenticate(header)

    async def test_authenticate_rejects_locked_account(self, auth_service, memory_store):
        signup = await _signup(auth_service)
        memory_store.users[signup.user["id"]].locked_until = datetime.now(
            timezone.utc
        ) + timedelta(minutes=5)

        with pytest.raises(AuthenticationError):
            await auth_service.authenticate(f"Bearer {signup.tokens.access_token}")


class TestFailurePolicy:
    """Tests for notification, audit and store failure handling."""

    async def test_signup_survives_email_outage_by_default(
        self, memory_store, session_store, settings, mailer
    ):
        mailer.deliver = False
        service = AuthService(memory_store, session_store, settings, email=mailer)

        result = await _signup(service)

        assert result.tokens.access_token
        assert len(memory_store.list_email_verifications(result.user["id"])) == 1

    async def test_signup_requires_delivery_when_configured(
        self, memory_store, session_store, settings, mailer
    ):
        mailer.deliver = False
        strict = settings.model_copy(update={"email_delivery_required": True})
        service = AuthService(memory_store, session_store, strict, email=mailer)

        with pytest.raises(TransientError):
            await _signup(service)

    async def test_forgot_password_survives_email_exception(
        self, memory_store, session_store, settings, mailer
    ):
        def _explode(*_args):
            raise OSError("smtp down")

        mailer.send_password_reset = _explode
        strict = settings.model_copy(update={"email_delivery_required": True})
        service = AuthService(memory_store, session_store, strict, email=mailer)
        signup = await _signup(service)

        assert await service.forgot_password("alice@x.com") is None
        await service.drain_notifications()
        assert memory_store.list_password_resets(signup.user["id"])

    async def test_audit_failure_does_not_break_login(
        self, auth_service, memory_store
    ):
        await _signup(auth_service)

        def _broken(_event):
            raise RuntimeError("audit sink down")

        memory_store.record_audit_event = _broken

        result = await auth_service.login("alice@x.com", PASSWORD)
        assert result.tokens.access_token

    async def test_store_outage_surfaces_as_transient(self, auth_service, memory_store):
        def _down(*_args, **_kwargs):
            raise StoreUnavailableError("database unavailable", backend="postgres")

        memory_store.get_user_by_email = _down

        with pytest.raises(TransientError):
            await auth_service.login("alice@x.com", PASSWORD)
        with pytest.raises(TransientError):
            await auth_service.forgot_password("alice@x.com")
