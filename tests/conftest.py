import asyncio
import inspect
import os
import re
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="passgate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("COOKIE_SECURE", "false")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "8192")
os.environ.setdefault("PASSWORD_HASH_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from passgate.config import Settings  # noqa: E402
from passgate.service.auth import AuthService  # noqa: E402
from passgate.service.email import EmailService  # noqa: E402
from passgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from passgate.storage.memory import MemorySessionStore, MemoryStore  # noqa: E402

TEST_JWT_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"

_TOKEN_IN_LINK = re.compile(r"[?&]token=([A-Za-z0-9_\-]+)")


class RecordingEmailService(EmailService):
    """Captures outgoing mail instead of talking to SMTP."""

    def __init__(self, *, deliver: bool = True, **kwargs) -> None:
        super().__init__(**kwargs)
        self.deliver = deliver
        self.sent = []

    def send(self, to_email: str, subject: str, body: str) -> bool:
        self.sent.append({"to": to_email, "subject": subject, "body": body})
        return self.deliver

    def messages_to(self, to_email: str, subject_contains: str = ""):
        return [
            msg
            for msg in self.sent
            if msg["to"] == to_email and subject_contains.lower() in msg["subject"].lower()
        ]

    def last_token(self, to_email: str, subject_contains: str) -> str:
        messages = self.messages_to(to_email, subject_contains)
        assert messages, f"no '{subject_contains}' mail sent to {to_email}"
        match = _TOKEN_IN_LINK.search(messages[-1]["body"])
        assert match, "mail body carries no token link"
        return match.group(1)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    """Explicit settings, independent of the process environment."""
    return Settings(
        jwt_secret=TEST_JWT_SECRET,
        test_mode=True,
        use_memory_store=True,
        redis_url="",
        password_hash_time_cost=1,
        password_hash_memory_cost=8192,
        password_hash_parallelism=1,
        email_timeout_seconds=2.0,
        store_timeout_seconds=2.0,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def session_store():
    return MemorySessionStore()


@pytest.fixture
def mailer():
    return RecordingEmailService()


@pytest.fixture
def auth_service(memory_store, session_store, settings, mailer):
    return AuthService(memory_store, session_store, settings, email=mailer)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
