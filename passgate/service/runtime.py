from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from passgate.config import get_settings, reset_settings_cache
from passgate.logging import get_logger
from passgate.service.audit import AuditService
from passgate.service.auth import AuthService
from passgate.service.email import EmailService
from passgate.service.guard import AccountGuard
from passgate.service.tokens import TokenCodec
from passgate.storage.memory import MemorySessionStore, MemoryStore
from passgate.storage.postgres import PostgresStore
from passgate.storage.redis_cache import RedisSessionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    timeout_seconds=self.settings.store_timeout_seconds,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.sessions = self._build_session_store()

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
            timeout_seconds=self.settings.email_timeout_seconds,
            verification_ttl_hours=self.settings.verification_token_ttl_hours,
            reset_ttl_minutes=self.settings.password_reset_ttl_minutes,
        )
        self.codec = TokenCodec(self.settings)
        self.guard = AccountGuard(self.store, self.settings)
        self.audit = AuditService(
            self.store, timeout_seconds=self.settings.store_timeout_seconds
        )
        self.auth = AuthService(
            self.store,
            self.sessions,
            self.settings,
            codec=self.codec,
            guard=self.guard,
            email=self.email,
            audit=self.audit,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=isinstance(self.sessions, RedisSessionStore),
            email_configured=self.email.is_configured,
            email_delivery_required=self.settings.email_delivery_required,
        )

    def _build_session_store(self) -> Union[MemorySessionStore, RedisSessionStore]:
        redis_error: Exception | None = None
        if self.settings.redis_url and not self.settings.use_memory_store:
            try:
                sessions = RedisSessionStore(
                    self.settings.redis_url,
                    socket_timeout=self.settings.store_timeout_seconds,
                )
                sessions.verify_connection()
                return sessions
            except Exception as exc:
                redis_error = exc

        if (
            not self.settings.test_mode
            and not self.settings.use_memory_store
            and not self.settings.allow_redis_fallback_dev
        ):
            raise RuntimeError(
                "Redis is required for refresh-token sessions; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for the in-process fallback."
            ) from redis_error

        if self.settings.test_mode:
            mode = "TEST_MODE"
        elif self.settings.use_memory_store:
            mode = "USE_MEMORY_STORE"
        else:
            mode = "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_not_used",
            message=(
                f"Running without Redis under {mode}; sessions live in this process "
                "and are lost on restart."
            ),
            mode=mode,
        )
        return MemorySessionStore()

    async def close(self) -> None:
        await self.auth.drain_notifications()
        await self.sessions.close()
        if isinstance(self.store, PostgresStore):
            await asyncio.to_thread(self.store.close)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent a race during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.sessions, RedisSessionStore):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.sessions.close())
            except RuntimeError:
                asyncio.run(runtime.sessions.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
