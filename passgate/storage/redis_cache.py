from __future__ import annotations

import contextlib
import json
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from passgate.logging import get_logger
from passgate.storage.errors import StoreUnavailableError
from passgate.storage.models import Session

logger = get_logger(__name__)


class RedisSessionStore:
    """Refresh-token sessions in Redis.

    Layout:
    - ``auth:session:{user_id}:{token_hash}`` holds the JSON session; the
      ``auth:session:{user_id}:`` prefix is what bulk revocation scans.
    - ``auth:refresh:{token_hash}`` points at the owning user id so a refresh
      token can be resolved without knowing the user.

    Both keys carry the same TTL, so an abandoned session disappears without any
    cleanup job.
    """

    SESSION_PREFIX = "auth:session:"
    POINTER_PREFIX = "auth:refresh:"

    # Atomic take: resolve the pointer, read the session and delete both keys in
    # one step so two concurrent refreshes of one token cannot both succeed.
    _TAKE_SCRIPT = """
local user_id = redis.call('GET', KEYS[1])
if not user_id then
  return nil
end
redis.call('DEL', KEYS[1])
local session_key = ARGV[1] .. user_id .. ':' .. ARGV[2]
local data = redis.call('GET', session_key)
if data then
  redis.call('DEL', session_key)
end
return data
"""

    # Owner-scoped delete: the pointer goes only when this user's session existed.
    _DELETE_SCRIPT = """
local removed = redis.call('DEL', KEYS[1])
if removed == 1 then
  redis.call('DEL', KEYS[2])
end
return removed
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _session_key(self, user_id: str, token_hash: str) -> str:
        return f"{self.SESSION_PREFIX}{user_id}:{token_hash}"

    def _pointer_key(self, token_hash: str) -> str:
        return f"{self.POINTER_PREFIX}{token_hash}"

    @contextlib.contextmanager
    def _translate_errors(self, operation: str):
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.error("session_store_unavailable", operation=operation, error=str(exc))
            raise StoreUnavailableError(
                f"session store unavailable during {operation}", backend="redis"
            ) from exc

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving traffic."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        with self._translate_errors("ping"):
            return bool(await self.client.ping())

    async def put(self, session: Session, ttl_seconds: int) -> None:
        ttl = max(1, int(ttl_seconds))
        payload = json.dumps(session.to_dict(), separators=(",", ":"))
        with self._translate_errors("put"):
            pipe = self.client.pipeline(transaction=True)
            pipe.set(self._session_key(session.user_id, session.token_hash), payload, ex=ttl)
            pipe.set(self._pointer_key(session.token_hash), session.user_id, ex=ttl)
            await pipe.execute()

    async def get(self, token_hash: str) -> Optional[Session]:
        with self._translate_errors("get"):
            user_id = await self.client.get(self._pointer_key(token_hash))
            if not user_id:
                return None
            raw = await self.client.get(self._session_key(user_id, token_hash))
        return self._load(raw)

    async def take(self, token_hash: str) -> Optional[Session]:
        """Atomically fetch and delete the session for ``token_hash``."""
        with self._translate_errors("take"):
            raw = await self.client.eval(
                self._TAKE_SCRIPT,
                1,
                self._pointer_key(token_hash),
                self.SESSION_PREFIX,
                token_hash,
            )
        return self._load(raw)

    async def delete(self, user_id: str, token_hash: str) -> bool:
        with self._translate_errors("delete"):
            removed = await self.client.eval(
                self._DELETE_SCRIPT,
                2,
                self._session_key(user_id, token_hash),
                self._pointer_key(token_hash),
            )
        return bool(removed)

    async def delete_user_sessions(self, user_id: str) -> int:
        """Delete every session under the user's key prefix."""
        prefix = f"{self.SESSION_PREFIX}{user_id}:"
        revoked = 0
        with self._translate_errors("delete_user_sessions"):
            keys = [key async for key in self.client.scan_iter(match=f"{prefix}*", count=200)]
            if not keys:
                return 0
            pipe = self.client.pipeline(transaction=False)
            for key in keys:
                pipe.delete(key)
                pipe.delete(self._pointer_key(key[len(prefix):]))
            results = await pipe.execute()
            revoked = sum(1 for res in results[::2] if res)
        logger.info("user_sessions_revoked", user_id=user_id, count=revoked)
        return revoked

    def _load(self, raw: Optional[str]) -> Optional[Session]:
        if raw is None:
            return None
        try:
            return Session.from_dict(json.loads(raw))
        except (json.JSONDecodeError, TypeError, KeyError, ValueError):
            # Corrupted entry: treat as absent, it has already been consumed or will expire
            logger.warning("session_payload_corrupt")
            return None

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
