from __future__ import annotations

import hashlib
from contextlib import contextmanager
from typing import Iterator, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError, ResponseError

from peaceverse.logging import get_logger, sanitize_error_message
from peaceverse.storage.errors import StorageUnavailable

logger = get_logger(__name__)

_REFRESH_KEY = "auth:refresh:{jti}"
_USER_REFRESH_KEY = "auth:user_refresh:{user_id}"

# Atomic get-and-delete for servers older than 6.2 (no GETDEL)
_POP_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
  redis.call('DEL', KEYS[1])
end
return value
"""


@contextmanager
def _unavailable_on_error(operation: str) -> Iterator[None]:
    try:
        yield
    except RedisError as exc:
        logger.error(
            "redis_operation_failed",
            operation=operation,
            error=sanitize_error_message(str(exc)),
        )
        raise StorageUnavailable(
            "revocation store unavailable", backend="redis"
        ) from exc


def _rate_key(key: str) -> str:
    """Hash rate-limit subjects so arbitrary emails cannot collide on delimiters."""
    digest = hashlib.sha256(key.encode()).hexdigest()
    return f"rate:{digest}"


class RedisCache:
    """Refresh-session whitelist and auth rate limits backed by Redis.

    A refresh token is valid only while ``auth:refresh:<jti>`` exists and maps
    to its subject. Each user also has a set of live jtis so that every
    session can be revoked at once on password reset or deactivation.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving traffic."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            with _unavailable_on_error("ping"):
                sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        with _unavailable_on_error("ping"):
            return bool(await self.client.ping())

    async def store_refresh_session(
        self, jti: str, user_id: str, ttl_seconds: int
    ) -> None:
        ttl = max(1, int(ttl_seconds))
        user_key = _USER_REFRESH_KEY.format(user_id=user_id)
        with _unavailable_on_error("store_refresh_session"):
            pipe = self.client.pipeline()
            pipe.set(_REFRESH_KEY.format(jti=jti), user_id, ex=ttl)
            pipe.sadd(user_key, jti)
            pipe.expire(user_key, ttl)
            await pipe.execute()

    async def get_refresh_session(self, jti: str) -> Optional[str]:
        with _unavailable_on_error("get_refresh_session"):
            return await self.client.get(_REFRESH_KEY.format(jti=jti))

    async def revoke_refresh_session(self, jti: str) -> bool:
        """Delete one session and drop its jti from the owner's set."""
        return await self.pop_refresh_session(jti) is not None

    async def pop_refresh_session(self, jti: str) -> Optional[str]:
        """Atomically read and delete a refresh session.

        Exactly one of several concurrent callers receives the user id; the
        rest get None. Uses GETDEL (Redis 6.2+) with a Lua fallback.
        """
        key = _REFRESH_KEY.format(jti=jti)
        with _unavailable_on_error("pop_refresh_session"):
            try:
                user_id = await self.client.getdel(key)
            except ResponseError:
                user_id = await self.client.eval(_POP_SCRIPT, 1, key)
            if user_id:
                await self.client.srem(_USER_REFRESH_KEY.format(user_id=user_id), jti)
            return user_id

    async def revoke_user_refresh_sessions(
        self, user_id: str, except_jti: Optional[str] = None
    ) -> int:
        """Revoke every live refresh session of a user.

        Returns:
            Number of sessions revoked
        """
        user_key = _USER_REFRESH_KEY.format(user_id=user_id)
        with _unavailable_on_error("revoke_user_refresh_sessions"):
            jtis = await self.client.smembers(user_key)
            if not jtis:
                return 0
            pipe = self.client.pipeline()
            for jti in jtis:
                if except_jti and jti == except_jti:
                    continue
                pipe.delete(_REFRESH_KEY.format(jti=jti))
                pipe.srem(user_key, jti)
            results = await pipe.execute()
        # only keys still present count; expired jtis linger in the set
        return sum(1 for deleted in results[::2] if deleted)

    async def hit_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        """Count one hit in a fixed window; True while the caller is under the limit."""
        safe_key = _rate_key(key)
        with _unavailable_on_error("hit_rate_limit"):
            pipe = self.client.pipeline()
            pipe.set(safe_key, 0, ex=window_seconds, nx=True)
            pipe.incr(safe_key)
            _, count = await pipe.execute()
        return int(count) <= limit

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis client exposing the RedisCache coroutine API.

    Used in test mode so a pytest run does not bind the async client to a
    short-lived event loop.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._pop_script = self._sync_client.register_script(_POP_SCRIPT)

    def verify_connection(self) -> None:
        with _unavailable_on_error("ping"):
            self._sync_client.ping()

    async def ping(self) -> bool:
        with _unavailable_on_error("ping"):
            return bool(self._sync_client.ping())

    async def store_refresh_session(
        self, jti: str, user_id: str, ttl_seconds: int
    ) -> None:
        ttl = max(1, int(ttl_seconds))
        user_key = _USER_REFRESH_KEY.format(user_id=user_id)
        with _unavailable_on_error("store_refresh_session"):
            pipe = self._sync_client.pipeline()
            pipe.set(_REFRESH_KEY.format(jti=jti), user_id, ex=ttl)
            pipe.sadd(user_key, jti)
            pipe.expire(user_key, ttl)
            pipe.execute()

    async def get_refresh_session(self, jti: str) -> Optional[str]:
        with _unavailable_on_error("get_refresh_session"):
            return self._sync_client.get(_REFRESH_KEY.format(jti=jti))

    async def revoke_refresh_session(self, jti: str) -> bool:
        return await self.pop_refresh_session(jti) is not None

    async def pop_refresh_session(self, jti: str) -> Optional[str]:
        key = _REFRESH_KEY.format(jti=jti)
        with _unavailable_on_error("pop_refresh_session"):
            try:
                user_id = self._sync_client.getdel(key)
            except ResponseError:
                user_id = self._pop_script(keys=[key])
            if user_id:
                self._sync_client.srem(_USER_REFRESH_KEY.format(user_id=user_id), jti)
            return user_id

    async def revoke_user_refresh_sessions(
        self, user_id: str, except_jti: Optional[str] = None
    ) -> int:
        user_key = _USER_REFRESH_KEY.format(user_id=user_id)
        with _unavailable_on_error("revoke_user_refresh_sessions"):
            jtis = self._sync_client.smembers(user_key)
            if not jtis:
                return 0
            pipe = self._sync_client.pipeline()
            for jti in jtis:
                if except_jti and jti == except_jti:
                    continue
                pipe.delete(_REFRESH_KEY.format(jti=jti))
                pipe.srem(user_key, jti)
            results = pipe.execute()
        return sum(1 for deleted in results[::2] if deleted)

    async def hit_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        safe_key = _rate_key(key)
        with _unavailable_on_error("hit_rate_limit"):
            pipe = self._sync_client.pipeline()
            pipe.set(safe_key, 0, ex=window_seconds, nx=True)
            pipe.incr(safe_key)
            _, count = pipe.execute()
        return int(count) <= limit

    async def close(self) -> None:
        self._sync_client.close()
