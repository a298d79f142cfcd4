from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlsplit, urlunsplit

from peaceverse.config import get_settings, reset_settings_cache
from peaceverse.logging import get_logger
from peaceverse.service.auth import AuthService
from peaceverse.service.email import EmailService
from peaceverse.service.sms import SmsService
from peaceverse.service.tokens import TokenService
from peaceverse.storage.errors import StorageUnavailable
from peaceverse.storage.memory import MemoryRevocationStore, MemoryStore
from peaceverse.storage.postgres import PostgresStore
from peaceverse.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

RevocationBackend = Union[RedisCache, SyncRedisCache, MemoryRevocationStore]


def _redact_url(url: Optional[str]) -> Optional[str]:
    """Hide the password in a connection URL, e.g. redis://:***@cache:6379/0."""
    if not url:
        return url
    try:
        parsed = urlsplit(url)
        password = parsed.password
    except ValueError:
        return "<unparseable url>"
    if not password:
        return url
    userinfo, _, hostport = parsed.netloc.rpartition("@")
    user = userinfo.split(":", 1)[0]
    return urlunsplit(parsed._replace(netloc=f"{user}:***@{hostport}"))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            app_env=self.settings.app_env.value,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore(fs_root=self.settings.shared_fs_root)
            else:
                self.store = PostgresStore(self.settings.database_url)
        except (StorageUnavailable, OSError) as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.revocation: RevocationBackend = self._build_revocation_store()
        self.tokens = TokenService(self.settings)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            otp_ttl_minutes=self.settings.otp_ttl_minutes,
        )
        self.sms = SmsService(
            api_url=self.settings.sms_api_url,
            api_key=self.settings.sms_api_key,
            partner_id=self.settings.sms_partner_id,
            shortcode=self.settings.sms_shortcode,
            country=self.settings.sms_country,
            timeout_seconds=self.settings.sms_timeout_seconds,
            otp_ttl_minutes=self.settings.otp_ttl_minutes,
        )
        self.auth = AuthService(
            self.store,
            self.revocation,
            self.tokens,
            self.settings,
            email=self.email,
            sms=self.sms,
        )

        logger.info(
            "runtime_initialized",
            revocation_backend=type(self.revocation).__name__,
            email_configured=self.email.is_configured,
            sms_configured=self.sms.is_configured,
            single_session=self.settings.single_session,
        )

    def _build_revocation_store(self) -> RevocationBackend:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to per-test event loops
                if self.settings.test_mode:
                    cache: RevocationBackend = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except StorageUnavailable as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for refresh sessions and rate limits; start Redis "
                "or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        logger.warning(
            "revocation_store_in_process",
            redis_url=_redact_url(self.settings.redis_url),
            reason=type(redis_error).__name__ if redis_error else "redis_url_missing",
            test_mode=self.settings.test_mode,
        )
        return MemoryRevocationStore()

    async def close(self) -> None:
        await self.sms.close()
        await self.revocation.close()
        self.store.close()


_runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global _runtime
    current = _runtime
    if current is None:
        with _runtime_lock:
            if _runtime is None:
                _runtime = Runtime()
            current = _runtime
    return current


def reset_runtime_for_tests() -> Runtime:
    """Close the current runtime and build a fresh one from the environment.

    Only allowed under TEST_MODE, and never from inside a running event loop.
    """
    global _runtime
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        pass
    else:
        raise RuntimeError("reset_runtime_for_tests must not run inside an event loop")

    with _runtime_lock:
        if _runtime is not None:
            asyncio.run(_runtime.close())
            _runtime = None
        reset_settings_cache()
        if not get_settings().test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        _runtime = Runtime()
        return _runtime
