from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse, urlunparse

from vib3sales.config import get_settings, reset_settings_cache
from vib3sales.logging import get_logger
from vib3sales.service.auth import AuthService
from vib3sales.service.crm import CrmService
from vib3sales.service.csrf import InMemoryCsrfStore, RedisCsrfStore
from vib3sales.service.email import EmailService
from vib3sales.service.rate_limit import LoginRateLimiter
from vib3sales.service.sessions import SessionRegistry
from vib3sales.service.tokens import TokenService
from vib3sales.storage.memory import MemoryStore
from vib3sales.storage.postgres import PostgresStore
from vib3sales.storage.redis_cache import RateLimitResult, RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


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
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url, fs_root=self.settings.shared_fs_root)
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

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # sync client under test avoids binding the pool to a pytest loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for CSRF tokens and API rate limits; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode=fallback_mode,
            )

        csrf_ttl = timedelta(hours=self.settings.csrf_token_ttl_hours)
        self.csrf = (
            RedisCsrfStore(self.cache, ttl=csrf_ttl)
            if self.cache
            else InMemoryCsrfStore(ttl=csrf_ttl)
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
            timeout=self.settings.email_send_timeout_seconds,
        )
        self.tokens = TokenService(self.settings)
        self.sessions = SessionRegistry(self.store)
        self.rate_limiter = LoginRateLimiter(self.store, self.settings)
        self.auth = AuthService(
            self.store,
            self.settings,
            tokens=self.tokens,
            sessions=self.sessions,
            rate_limiter=self.rate_limiter,
            email_service=self.email,
        )
        self.crm = CrmService(self.store, max_tags=self.settings.crm_max_tags)

        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
        )

    def sweep(self) -> Dict[str, int]:
        """Remove stale login attempts and sessions past both expiries."""
        return {
            "login_attempts": self.rate_limiter.cleanup(),
            "sessions": self.sessions.delete_expired(),
        }

    async def close(self) -> None:
        """Release the Redis client and the database pool."""
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            await asyncio.to_thread(close_store)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the unlocked read is the fast path once the
    runtime exists, the locked re-check prevents two threads building it.
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
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache._sync_client.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
) -> RateLimitResult:
    """Take one token from the bucket for ``key``.

    Redis holds the buckets when configured; otherwise they live on the
    runtime, so a single process still throttles without Redis.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining
        )

    now = datetime.now(timezone.utc)
    refill_per_second = limit / window_seconds
    async with runtime._local_rate_limit_lock:
        level, checked_at = runtime._local_rate_limits.get(key, (float(limit), now))
        level = min(float(limit), level + (now - checked_at).total_seconds() * refill_per_second)
        allowed = level >= 1
        if allowed:
            level -= 1
        runtime._local_rate_limits[key] = (level, now)
    if not return_remaining:
        return allowed
    reset_seconds = 0 if allowed else int((1 - level) / refill_per_second) + 1
    return allowed, int(level), reset_seconds
