from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from eventauth.config import get_settings, reset_settings_cache
from eventauth.logging import get_logger
from eventauth.service.audit import SecurityAuditLog
from eventauth.service.auth import AuthService
from eventauth.service.authorization import AuthorizationEngine
from eventauth.service.csrf import CsrfService
from eventauth.service.passwords import PasswordService
from eventauth.service.request_auth import RequestAuthenticator
from eventauth.service.sessions import SessionManager
from eventauth.service.tokens import TokenService
from eventauth.storage.memory import MemoryStore
from eventauth.storage.postgres import PostgresStore
from eventauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

LOCAL_RATE_LIMIT_PRUNE_THRESHOLD = 1024


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password of a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
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
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
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
                # sync client in test mode avoids binding to per-test event loops
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
                    "Redis is required for rate limits and the token denylist; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits are "
                    "per-process and revocations are read from the store only."
                ),
                mode=fallback_mode,
            )

        self.passwords = PasswordService(self.settings)
        self.tokens = TokenService(self.settings)
        self.audit = SecurityAuditLog(self.store)
        self.authorization = AuthorizationEngine(self.store)
        self.sessions = SessionManager(self.store, self.tokens, self.settings, cache=self.cache)
        self.auth = AuthService(
            self.store,
            self.passwords,
            self.tokens,
            self.sessions,
            self.audit,
            self.settings,
        )
        self.request_auth = RequestAuthenticator(
            self.store, self.tokens, self.authorization, self.audit, cache=self.cache
        )
        self.csrf = CsrfService(self.store, self.audit, self.settings)

        # key -> (tokens, last refill, time the bucket is full again)
        self._local_rate_limits: Dict[str, Tuple[float, datetime, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            access_ttl_seconds=self.tokens.access_ttl,
            refresh_ttl_seconds=self.tokens.refresh_ttl,
        )

    def run_maintenance(self) -> Dict[str, int]:
        """Delete expired-and-inactive sessions, expired CSRF tokens and stale blacklist rows."""
        result = self.auth.sweep_expired()
        result["csrf_tokens"] = self.csrf.cleanup_expired()
        logger.info("maintenance_sweep_completed", **result)
        return result

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if hasattr(self.store, "close"):
            await asyncio.to_thread(self.store.close)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists.
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
        if runtime is not None and runtime.cache is not None:
            try:
                if isinstance(runtime.cache, SyncRedisCache):
                    runtime.cache.client.close()
                else:
                    try:
                        loop = asyncio.get_running_loop()
                        loop.create_task(runtime.cache.close())
                    except RuntimeError:
                        asyncio.run(runtime.cache.close())
            except Exception as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


def _prune_local_rate_limits(
    buckets: Dict[str, Tuple[float, datetime, datetime]], now: datetime
) -> int:
    """Drop buckets that have refilled; they behave exactly like a missing key."""
    stale = [key for key, (_, _, refilled_at) in buckets.items() if refilled_at <= now]
    for key in stale:
        del buckets[key]
    return len(stale)


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token bucket rate limit; Redis when configured, in-process otherwise.

    Args:
        runtime: Runtime instance with cache
        key: Rate limit key
        limit: Bucket capacity (requests per window)
        window_seconds: Time to refill an empty bucket
        return_remaining: If True, return (allowed, remaining, reset_seconds)

    Returns:
        bool if return_remaining is False, else (bool, int, int) tuple
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        if len(runtime._local_rate_limits) >= LOCAL_RATE_LIMIT_PRUNE_THRESHOLD:
            _prune_local_rate_limits(runtime._local_rate_limits, now)
        tokens, last_ts, _ = runtime._local_rate_limits.get(key, (float(limit), now, now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        refilled_at = now + timedelta(seconds=(float(limit) - tokens) / refill_rate)
        runtime._local_rate_limits[key] = (tokens, now, refilled_at)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
