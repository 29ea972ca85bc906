from __future__ import annotations

import asyncio
import threading
import time
from datetime import timedelta
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from gadgetgalaxy.config import get_settings, reset_settings_cache
from gadgetgalaxy.logging import get_logger
from gadgetgalaxy.service.auth import AuthService
from gadgetgalaxy.service.email import EmailService
from gadgetgalaxy.service.google import GoogleIdentityBridge
from gadgetgalaxy.service.images import ImageHost
from gadgetgalaxy.service.lockout import LockoutPolicy
from gadgetgalaxy.service.passwords import SecretHasher
from gadgetgalaxy.service.session import SessionMiddleware
from gadgetgalaxy.service.tokens import TokenService
from gadgetgalaxy.service.verification import VerificationService
from gadgetgalaxy.storage.memory import MemoryStore
from gadgetgalaxy.storage.postgres import PostgresStore
from gadgetgalaxy.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
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
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds the process-wide service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        settings = self.settings
        logger.info(
            "runtime_init_started",
            environment=settings.environment.value,
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )

        self.hasher = SecretHasher(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
        )
        store_type = "memory" if settings.use_memory_store else "postgres"
        try:
            if settings.use_memory_store:
                # Tests start from an empty store every time
                fs_root = None if settings.test_mode else settings.shared_fs_root
                self.store = MemoryStore(fs_root, hasher=self.hasher)
            else:
                self.store = PostgresStore(settings.database_url, hasher=self.hasher)
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
        if settings.redis_url:
            try:
                cache = (
                    SyncRedisCache(settings.redis_url)
                    if settings.test_mode
                    else RedisCache(settings.redis_url)
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not settings.test_mode and not settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limiting; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for the in-memory fallback."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode="TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
            )

        self.tokens = TokenService.from_settings(settings)
        self.verification = VerificationService(
            self.store,
            email_ttl=timedelta(hours=settings.email_verification_ttl_hours),
            reset_ttl=timedelta(minutes=settings.password_reset_ttl_minutes),
        )
        self.lockout = LockoutPolicy(
            self.store,
            max_attempts=settings.max_login_attempts,
            lock_duration=timedelta(minutes=settings.lockout_minutes),
        )
        self.google = GoogleIdentityBridge(
            settings.google_client_id,
            self.store,
            clock_skew_seconds=settings.google_clock_skew_seconds,
            default_image_url=settings.default_user_image_url,
        )
        self.email = EmailService(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            frontend_url=settings.frontend_url,
            verification_ttl_hours=settings.email_verification_ttl_hours,
            reset_ttl_minutes=settings.password_reset_ttl_minutes,
        )
        self.images = ImageHost(
            cloud_name=settings.image_host_cloud_name,
            api_key=settings.image_host_api_key,
            api_secret=settings.image_host_api_secret,
            base_url=settings.image_host_base_url,
            folder=settings.image_folder_users,
        )
        self.sessions = SessionMiddleware(self.store, self.tokens)
        self.auth = AuthService(
            self.store,
            self.hasher,
            self.tokens,
            self.verification,
            self.lockout,
            self.google,
            self.email,
            self.images,
            default_image_url=settings.default_user_image_url,
            max_upload_bytes=settings.max_upload_bytes,
        )
        # key -> (tokens, last update, monotonic time at which the bucket is full again)
        self._local_rate_limits: Dict[str, Tuple[float, float, float]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            image_host_configured=self.images.is_configured,
            google_configured=bool(settings.google_client_id),
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the Runtime singleton, creating it on first use."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a freshly read environment (TEST_MODE only)."""
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


LOCAL_BUCKET_SWEEP_SIZE = 1024


def _evict_refilled_buckets(buckets: Dict[str, Tuple[float, float, float]], now: float) -> None:
    """Drop buckets that have refilled; a missing key reads as a full bucket."""
    for key in [key for key, (_, _, full_at) in buckets.items() if full_at <= now]:
        del buckets[key]


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit; Redis when available, in-process otherwise.

    Returns ``allowed`` or, with ``return_remaining``, the tuple
    ``(allowed, remaining, reset_seconds)``.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = time.monotonic()
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        buckets = runtime._local_rate_limits
        if len(buckets) >= LOCAL_BUCKET_SWEEP_SIZE:
            _evict_refilled_buckets(buckets, now)
        tokens, last_ts, _ = buckets.get(key, (float(limit), now, now))
        elapsed = max(0.0, now - last_ts)
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
            full_at = now + (float(limit) - tokens) / refill_rate
            buckets[key] = (tokens, now, full_at)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
