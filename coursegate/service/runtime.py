from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from coursegate.config import get_settings, reset_settings_cache
from coursegate.logging import get_logger
from coursegate.service.auth import AuthService
from coursegate.service.claims import IdentityClaimWorkflow
from coursegate.service.email import EmailService
from coursegate.service.enrollment import EnrollmentFanout, GrantService, LearnerEnrollments
from coursegate.service.entitlements import EntitlementResolver
from coursegate.service.organizations import OrganizationService
from coursegate.service.payments import PaymentService
from coursegate.service.sessions import SessionManager
from coursegate.service.tokens import TokenCodec
from coursegate.storage.memory import MemoryStore
from coursegate.storage.postgres import PostgresStore
from coursegate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Process-wide wiring of store, cache and services for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits and one-time email tokens; start Redis "
                    "or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for in-process fallback."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
            )

        self.codec = TokenCodec(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            access_ttl_minutes=self.settings.access_token_ttl_minutes,
            leeway_seconds=self.settings.jwt_leeway_seconds,
        )
        self.sessions = SessionManager(
            self.store, self.codec, refresh_ttl_days=self.settings.refresh_token_ttl_days
        )
        self.auth = AuthService(self.store, self.sessions, self.cache, self.settings)
        self.organizations = OrganizationService(self.store, self.auth)
        self.entitlements = EntitlementResolver(self.store)
        self.fanout = EnrollmentFanout(self.store)
        self.grants = GrantService(self.store, self.fanout)
        self.claims = IdentityClaimWorkflow(self.store, self.fanout, self.settings)
        self.payments = PaymentService(self.store, self.fanout)
        self.learners = LearnerEnrollments(self.store)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()
        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            roster_auto_link=self.settings.roster_auto_link,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the Runtime singleton, building it once under a lock."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_runtime(current: Runtime) -> None:
    if current.cache is not None:
        try:
            asyncio.get_running_loop().create_task(current.cache.close())
        except RuntimeError:
            asyncio.run(current.cache.close())
    if isinstance(current.store, PostgresStore):
        current.store.close()


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh settings read; TEST_MODE only."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            try:
                _close_runtime(runtime)
            except Exception as exc:
                logger.warning("runtime_close_failed", error=str(exc))
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
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit in Redis, or in process when Redis is absent."""
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return allowed, remaining, reset_seconds
    return allowed


async def prune_local_rate_limits(
    runtime: Runtime, *, max_idle_seconds: int = 3600, now: Optional[datetime] = None
) -> int:
    """Forget in-process buckets idle longer than any window; they have refilled to full."""
    current = now or datetime.now(timezone.utc)
    async with runtime._local_rate_limit_lock:
        stale = [
            key
            for key, (_, last_ts) in runtime._local_rate_limits.items()
            if (current - last_ts).total_seconds() >= max_idle_seconds
        ]
        for key in stale:
            del runtime._local_rate_limits[key]
    return len(stale)
