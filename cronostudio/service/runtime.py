from __future__ import annotations

import asyncio
import math
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from cronostudio.config import Settings
from cronostudio.logging import get_logger
from cronostudio.service.auth import AuthService
from cronostudio.service.email import EmailService
from cronostudio.service.tokens import TokenService
from cronostudio.storage.memory import MemoryStore
from cronostudio.storage.postgres import PostgresStore
from cronostudio.storage.redis_cache import RedisCache

logger = get_logger(__name__)

Store = Union[MemoryStore, PostgresStore]


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
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int


class Runtime:
    """Owns the store, the Redis cache and the services built on them.

    Built once per application and handed to ``create_app``. The store and
    cache are opened on first use, exactly once, and released by ``close``.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: Optional[Store] = None,
        cache: Optional[Any] = None,
        email: Optional[EmailService] = None,
    ) -> None:
        self.settings = settings
        self._store = store
        self._cache = cache
        self._cache_resolved = cache is not None
        self._resource_lock = threading.Lock()
        self._auth: Optional[AuthService] = None

        self.tokens = TokenService(settings)
        self.email = email or EmailService(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
        )
        # Fallback fixed-window counters used when Redis is not configured.
        self._local_rate_limits: Dict[str, Tuple[int, float]] = {}
        self._local_rate_limit_lock = threading.Lock()

    @property
    def store(self) -> Store:
        if self._store is not None:
            return self._store
        with self._resource_lock:
            if self._store is None:
                self._store = self._open_store()
        return self._store

    def _open_store(self) -> Store:
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            store: Store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    @property
    def cache(self) -> Optional[Any]:
        if self._cache_resolved:
            return self._cache
        with self._resource_lock:
            if not self._cache_resolved:
                self._cache = self._open_cache()
                self._cache_resolved = True
        return self._cache

    async def open_cache(self) -> Optional[Any]:
        """Resolve the cache off the event loop; the first resolution pings Redis."""
        if self._cache_resolved:
            return self._cache
        return await asyncio.to_thread(lambda: self.cache)

    def _open_cache(self) -> Optional[RedisCache]:
        if not self.settings.redis_url:
            logger.info("redis_disabled", reason="redis_url_missing")
            return None
        cache = RedisCache(
            self.settings.redis_url,
            skip_tls_verify=self.settings.redis_skip_tls_verify,
        )
        try:
            cache.verify_connection()
        except (RedisError, OSError) as exc:
            if self.settings.is_production:
                raise RuntimeError("Redis is required in production") from exc
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(exc),
                message="Running without Redis; rate limits are in-memory only.",
            )
            return None
        logger.info("redis_connected", redis_url=_mask_url_password(self.settings.redis_url))
        return cache

    @property
    def auth(self) -> AuthService:
        if self._auth is None:
            store = self.store
            with self._resource_lock:
                if self._auth is None:
                    self._auth = AuthService(
                        store, self.tokens, self.settings, email=self.email
                    )
        return self._auth

    async def close(self) -> None:
        """Release the database pool and the Redis connection, if opened."""
        with self._resource_lock:
            store, cache = self._store, self._cache
            self._store = None
            self._cache = None
            self._cache_resolved = False
            self._auth = None
        if store is not None:
            store.close()
        if cache is not None:
            await cache.close()
        logger.info("runtime_closed")


async def check_rate_limit(
    runtime: Runtime, key: str, limit: int, window_seconds: int
) -> RateLimitDecision:
    """Count one hit against ``key`` in a fixed window.

    Uses Redis when available and an in-process counter otherwise. If the
    counter store raises, the request is allowed and a warning is logged.
    """
    if limit <= 0:
        return RateLimitDecision(True, limit, limit, 0)
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60

    cache = await runtime.open_cache()
    if cache is not None:
        try:
            window = await cache.increment_window(key, window_seconds)
        except (RedisError, ConnectionError, TimeoutError) as exc:
            logger.warning(
                "rate_limit_store_unavailable",
                key=key,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return RateLimitDecision(True, limit, limit, 0)
        return RateLimitDecision(
            allowed=window.count <= limit,
            limit=limit,
            remaining=max(0, limit - window.count),
            reset_seconds=window.reset_seconds,
        )

    now = time.monotonic()
    with runtime._local_rate_limit_lock:
        count, started = runtime._local_rate_limits.get(key, (0, now))
        if now - started >= window_seconds:
            count, started = 0, now
        count += 1
        runtime._local_rate_limits[key] = (count, started)
    reset_seconds = max(1, math.ceil(window_seconds - (now - started)))
    return RateLimitDecision(
        allowed=count <= limit,
        limit=limit,
        remaining=max(0, limit - count),
        reset_seconds=reset_seconds,
    )
