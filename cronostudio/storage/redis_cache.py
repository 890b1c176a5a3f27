from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict

import redis.asyncio as aioredis
from redis import Redis

KEY_PREFIX = "cronostudio:"


@dataclass(frozen=True)
class WindowCount:
    """Outcome of one increment against a fixed rate-limit window."""

    count: int
    reset_seconds: int


class RedisCache:
    """Thin Redis wrapper holding the rate-limit counters."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed-window counter: the first hit in a window arms the expiry.
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local window_ms = tonumber(ARGV[1])

local count = redis.call('INCR', key)
if count == 1 then
  redis.call('PEXPIRE', key, window_ms)
end
local ttl = redis.call('PTTL', key)
if ttl < 0 then
  redis.call('PEXPIRE', key, window_ms)
  ttl = window_ms
end
return {count, ttl}
"""

    def __init__(
        self,
        redis_url: str,
        *,
        skip_tls_verify: bool = False,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ):
        self.redis_url = redis_url
        self._connection_kwargs = self._build_connection_kwargs(
            redis_url, skip_tls_verify, socket_timeout
        )
        self.client = aioredis.from_url(redis_url, **self._connection_kwargs)
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    @staticmethod
    def _build_connection_kwargs(
        redis_url: str, skip_tls_verify: bool, socket_timeout: float
    ) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "decode_responses": True,
            "socket_timeout": socket_timeout,
            "socket_connect_timeout": socket_timeout,
        }
        if redis_url.startswith("rediss://") and skip_tls_verify:
            kwargs["ssl_cert_reqs"] = "none"
        return kwargs

    @staticmethod
    def rate_limit_key(policy: str, client_ip: str) -> str:
        return f"{KEY_PREFIX}ratelimit:{policy}:{client_ip}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async pool off the startup loop.
        sync_client = Redis.from_url(self.redis_url, **self._connection_kwargs)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def increment_window(self, key: str, window_seconds: int) -> WindowCount:
        """Count one hit against ``key`` and report the window's remaining time."""
        count, ttl_ms = await self._fixed_window(
            keys=[key], args=[int(window_seconds * 1000)]
        )
        reset_seconds = max(1, math.ceil(int(ttl_ms) / 1000))
        return WindowCount(count=int(count), reset_seconds=reset_seconds)

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
