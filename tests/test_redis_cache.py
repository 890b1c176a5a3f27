"""RedisCache key layout and the fixed-window counter wrapper."""

from unittest.mock import AsyncMock

from cronostudio.storage.redis_cache import KEY_PREFIX, RedisCache, WindowCount


class TestKeys:
    def test_rate_limit_key(self):
        assert RedisCache.rate_limit_key("login", "1.2.3.4") == "cronostudio:ratelimit:login:1.2.3.4"
        assert RedisCache.rate_limit_key("api", "unknown").startswith(KEY_PREFIX)


class TestConnectionKwargs:
    def test_plain_url(self):
        kwargs = RedisCache._build_connection_kwargs("redis://localhost:6379/0", True, 2.0)
        assert kwargs["socket_timeout"] == 2.0
        assert "ssl_cert_reqs" not in kwargs

    def test_tls_skip_verify(self):
        kwargs = RedisCache._build_connection_kwargs("rediss://cache:6380/0", True, 5.0)
        assert kwargs["ssl_cert_reqs"] == "none"

    def test_tls_verified_by_default(self):
        kwargs = RedisCache._build_connection_kwargs("rediss://cache:6380/0", False, 5.0)
        assert "ssl_cert_reqs" not in kwargs


class TestIncrementWindow:
    async def test_converts_ttl_to_seconds(self):
        cache = RedisCache("redis://localhost:6379/0")
        cache._fixed_window = AsyncMock(return_value=[3, 1500])

        window = await cache.increment_window("k", 60)

        cache._fixed_window.assert_awaited_once_with(keys=["k"], args=[60000])
        assert window == WindowCount(count=3, reset_seconds=2)

    async def test_reset_is_at_least_one_second(self):
        cache = RedisCache("redis://localhost:6379/0")
        cache._fixed_window = AsyncMock(return_value=[1, 0])
        window = await cache.increment_window("k", 60)
        assert window.reset_seconds == 1
