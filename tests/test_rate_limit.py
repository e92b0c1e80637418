"""Tests for the fixed-window rate limiter."""

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from authcore.config import RateLimitedEndpoint, RateLimitPolicy
from authcore.service.errors import RateLimitedError
from authcore.storage.redis_cache import RedisCache


class TestFixedWindow:
    """Attempts are counted per (identifier, endpoint) within one window."""

    async def test_sixth_attempt_of_five_is_limited(self, rate_limiter):
        results = [
            await rate_limiter.check("1.2.3.4", RateLimitedEndpoint.LOGIN, 5, 15)
            for _ in range(6)
        ]
        assert [r.limited for r in results] == [False] * 5 + [True]
        assert [r.remaining for r in results] == [4, 3, 2, 1, 0, 0]

    async def test_window_expiry_starts_fresh_window(self, rate_limiter, clock):
        for _ in range(6):
            await rate_limiter.check("1.2.3.4", RateLimitedEndpoint.LOGIN, 5, 15)
        clock.advance(minutes=15, seconds=1)
        result = await rate_limiter.check("1.2.3.4", RateLimitedEndpoint.LOGIN, 5, 15)
        assert result.limited is False
        assert result.remaining == 4

    async def test_window_is_anchored_at_first_attempt(self, rate_limiter, clock):
        first = await rate_limiter.check("id-1", "email_change", 3, 60)
        clock.advance(minutes=59)
        later = await rate_limiter.check("id-1", "email_change", 3, 60)
        assert later.reset_at == first.reset_at

    async def test_identifiers_and_endpoints_are_independent(self, rate_limiter):
        for _ in range(5):
            await rate_limiter.check("a", RateLimitedEndpoint.LOGIN, 5, 15)
        other_ip = await rate_limiter.check("b", RateLimitedEndpoint.LOGIN, 5, 15)
        other_endpoint = await rate_limiter.check("a", RateLimitedEndpoint.SIGNUP, 5, 15)
        assert other_ip.limited is False
        assert other_endpoint.limited is False

    async def test_limited_result_reports_retry_after(self, rate_limiter, clock):
        for _ in range(2):
            await rate_limiter.check("a", "x", 1, 10)
        clock.advance(minutes=4)
        result = await rate_limiter.check("a", "x", 1, 10)
        assert result.limited is True
        assert result.retry_after_seconds == 6 * 60

    async def test_trip_is_audited(self, rate_limiter, audit):
        for _ in range(2):
            await rate_limiter.check("a", RateLimitedEndpoint.LOGIN, 1, 15)
        assert "rate_limit_tripped" in audit.names()


class TestEnforce:
    async def test_enforce_raises_with_headers_data(self, rate_limiter):
        policy = RateLimitPolicy(max_attempts=2, window_minutes=5)
        await rate_limiter.enforce("a", "x", policy)
        await rate_limiter.enforce("a", "x", policy)
        with pytest.raises(RateLimitedError) as exc_info:
            await rate_limiter.enforce("a", "x", policy)
        exc = exc_info.value
        assert exc.status_code == 429
        assert exc.limit == 2
        assert exc.remaining == 0
        assert exc.retry_after_seconds > 0
        assert exc.detail["retryAfter"] == exc.retry_after_seconds


class TestConcurrentCallers:
    def test_parallel_checks_admit_exactly_the_limit(self, rate_limiter):
        barrier = threading.Barrier(20)

        def attempt():
            barrier.wait()
            return asyncio.run(
                rate_limiter.check("1.2.3.4", RateLimitedEndpoint.LOGIN, 5, 15)
            )

        with ThreadPoolExecutor(max_workers=20) as pool:
            results = list(pool.map(lambda _: attempt(), range(20)))

        admitted = [r for r in results if not r.limited]
        assert len(admitted) == 5
        assert sorted(r.remaining for r in admitted) == [0, 1, 2, 3, 4]


class FakeWindowCache:
    def __init__(self):
        self.calls = []

    async def hit_window(self, key, window_seconds):
        self.calls.append((key, window_seconds))
        return len(self.calls), 30_000


class TestCacheBackend:
    async def test_counts_come_from_cache(self, audit, clock):
        from authcore.service.rate_limit import RateLimiter

        cache = FakeWindowCache()
        limiter = RateLimiter(cache, audit=audit, clock=clock)
        first = await limiter.check("1.2.3.4", RateLimitedEndpoint.LOGIN, 1, 15)
        second = await limiter.check("1.2.3.4", RateLimitedEndpoint.LOGIN, 1, 15)
        assert first.limited is False
        assert second.limited is True
        assert second.retry_after_seconds == 30
        assert cache.calls[0] == ("login:1.2.3.4", 900)

    def test_rate_keys_are_hashed(self):
        key = RedisCache._normalize_rate_key("login:1.2.3.4")
        assert key.startswith("rate:")
        assert "1.2.3.4" not in key
        assert key != RedisCache._normalize_rate_key("login:1.2.3.5")
