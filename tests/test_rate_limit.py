"""Tests for per-school rate limiting."""

from __future__ import annotations

import redis

from schoolspace.middleware.rate_limit import RateLimitMiddleware


class BucketRedis:
    def __init__(self):
        self.data = {}

    def ping(self):
        return True

    def get(self, key):
        return self.data.get(key)

    def setex(self, key, ttl, value):
        self.data[key] = str(value)


class DownRedis:
    def ping(self):
        raise redis.ConnectionError("Connection refused")


async def _app(scope, receive, send):
    pass


class TestRateLimitMiddleware:
    """Tests for the token bucket."""

    def test_bucket_is_per_school(self) -> None:
        limiter = RateLimitMiddleware(_app, redis_client=BucketRedis(), rate_limit_per_minute=60, burst=2)

        assert limiter._check_rate_limit(1) == (True, 0)
        assert limiter._check_rate_limit(1) == (True, 0)
        allowed, retry_after = limiter._check_rate_limit(1)
        assert allowed is False
        assert retry_after >= 1

        # Another school has its own bucket
        assert limiter._check_rate_limit(2) == (True, 0)

    def test_redis_down_disables_limiting(self) -> None:
        limiter = RateLimitMiddleware(_app, redis_client=DownRedis())

        assert limiter.redis_available is False
