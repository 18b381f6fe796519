"""
Rate Limiting Middleware

Per-school rate limiting using Redis.

ARCHITECTURE: Token bucket algorithm with Redis. Each school has its own
bucket, keyed on the resolved school id, so this middleware must run
after TenantMiddleware has set request.state.tenant_context.

PRODUCTION NOTES:
- Redis is single point of failure (use Redis Cluster/Sentinel)
- Requests without a school context (platform admins, anonymous) are
  not limited here
"""
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
import redis
import time

from schoolspace.config import get_settings
from schoolspace.core.exceptions import RateLimitExceeded
from schoolspace.utils.logging import get_logger

logger = get_logger(__name__)
settings = get_settings()


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Token bucket rate limiter per school."""

    def __init__(self, app, redis_client=None, rate_limit_per_minute: int = None, burst: int = None):
        super().__init__(app)
        self.rate_limit = rate_limit_per_minute or settings.RATE_LIMIT_PER_MINUTE
        self.burst = burst or settings.RATE_LIMIT_BURST

        try:
            self.redis_client = redis_client or redis.from_url(
                settings.REDIS_URL,
                decode_responses=True,
                socket_connect_timeout=5
            )
            self.redis_client.ping()
            self.redis_available = True
            logger.info("Redis connection established for rate limiting")
        except (redis.ConnectionError, redis.TimeoutError) as e:
            logger.error(f"Redis connection failed: {e}")
            # Availability over strict limiting
            self.redis_available = False

        self.excluded_paths = [
            "/docs",
            "/redoc",
            "/openapi.json",
            "/health",
        ]

    async def dispatch(self, request: Request, call_next):
        """Apply rate limiting per school."""
        if any(request.url.path.startswith(path) for path in self.excluded_paths):
            return await call_next(request)

        if not self.redis_available:
            return await call_next(request)

        context = getattr(request.state, "tenant_context", None)
        if context is None:
            return await call_next(request)

        allowed, retry_after = self._check_rate_limit(context.school_id)
        if not allowed:
            logger.warning(
                f"Rate limit exceeded for school {context.school_id}",
                extra={"school_id": context.school_id}
            )
            error = RateLimitExceeded(retry_after=retry_after)
            return JSONResponse(
                status_code=error.status_code,
                content={
                    "detail": error.detail,
                    "type": error.error_type,
                    "retry_after": retry_after
                },
                headers=error.headers
            )

        return await call_next(request)

    def _check_rate_limit(self, school_id) -> tuple:
        """
        Check if a request is allowed under the school's bucket.

        Returns: (allowed, retry_after_seconds)
        """
        key = f"rate_limit:school:{school_id}"
        key_timestamp = f"{key}:timestamp"

        try:
            current_tokens = self.redis_client.get(key)
            last_update = self.redis_client.get(key_timestamp)

            now = time.time()

            if current_tokens is None:
                # First request - initialize bucket
                self.redis_client.setex(key, 60, self.burst - 1)
                self.redis_client.setex(key_timestamp, 60, now)
                return True, 0

            current_tokens = float(current_tokens)
            last_update = float(last_update) if last_update else now

            elapsed = now - last_update
            tokens_to_add = elapsed * (self.rate_limit / 60.0)
            new_tokens = min(self.burst, current_tokens + tokens_to_add)

            if new_tokens >= 1:
                new_tokens -= 1
                self.redis_client.setex(key, 60, new_tokens)
                self.redis_client.setex(key_timestamp, 60, now)
                return True, 0

            tokens_needed = 1 - new_tokens
            retry_after = int((tokens_needed / (self.rate_limit / 60.0)) + 1)
            return False, retry_after

        except redis.RedisError as e:
            logger.error(f"Redis error in rate limiting: {e}")
            return True, 0
