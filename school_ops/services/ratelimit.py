"""
Fixed-window rate limiting per (client, path), counted in Redis.

Each window is one Redis key created with a TTL equal to the window, so
expired counters are dropped by Redis itself. Limiters live on the
application instance (app.state.rate_limiters) and share app.state.redis.
"""

import logging
import math
from dataclasses import dataclass

from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RateLimitConfig:
    window_seconds: int
    max_requests: int


RATE_LIMITS = {
    # sensitive operations
    "STRICT": RateLimitConfig(window_seconds=60, max_requests=10),
    "STANDARD": RateLimitConfig(window_seconds=900, max_requests=100),
    "MODERATE": RateLimitConfig(window_seconds=60, max_requests=30),
    # reads
    "LENIENT": RateLimitConfig(window_seconds=60, max_requests=100),
}


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int


class RateLimiter:
    def __init__(self, redis: Redis, config: RateLimitConfig, namespace: str = "ratelimit"):
        self.redis = redis
        self.config = config
        self.namespace = namespace

    async def hit(self, key: str) -> RateLimitDecision:
        """
        Count one request against `key`.

        SET NX EX opens the window with its TTL, INCR keeps that TTL, so the
        window is never extended by later hits. When Redis is unreachable the
        request is let through and the failure is logged.
        """
        redis_key = f"{self.namespace}:{key}"
        window = self.config.window_seconds
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.set(redis_key, 0, ex=window, nx=True)
                pipe.incr(redis_key)
                pipe.ttl(redis_key)
                _, count, ttl = await pipe.execute()
        except RedisError:
            logger.warning("Rate limiter unavailable, allowing %s", redis_key, exc_info=True)
            return RateLimitDecision(
                allowed=True,
                limit=self.config.max_requests,
                remaining=self.config.max_requests,
                retry_after=0,
            )

        count = int(count)
        ttl = int(ttl)
        return RateLimitDecision(
            allowed=count <= self.config.max_requests,
            limit=self.config.max_requests,
            remaining=max(0, self.config.max_requests - count),
            retry_after=max(1, math.ceil(ttl)) if ttl > 0 else window,
        )


def build_rate_limiters(redis: Redis, namespace: str = "ratelimit") -> dict[str, RateLimiter]:
    return {
        name: RateLimiter(redis, config, namespace=f"{namespace}:{name.lower()}")
        for name, config in RATE_LIMITS.items()
    }
