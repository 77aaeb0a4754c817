"""
Fixed-window rate limiter for the Purchases service.
"""

import time
from dataclasses import dataclass
from typing import Dict, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.logging import get_logger


@dataclass
class RateLimitStatus:
    """Admission decision for one request."""
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    current_count: int = 0

    @property
    def retry_after(self) -> float:
        return max(0.0, self.reset_at - time.time())

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at)),
        }


class FixedWindowRateLimiter:
    """Distributed fixed-window counter using Redis.

    The first request in a window creates the counter and starts its
    expiry; the window resets when the key expires. Redis outages let
    requests through.
    """

    def __init__(self, redis_client: redis.Redis, limits: Dict[str, int], window_seconds: int = 60):
        self.redis = redis_client
        self.limits = dict(limits)
        self.window_seconds = window_seconds
        self.logger = get_logger("purchases.rate_limiter")

    def _make_key(self, operation: str, actor_id: str) -> str:
        """Generate rate limit key."""
        return f"rate_limit:{operation}:{actor_id}"

    def limit_for(self, operation: str) -> int:
        return self.limits.get(operation, self.limits.get("default", 60))

    async def check(self, operation: str, actor_id: str) -> RateLimitStatus:
        """Count this request and decide whether it may proceed."""
        limit = self.limit_for(operation)
        key = self._make_key(operation, actor_id)
        now = time.time()

        try:
            async with self.redis.pipeline(transaction=True) as pipeline:
                pipeline.incr(key)
                pipeline.ttl(key)
                count, ttl = await pipeline.execute()

            # A counter without expiry (new, or left behind by a crash) gets one now
            if ttl is None or ttl < 0:
                await self.redis.expire(key, self.window_seconds)
                ttl = self.window_seconds

        except (RedisError, OSError) as e:
            self.logger.error("Rate limit check error", operation=operation, error=str(e))
            return RateLimitStatus(
                allowed=True,
                limit=limit,
                remaining=limit,
                reset_at=now + self.window_seconds,
            )

        count = int(count)
        status = RateLimitStatus(
            allowed=count <= limit,
            limit=limit,
            remaining=max(0, limit - count),
            reset_at=now + ttl,
            current_count=count,
        )
        if not status.allowed:
            self.logger.warning(
                "Rate limit exceeded",
                operation=operation,
                actor_id=actor_id,
                current_count=count,
                limit=limit
            )
        return status

    async def status(self, operation: str, actor_id: str) -> Optional[RateLimitStatus]:
        """Read the current window without counting a request."""
        limit = self.limit_for(operation)
        key = self._make_key(operation, actor_id)
        try:
            current_value = await self.redis.get(key)
            ttl = await self.redis.ttl(key)
        except (RedisError, OSError) as e:
            self.logger.error("Rate limit status error", operation=operation, error=str(e))
            return None

        count = int(current_value) if current_value else 0
        if ttl is None or ttl < 0:
            ttl = self.window_seconds
        return RateLimitStatus(
            allowed=count < limit,
            limit=limit,
            remaining=max(0, limit - count),
            reset_at=time.time() + ttl,
            current_count=count,
        )

    async def reset(self, operation: str, actor_id: str) -> bool:
        """Clear the counter for an actor."""
        try:
            await self.redis.delete(self._make_key(operation, actor_id))
            self.logger.info("Rate limit reset", operation=operation, actor_id=actor_id)
            return True
        except (RedisError, OSError) as e:
            self.logger.error("Rate limit reset error", operation=operation, error=str(e))
            return False
