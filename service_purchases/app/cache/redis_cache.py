"""
Redis caching layer for access decisions.
"""

import math
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError
from pydantic import ValidationError as PydanticValidationError

from shared.logging import get_logger
from ..models import AccessCheck, utcnow


class AccessCache:
    """Caches positive access decisions only.

    A cached grant never outlives the entitlement's expiry. Cache failures
    behave like a miss.
    """

    ACCESS_PREFIX = "access:"

    def __init__(self, redis_client: redis.Redis, default_ttl: int = 300):
        self.redis = redis_client
        self.default_ttl = default_ttl
        self.min_ttl = 1
        self.logger = get_logger("purchases.cache.redis")

    def _get_access_key(self, actor_id: str, asset_id: str) -> str:
        return f"{self.ACCESS_PREFIX}{actor_id}:{asset_id}"

    async def get_access(self, actor_id: str, asset_id: str) -> Optional[AccessCheck]:
        """Get cached access decision."""
        cache_key = self._get_access_key(actor_id, asset_id)
        try:
            cached_data = await self.redis.get(cache_key)
        except (RedisError, OSError) as e:
            self.logger.error("Error getting cached access", error=str(e))
            return None

        if not cached_data:
            return None

        try:
            decision = AccessCheck.model_validate_json(cached_data)
        except PydanticValidationError:
            self.logger.warning("Discarding unreadable cache entry", cache_key=cache_key)
            await self.invalidate(actor_id, asset_id)
            return None

        if decision.expires_at is not None and decision.expires_at <= utcnow():
            await self.invalidate(actor_id, asset_id)
            return None

        self.logger.debug("Cache hit for access", cache_key=cache_key)
        return decision

    async def set_access(self, actor_id: str, asset_id: str, decision: AccessCheck) -> bool:
        """Cache a positive decision; negative ones are ignored."""
        if not decision.has_access:
            return False

        ttl_seconds = self.default_ttl
        if decision.expires_at is not None:
            remaining = (decision.expires_at - utcnow()).total_seconds()
            if remaining <= 0:
                return False
            ttl_seconds = min(ttl_seconds, max(self.min_ttl, math.floor(remaining)))

        cache_key = self._get_access_key(actor_id, asset_id)
        try:
            await self.redis.setex(cache_key, ttl_seconds, decision.model_dump_json())
            self.logger.debug("Cached access decision", cache_key=cache_key, ttl=ttl_seconds)
            return True
        except (RedisError, OSError) as e:
            self.logger.error("Error caching access decision", error=str(e))
            return False

    async def invalidate(self, actor_id: str, asset_id: str) -> bool:
        """Drop the cached decision for one (actor, asset)."""
        try:
            await self.redis.delete(self._get_access_key(actor_id, asset_id))
            return True
        except (RedisError, OSError) as e:
            self.logger.error("Error invalidating access", actor_id=actor_id, asset_id=asset_id, error=str(e))
            return False

    async def invalidate_actor(self, actor_id: str) -> int:
        """Drop every cached decision for an actor."""
        try:
            keys = [key async for key in self.redis.scan_iter(match=f"{self.ACCESS_PREFIX}{actor_id}:*")]
            if keys:
                await self.redis.delete(*keys)
                self.logger.info("Invalidated actor access", actor_id=actor_id, count=len(keys))
            return len(keys)
        except (RedisError, OSError) as e:
            self.logger.error("Error invalidating actor access", actor_id=actor_id, error=str(e))
            return 0
