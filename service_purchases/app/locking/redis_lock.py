"""
Redis lock store for duplicate-request suppression.

A lock is a key written with ``SET NX EX`` holding a random owner token;
whoever writes it first owns the operation until it releases the key or
the TTL lapses.
"""

import hashlib
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Sequence

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.logging import get_logger
from shared.errors import ValidationError
from ..errors import DuplicateInFlightError, LockUnavailableError


def lock_fingerprint(
    asset_id: Optional[str] = None,
    asset_ids: Optional[Sequence[str]] = None,
    transaction_id: Optional[str] = None,
) -> str:
    """Identify the target of an operation.

    A single asset wins over a set of assets, which wins over a transaction id.
    """
    if asset_id:
        return asset_id
    if asset_ids:
        joined = ",".join(sorted(set(asset_ids)))
        return hashlib.sha1(joined.encode("utf-8")).hexdigest()
    if transaction_id:
        return transaction_id
    raise ValidationError("Lock target is required", {"fields": ["asset_id", "asset_ids", "transaction_id"]})


def lock_key(
    operation: str,
    actor_id: str,
    asset_id: Optional[str] = None,
    asset_ids: Optional[Sequence[str]] = None,
    transaction_id: Optional[str] = None,
) -> str:
    """Build the lock key ``{operation}:{actor}:{fingerprint}``."""
    if not operation or not actor_id:
        raise ValidationError("Operation and actor are required for locking")
    return f"{operation}:{actor_id}:{lock_fingerprint(asset_id, asset_ids, transaction_id)}"


class RedisLockStore:
    """Short-lived mutual exclusion keyed by request identity.

    ``acquire`` writes a random token; ``release`` deletes the key only while
    it still holds that token, so a holder that outlived its TTL cannot drop
    a lock taken over by someone else.
    """

    RELEASE_SCRIPT = """
    if redis.call("GET", KEYS[1]) == ARGV[1] then
        return redis.call("DEL", KEYS[1])
    end
    return 0
    """

    def __init__(self, redis_client: redis.Redis, default_ttl: int = 15):
        self.redis = redis_client
        self.default_ttl = default_ttl
        self.logger = get_logger("purchases.locking.redis")
        self._release_script = redis_client.register_script(self.RELEASE_SCRIPT)

    async def acquire(self, key: str, ttl: Optional[int] = None) -> Optional[str]:
        """Try to take the lock.

        Returns the owner token, or ``None`` if someone else holds the lock.
        Raises :class:`LockUnavailableError` when Redis cannot answer.
        """
        ttl = ttl or self.default_ttl
        token = uuid.uuid4().hex
        try:
            acquired = await self.redis.set(key, token, nx=True, ex=ttl)
        except (RedisError, OSError) as e:
            self.logger.error("Lock acquire failed", key=key, error=str(e))
            raise LockUnavailableError(details={"key": key}) from e

        if not acquired:
            self.logger.info("Lock already held", key=key)
            return None
        return token

    async def release(self, key: str, token: str) -> bool:
        """Drop the lock if ``token`` still owns it.

        Failures are logged; the TTL bounds the damage.
        """
        try:
            released = await self._release_script(keys=[key], args=[token])
        except (RedisError, OSError) as e:
            self.logger.warning("Lock release failed", key=key, error=str(e))
            return False

        if not released:
            self.logger.warning("Lock expired before release", key=key)
            return False
        return True

    async def is_locked(self, key: str) -> bool:
        try:
            return bool(await self.redis.exists(key))
        except (RedisError, OSError) as e:
            self.logger.error("Lock lookup failed", key=key, error=str(e))
            raise LockUnavailableError(details={"key": key}) from e

    @asynccontextmanager
    async def hold(self, key: str, ttl: Optional[int] = None) -> AsyncIterator[str]:
        """Run the body while holding ``key``; yields the owner token.

        Raises :class:`DuplicateInFlightError` if the lock is taken.
        """
        token = await self.acquire(key, ttl)
        if token is None:
            raise DuplicateInFlightError(details={"key": key, "retry_after": 1})
        try:
            yield token
        finally:
            await self.release(key, token)

    async def health_check(self) -> bool:
        """Check Redis health."""
        try:
            await self.redis.ping()
            return True
        except (RedisError, OSError):
            return False
