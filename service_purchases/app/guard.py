"""
Admission control for mutating requests.

Every write path runs: rate limit check, lock acquisition, the operation,
then a release of the lock by its owner token.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Optional, Sequence, TypeVar

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.errors import RateLimitError
from .errors import DuplicateInFlightError
from .locking.redis_lock import RedisLockStore, lock_key
from .ratelimit.window_limiter import FixedWindowRateLimiter, RateLimitStatus

T = TypeVar("T")

logger = get_logger("purchases.guard")


async def run_to_completion(operation: Awaitable[T]) -> T:
    """Await ``operation`` so that cancelling the caller does not abort it.

    If the caller is cancelled the operation still runs to the end (its
    outcome is logged) before the cancellation propagates, so any lock held
    around it is only released once the write has settled.
    """
    task = asyncio.ensure_future(operation)
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        if not task.done():
            logger.warning("Request cancelled, finishing in-flight operation")
            try:
                await task
            except Exception as e:
                logger.error("In-flight operation failed after cancellation", error=str(e))
        raise


class RequestGuard:
    """Rate limiter plus duplicate-suppression lock."""

    def __init__(
        self,
        rate_limiter: FixedWindowRateLimiter,
        lock_store: RedisLockStore,
        metrics: Optional[MetricsCollector] = None,
        lock_ttl: Optional[int] = None,
    ):
        self.rate_limiter = rate_limiter
        self.lock_store = lock_store
        self.metrics = metrics
        self.lock_ttl = lock_ttl

    async def admit(self, operation: str, actor_id: str) -> RateLimitStatus:
        """Rate limit check only, for writes that need no lock."""
        status = await self.rate_limiter.check(operation, actor_id)
        if not status.allowed:
            self._count("rate_limited_total", operation=operation)
            raise RateLimitError(details={
                "operation": operation,
                "limit": status.limit,
                "retry_after": status.retry_after,
            })
        return status

    @asynccontextmanager
    async def hold(
        self,
        operation: str,
        actor_id: str,
        *,
        asset_id: Optional[str] = None,
        asset_ids: Optional[Sequence[str]] = None,
        transaction_id: Optional[str] = None,
    ) -> AsyncIterator[RateLimitStatus]:
        """Admit one request for ``operation`` or raise.

        Raises :class:`RateLimitError`, :class:`DuplicateInFlightError` or
        :class:`LockUnavailableError`. Yields the rate limit status.
        """
        status = await self.admit(operation, actor_id)

        key = lock_key(operation, actor_id, asset_id, asset_ids, transaction_id)
        token = await self.lock_store.acquire(key, self.lock_ttl)
        if token is None:
            self._count("lock_conflicts_total", operation=operation)
            raise DuplicateInFlightError(details={"operation": operation, "retry_after": 1})

        try:
            yield status
        finally:
            await asyncio.shield(self.lock_store.release(key, token))

    def _count(self, metric_name: str, **labels: Any) -> None:
        if self.metrics:
            self.metrics.increment_counter(metric_name, **labels)
