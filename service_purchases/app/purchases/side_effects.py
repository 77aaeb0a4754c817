"""
Best-effort work that runs after an entitlement change has committed.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Set

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..cache.redis_cache import AccessCache

Notifier = Callable[[str, Dict[str, Any]], Awaitable[None]]


class PostCommitActions:
    """Schedules notification, analytics and cache invalidation.

    Nothing here can fail the request that triggered it: tasks run in the
    background and their errors are logged. Cache invalidation is retried,
    since a missed one leaves a revoked grant cached until its TTL.
    """

    def __init__(
        self,
        access_cache: Optional[AccessCache] = None,
        metrics: Optional[MetricsCollector] = None,
        notifier: Optional[Notifier] = None,
        invalidation_attempts: int = 3,
        retry_delay: float = 0.5,
    ):
        self.access_cache = access_cache
        self.metrics = metrics
        self.notifier = notifier or self._log_notification
        self.invalidation_attempts = invalidation_attempts
        self.retry_delay = retry_delay
        self.logger = get_logger("purchases.side_effects")
        self._tasks: Set[asyncio.Task] = set()

    def schedule(
        self,
        event: str,
        actor_id: str,
        asset_ids: Sequence[str],
        invalidate_cache: bool = True,
        **fields: Any,
    ) -> asyncio.Task:
        payload = {"actor_id": actor_id, "asset_ids": list(asset_ids), **fields}
        task = asyncio.create_task(self._run(event, payload, invalidate_cache))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, event: str, payload: Dict[str, Any], invalidate_cache: bool) -> None:
        actions = [self.notifier(event, payload), self._record_analytics(event)]
        if invalidate_cache and self.access_cache:
            actions.extend(
                self._invalidate(payload["actor_id"], asset_id)
                for asset_id in payload["asset_ids"]
            )

        results = await asyncio.gather(*actions, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                self.logger.error("Post-commit action failed", event_type=event, error=str(result))

    async def _invalidate(self, actor_id: str, asset_id: str) -> bool:
        for attempt in range(1, self.invalidation_attempts + 1):
            if await self.access_cache.invalidate(actor_id, asset_id):
                return True
            if attempt < self.invalidation_attempts:
                await asyncio.sleep(self.retry_delay * attempt)
        self.logger.error(
            "Cache invalidation failed, cached grant kept until its TTL",
            actor_id=actor_id,
            asset_id=asset_id,
            attempts=self.invalidation_attempts
        )
        return False

    async def _record_analytics(self, event: str) -> None:
        if self.metrics:
            self.metrics.record_business_event(event)

    async def _log_notification(self, event: str, payload: Dict[str, Any]) -> None:
        self.logger.info("Notification", event_type=event, **payload)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every scheduled task."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        if self._tasks:
            self.logger.info("Waiting for post-commit actions", pending=len(self._tasks))
        await self.drain()
