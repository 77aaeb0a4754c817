"""
Purchases service for the entitlement engine.
"""

import asyncio
from datetime import datetime
from typing import Callable, Dict, Optional

import redis.asyncio as redis
from fastapi import Depends, Header, Query, Response

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import ValidationError
from shared.logging import set_actor_context

from .access.service import AccessService
from .cache.redis_cache import AccessCache
from .guard import RequestGuard, run_to_completion
from .idempotency.ledger import IdempotencyLedger
from .locking.redis_lock import RedisLockStore
from .models import (
    AccessCheck, BulkPurchaseRequest, BulkPurchaseResult, EntitlementListResponse, EntitlementResponse,
    EntitlementStatus, PaymentIntent, PurchaseRequest, PurchaseResponse, RefundRequest, UsageRequest,
    utcnow
)
from .payments.client import HttpPaymentGateway, PaymentGateway, SandboxPaymentGateway
from .persistence.base import AssetCatalog, EntitlementStore
from .persistence.postgres import PostgreSQLStore
from .purchases.engine import PurchaseEngine
from .purchases.side_effects import PostCommitActions
from .ratelimit.window_limiter import FixedWindowRateLimiter


async def actor_from_header(x_actor_id: Optional[str] = Header(None)) -> str:
    """The upstream gateway authenticates callers and forwards their id."""
    if not x_actor_id:
        raise ValidationError("X-Actor-Id header is required", {"header": "X-Actor-Id"})
    set_actor_context(x_actor_id)
    return x_actor_id


class PurchasesService(BaseService):
    """Purchases service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        store: Optional[EntitlementStore] = None,
        catalog: Optional[AssetCatalog] = None,
        redis_client: Optional[redis.Redis] = None,
        payments: Optional[PaymentGateway] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__("purchases", 8013, config or get_config("purchases", 8013))

        # Injected resources belong to the caller and are not opened or closed here
        self._owns_store = store is None
        self._owns_redis = redis_client is None

        self.redis = redis_client or redis.from_url(
            self.config.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            health_check_interval=30
        )
        self.store = store or PostgreSQLStore(
            self.config.postgres_dsn,
            min_size=self.config.postgres_min_pool_size,
            max_size=self.config.postgres_max_pool_size
        )
        self.catalog = catalog or self.store
        self.payments = payments or self._create_payment_gateway()

        self.lock_store = RedisLockStore(self.redis, self.config.lock_ttl_seconds)
        self.rate_limiter = FixedWindowRateLimiter(
            self.redis, self.config.rate_limits, self.config.rate_limit_window_seconds
        )
        self.guard = RequestGuard(self.rate_limiter, self.lock_store, self.metrics, self.config.lock_ttl_seconds)
        self.access_cache = AccessCache(self.redis, self.config.access_cache_ttl_seconds)
        self.side_effects = PostCommitActions(self.access_cache, self.metrics)
        self.ledger = IdempotencyLedger(self.store, self.config.idempotency_retention_days, self.metrics, clock)
        self.engine = PurchaseEngine(
            self.store, self.catalog, self.payments, self.ledger, self.side_effects,
            self.config, self.metrics, clock
        )
        self.access = AccessService(
            self.store, self.payments, self.side_effects, self.config,
            self.access_cache, self.metrics, clock
        )

        self._maintenance_task: Optional[asyncio.Task] = None

        self._setup_purchases_routes()

    def _create_payment_gateway(self) -> PaymentGateway:
        if self.config.payment_gateway_url:
            return HttpPaymentGateway(
                self.config.payment_gateway_url,
                api_key=self.config.payment_api_key,
                timeout=self.config.payment_timeout_seconds
            )
        self.logger.warning("No payment gateway configured, using sandbox gateway")
        return SandboxPaymentGateway()

    def _setup_purchases_routes(self):
        """Set up purchases-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "purchases",
                "message": "Entitlement engine - Purchases Service",
                "version": "1.0.0",
                "capabilities": ["purchase", "bulk_purchase", "access_check", "usage", "refund"]
            }

        # Registered before /purchases/{asset_id} so "bulk" is not taken as an asset id
        @self.app.post("/purchases/bulk", response_model=BulkPurchaseResult)
        async def bulk_purchase(
            request: BulkPurchaseRequest,
            response: Response,
            actor_id: str = Depends(actor_from_header)
        ):
            """Purchase several assets with one payment."""
            intent = PaymentIntent(
                payment_method=request.payment_method,
                transaction_id=request.transaction_id,
                currency=request.currency
            )
            async with self.guard.hold("bulk", actor_id, asset_ids=request.asset_ids) as status:
                result = await run_to_completion(
                    self.engine.bulk_purchase(actor_id, request.asset_ids, intent)
                )
            response.headers.update(status.headers())
            return result

        @self.app.post("/purchases/{asset_id}", response_model=PurchaseResponse, status_code=201)
        async def purchase(
            asset_id: str,
            request: PurchaseRequest,
            response: Response,
            actor_id: str = Depends(actor_from_header)
        ):
            """Purchase one asset."""
            intent = PaymentIntent(
                payment_method=request.payment_method,
                transaction_id=request.transaction_id,
                currency=request.currency
            )
            async with self.guard.hold("purchase", actor_id, asset_id=asset_id) as status:
                outcome = await run_to_completion(self.engine.purchase(actor_id, asset_id, intent))

            response.headers.update(status.headers())
            if outcome.already_owned:
                response.status_code = 200
            return PurchaseResponse(
                already_owned=outcome.already_owned,
                entitlement=EntitlementResponse.from_entitlement(outcome.entitlement),
                payment_id=outcome.payment.external_id if outcome.payment else None,
                gateway=outcome.payment.gateway if outcome.payment else None
            )

        @self.app.get("/access/{asset_id}", response_model=AccessCheck)
        async def check_access(asset_id: str, actor_id: str = Depends(actor_from_header)):
            """Check whether the actor may use an asset."""
            return await self.access.check_access(actor_id, asset_id)

        @self.app.post("/entitlements/{entitlement_id}/usage", response_model=EntitlementResponse)
        async def record_usage(
            entitlement_id: str,
            request: UsageRequest,
            response: Response,
            actor_id: str = Depends(actor_from_header)
        ):
            """Report playback progress."""
            status = await self.guard.admit("usage", actor_id)
            entitlement = await self.access.record_usage(
                entitlement_id, request.position, request.watched_delta, actor_id=actor_id
            )
            response.headers.update(status.headers())
            return EntitlementResponse.from_entitlement(entitlement)

        @self.app.post("/entitlements/{entitlement_id}/refund", response_model=EntitlementResponse)
        async def refund(
            entitlement_id: str,
            request: RefundRequest,
            response: Response,
            actor_id: str = Depends(actor_from_header)
        ):
            """Refund a purchase and revoke access."""
            async with self.guard.hold("refund", actor_id, transaction_id=entitlement_id) as status:
                entitlement = await run_to_completion(
                    self.access.refund(entitlement_id, request.reason, actor_id=actor_id)
                )
            response.headers.update(status.headers())
            return EntitlementResponse.from_entitlement(entitlement)

        @self.app.get("/entitlements", response_model=EntitlementListResponse)
        async def list_entitlements(
            actor_id: str = Depends(actor_from_header),
            status: Optional[EntitlementStatus] = Query(None, description="Filter by status"),
            from_date: Optional[datetime] = Query(None, description="Purchased on or after"),
            to_date: Optional[datetime] = Query(None, description="Purchased on or before"),
            page: int = Query(1, ge=1, description="Page number"),
            limit: int = Query(20, ge=1, le=100, description="Items per page")
        ):
            """Purchase history for the actor."""
            return await self.access.list_entitlements(actor_id, status, from_date, to_date, page, limit)

        @self.app.get("/entitlements/stats")
        async def get_stats(actor_id: str = Depends(actor_from_header)):
            """Purchase totals for the actor."""
            stats = await self.access.get_stats(actor_id)
            return {
                "total_spent": str(stats.total_spent),
                "total_purchases": stats.total_purchases,
                "completed_purchases": stats.completed_purchases,
                "refunded_purchases": stats.refunded_purchases,
                "average_purchase": str(stats.average_purchase)
            }

        @self.app.get("/entitlements/{entitlement_id}", response_model=EntitlementResponse)
        async def get_entitlement(entitlement_id: str, actor_id: str = Depends(actor_from_header)):
            """One entitlement owned by the actor."""
            entitlement = await self.access.get_entitlement(entitlement_id, actor_id)
            return EntitlementResponse.from_entitlement(entitlement)

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check service dependencies."""
        dependencies = {}

        try:
            dependencies["redis"] = "ok" if await self.lock_store.health_check() else "error"
        except Exception:
            dependencies["redis"] = "error"

        try:
            dependencies["postgres"] = "ok" if await self.store.health_check() else "error"
        except Exception:
            dependencies["postgres"] = "error"

        try:
            dependencies["payments"] = "ok" if await self.payments.health_check() else "error"
        except Exception:
            dependencies["payments"] = "error"

        return dependencies

    async def _maintenance_loop(self):
        """Purge expired idempotency records and, if enabled, fail stale ones."""
        interval = self.config.maintenance_interval_seconds
        stale_after = self.config.idempotency_stale_after_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.ledger.purge_expired()
                if stale_after > 0:
                    await self.ledger.fail_stale(stale_after)
            except Exception as e:
                self.logger.error("Maintenance pass failed", error=str(e))

    async def start(self):
        """Start purchases service components."""
        if self._owns_store:
            await self.store.start()
        await self.payments.start()
        self._maintenance_task = asyncio.create_task(self._maintenance_loop())

        self.logger.info("Purchases service started")

    async def stop(self):
        """Stop purchases service components."""
        if self._maintenance_task:
            self._maintenance_task.cancel()
            try:
                await self._maintenance_task
            except asyncio.CancelledError:
                pass

        await self.side_effects.shutdown()
        await self.payments.stop()
        if self._owns_store:
            await self.store.stop()
        if self._owns_redis:
            await self.redis.aclose()

        self.logger.info("Purchases service stopped")


def create_app():
    """Create purchases service application."""
    service = PurchasesService()
    return service.app


if __name__ == "__main__":
    service = PurchasesService()
    service.run()
