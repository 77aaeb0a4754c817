"""
Entitlement queries, usage reporting and refunds.
"""

import math
from datetime import datetime, timedelta
from typing import Callable, Optional

from shared.config import BaseConfig
from shared.errors import NotFoundError, ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..cache.redis_cache import AccessCache
from ..errors import (
    AccessDeniedError, InternalWriteFailure, RefundFailedError, RefundNotAllowedError,
    RefundWindowExpiredError
)
from ..models import (
    AccessCheck, Entitlement, EntitlementListResponse, EntitlementResponse, EntitlementStatus,
    PurchaseStats, utcnow
)
from ..payments.client import PaymentGateway
from ..persistence.base import EntitlementStore
from ..purchases.side_effects import PostCommitActions

SECONDS_PER_DAY = 86400


class AccessService:
    """Read and change existing entitlements."""

    def __init__(
        self,
        store: EntitlementStore,
        payments: PaymentGateway,
        side_effects: PostCommitActions,
        settings: BaseConfig,
        access_cache: Optional[AccessCache] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.payments = payments
        self.side_effects = side_effects
        self.settings = settings
        self.access_cache = access_cache
        self.metrics = metrics or MetricsCollector("purchases")
        self.clock = clock
        self.logger = get_logger("purchases.access")

    async def check_access(self, actor_id: str, asset_id: str) -> AccessCheck:
        """True iff a completed entitlement exists that has not expired."""
        now = self.clock()
        if self.access_cache:
            cached = await self.access_cache.get_access(actor_id, asset_id)
            if cached is not None and (cached.expires_at is None or cached.expires_at > now):
                return self._with_remaining(cached, now)

        entitlement = await self.store.find_active_entitlement(actor_id, asset_id, now)
        if entitlement is None:
            return AccessCheck(has_access=False)

        decision = self._with_remaining(AccessCheck(
            has_access=True,
            entitlement_id=entitlement.entitlement_id,
            purchased_at=entitlement.purchase_date,
            expires_at=entitlement.expires_at,
        ), now)
        if self.access_cache:
            await self.access_cache.set_access(actor_id, asset_id, decision)
        return decision

    @staticmethod
    def _with_remaining(decision: AccessCheck, now: datetime) -> AccessCheck:
        if decision.expires_at is None:
            return decision.model_copy(update={"remaining_seconds": None, "days_remaining": None})
        remaining = max(0.0, (decision.expires_at - now).total_seconds())
        return decision.model_copy(update={
            "remaining_seconds": remaining,
            "days_remaining": math.ceil(remaining / SECONDS_PER_DAY),
        })

    async def get_entitlement(self, entitlement_id: str, actor_id: Optional[str] = None) -> Entitlement:
        """Load an entitlement, optionally verifying who owns it."""
        entitlement = await self.store.get_entitlement(entitlement_id)
        # Someone else's entitlement looks exactly like a missing one
        if entitlement is None or (actor_id is not None and entitlement.actor_id != actor_id):
            raise NotFoundError("Entitlement not found", {"entitlement_id": entitlement_id})
        return entitlement

    async def record_usage(
        self,
        entitlement_id: str,
        position: float,
        watched_delta: float = 0,
        actor_id: Optional[str] = None,
    ) -> Entitlement:
        """Apply one playback report in a single atomic update."""
        if position < 0 or watched_delta < 0:
            raise ValidationError(
                "position and watched_delta must be non-negative",
                {"position": position, "watched_delta": watched_delta}
            )
        if actor_id is not None:
            await self.get_entitlement(entitlement_id, actor_id)

        now = self.clock()
        updated = await self.store.record_usage(entitlement_id, position, watched_delta, now)
        if updated is not None:
            return updated

        existing = await self.store.get_entitlement(entitlement_id)
        if existing is None:
            raise NotFoundError("Entitlement not found", {"entitlement_id": entitlement_id})
        raise AccessDeniedError(details={
            "entitlement_id": entitlement_id,
            "status": existing.status.value,
            "expired": existing.is_expired(now),
        })

    async def refund(
        self,
        entitlement_id: str,
        reason: str = "Customer request",
        actor_id: Optional[str] = None,
    ) -> Entitlement:
        """Refund a completed purchase and revoke its access."""
        entitlement = await self.get_entitlement(entitlement_id, actor_id)
        now = self.clock()

        if entitlement.status != EntitlementStatus.COMPLETED:
            self._count_refund("not_allowed")
            raise RefundNotAllowedError(details={
                "entitlement_id": entitlement_id,
                "status": entitlement.status.value,
            })

        window = timedelta(days=self.settings.refund_window_days)
        if now - entitlement.purchase_date > window:
            self._count_refund("window_expired")
            raise RefundWindowExpiredError(details={
                "entitlement_id": entitlement_id,
                "refund_window_days": self.settings.refund_window_days,
            })

        payment_reference = entitlement.payment_reference or entitlement.transaction_id
        if not payment_reference:
            raise RefundNotAllowedError("Purchase has no payment to refund", {"entitlement_id": entitlement_id})

        try:
            result = await self.payments.refund(
                payment_reference, entitlement.amount, reason,
                idempotency_key=f"refund:{entitlement_id}",
            )
        except Exception as e:
            self.logger.error("Refund call failed", entitlement_id=entitlement_id, error=str(e))
            self._count_refund("failed")
            raise RefundFailedError(details={"entitlement_id": entitlement_id, "retry_after": 5}) from e

        if not result.success:
            self.logger.warning("Refund declined", entitlement_id=entitlement_id, reason=result.reason)
            self._count_refund("failed")
            raise RefundFailedError(
                result.reason or "Refund failed",
                {"entitlement_id": entitlement_id, "error_code": result.error_code}
            )

        try:
            async with self.store.transaction() as txn:
                refunded = await txn.mark_refunded(entitlement_id, reason, result.refund_id, now)
                if refunded is None:
                    raise RefundNotAllowedError(details={"entitlement_id": entitlement_id})
                await txn.remove_owned_asset(entitlement.actor_id, entitlement.asset_id, entitlement.amount, now)
        except RefundNotAllowedError:
            self.logger.error(
                "Refund issued but entitlement changed concurrently",
                entitlement_id=entitlement_id,
                refund_id=result.refund_id
            )
            self._count_refund("conflict")
            raise
        except Exception as e:
            self.logger.error(
                "Refund issued but entitlement update failed",
                entitlement_id=entitlement_id,
                refund_id=result.refund_id,
                error=str(e)
            )
            self._count_refund("write_failed")
            raise InternalWriteFailure(details={
                "entitlement_id": entitlement_id,
                "refund_id": result.refund_id,
            }) from e

        # A failed invalidation is retried in the background with the event
        invalidated = True
        if self.access_cache:
            invalidated = await self.access_cache.invalidate(entitlement.actor_id, entitlement.asset_id)

        self._count_refund("refunded")
        self.logger.info(
            "Purchase refunded",
            entitlement_id=entitlement_id,
            actor_id=entitlement.actor_id,
            amount=str(entitlement.amount)
        )
        self.side_effects.schedule(
            "purchase_refunded", entitlement.actor_id, [entitlement.asset_id],
            invalidate_cache=not invalidated,
            entitlement_id=entitlement_id,
            amount=str(entitlement.amount),
            reason=reason,
        )
        return refunded

    async def list_entitlements(
        self,
        actor_id: str,
        status: Optional[EntitlementStatus] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20,
    ) -> EntitlementListResponse:
        """Paginated purchase history, newest first."""
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")

        entitlements, total = await self.store.list_entitlements(
            actor_id, status, from_date, to_date, limit, (page - 1) * limit
        )
        now = self.clock()
        return EntitlementListResponse(
            entitlements=[EntitlementResponse.from_entitlement(e, now) for e in entitlements],
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit) if total else 0,
        )

    async def get_stats(self, actor_id: str) -> PurchaseStats:
        return await self.store.get_purchase_stats(actor_id)

    def _count_refund(self, outcome: str) -> None:
        self.metrics.increment_counter("refunds_total", outcome=outcome)
