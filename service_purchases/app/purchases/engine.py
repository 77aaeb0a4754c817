"""
Purchase transaction engine.

Money moves first, then the entitlement is written in one transaction.
Whenever the write does not happen, the capture is refunded before the
error reaches the caller.
"""

import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence

from shared.config import BaseConfig
from shared.errors import EngineException, NotFoundError, ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..errors import InternalWriteFailure, NothingToPurchaseError, PaymentDeclinedError
from ..idempotency.ledger import IdempotencyLedger
from ..models import (
    Asset, BulkPurchaseResult, CaptureResult, ChangedBy, Entitlement, EntitlementStatus,
    FailedItem, OperationKind, PaymentIntent, PurchaseOutcome, StatusChange, utcnow
)
from ..payments.client import PaymentGateway
from ..persistence.base import (
    ACTIVE_ENTITLEMENT_CONSTRAINT, TRANSACTION_ID_CONSTRAINT,
    AssetCatalog, DuplicateRecordError, EntitlementStore
)
from .side_effects import PostCommitActions


class PurchaseEngine:
    """Single and bulk purchases."""

    def __init__(
        self,
        store: EntitlementStore,
        catalog: AssetCatalog,
        payments: PaymentGateway,
        ledger: IdempotencyLedger,
        side_effects: PostCommitActions,
        settings: BaseConfig,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.catalog = catalog
        self.payments = payments
        self.ledger = ledger
        self.side_effects = side_effects
        self.settings = settings
        self.metrics = metrics or MetricsCollector("purchases")
        self.clock = clock
        self.logger = get_logger("purchases.engine")

    # ------------------------------------------------------------------
    # Single purchase
    # ------------------------------------------------------------------

    async def purchase(self, actor_id: str, asset_id: str, intent: PaymentIntent) -> PurchaseOutcome:
        """Grant ``asset_id`` to ``actor_id`` once.

        Returns the existing entitlement with ``already_owned=True`` if the
        actor already has access; nobody is charged twice.
        """
        if not actor_id or not asset_id:
            raise ValidationError("Actor and asset are required")
        if not intent.payment_method:
            raise ValidationError("Payment method is required", {"field": "payment_method"})

        with self.metrics.time_operation("purchase_duration_seconds", kind="single"):
            asset = await self.catalog.get_asset(asset_id)
            if asset is None or not asset.purchasable:
                self._count_purchase("not_found")
                raise NotFoundError("Asset not found or not available", {"asset_id": asset_id})

            currency = intent.currency or asset.currency
            if currency != asset.currency:
                raise ValidationError(
                    "Currency does not match the asset price",
                    {"asset_id": asset_id, "currency": currency, "asset_currency": asset.currency}
                )

            existing = await self.store.find_active_entitlement(actor_id, asset_id, self.clock())
            if existing:
                self.logger.info("Asset already owned", actor_id=actor_id, asset_id=asset_id)
                self._count_purchase("already_owned")
                return PurchaseOutcome(entitlement=existing, already_owned=True)

            capture_key = f"purchase:{actor_id}:{asset_id}:{intent.transaction_id}" if intent.transaction_id else None
            capture = await self._capture(
                amount=asset.price,
                currency=currency,
                actor_id=actor_id,
                description=f"Purchase: {asset.title or asset_id}",
                metadata={"asset_id": asset_id, "transaction_id": intent.transaction_id},
                idempotency_key=await self._capture_key(capture_key),
                intent=intent,
            )

            now = self.clock()
            entitlement = self._build_entitlement(
                actor_id, asset, intent, capture, now,
                transaction_id=capture.external_id,
            )
            try:
                await self._write(actor_id, [asset], [entitlement], now)
            except DuplicateRecordError as e:
                return await self._resolve_duplicate(e, actor_id, asset, capture, capture_key)
            except Exception as e:
                self.logger.error(
                    "Entitlement write failed after capture",
                    actor_id=actor_id,
                    asset_id=asset_id,
                    payment_id=capture.external_id,
                    error=str(e)
                )
                compensated = await self._compensate(
                    capture.external_id, asset.price, "entitlement write failed", capture_key
                )
                self._count_purchase("write_failed")
                raise InternalWriteFailure(details={
                    "asset_id": asset_id,
                    "payment_id": capture.external_id,
                    "compensated": compensated,
                }) from e

        self._count_purchase("completed")
        self.logger.info(
            "Purchase completed",
            actor_id=actor_id,
            asset_id=asset_id,
            entitlement_id=entitlement.entitlement_id,
            amount=str(entitlement.amount)
        )
        self.side_effects.schedule(
            "purchase_completed", actor_id, [asset_id],
            entitlement_id=entitlement.entitlement_id,
            amount=str(entitlement.amount),
            currency=entitlement.currency,
        )
        return PurchaseOutcome(entitlement=entitlement, already_owned=False, payment=capture)

    async def _resolve_duplicate(
        self,
        error: DuplicateRecordError,
        actor_id: str,
        asset: Asset,
        capture: CaptureResult,
        capture_key: Optional[str],
    ) -> PurchaseOutcome:
        if error.constraint == TRANSACTION_ID_CONSTRAINT:
            # The gateway deduplicated the capture; the earlier write already used it
            existing = await self.store.find_by_transaction(capture.external_id)
            if existing is not None:
                self.logger.info("Duplicate transaction", payment_id=capture.external_id)
                self._count_purchase("duplicate_transaction")
                return PurchaseOutcome(entitlement=existing, already_owned=False, payment=capture)

        if error.constraint == ACTIVE_ENTITLEMENT_CONSTRAINT:
            compensated = await self._compensate(capture.external_id, asset.price, "already owned", capture_key)
            winner = await self.store.find_active_entitlement(actor_id, asset.asset_id, self.clock())
            if winner is not None:
                self.logger.info(
                    "Lost purchase race, refunded",
                    actor_id=actor_id,
                    asset_id=asset.asset_id,
                    compensated=compensated
                )
                self._count_purchase("already_owned")
                return PurchaseOutcome(entitlement=winner, already_owned=True)
            self._count_purchase("write_failed")
            raise InternalWriteFailure(details={
                "asset_id": asset.asset_id,
                "payment_id": capture.external_id,
                "compensated": compensated,
            }) from error

        compensated = await self._compensate(
            capture.external_id, asset.price, "entitlement write failed", capture_key
        )
        self._count_purchase("write_failed")
        raise InternalWriteFailure(details={
            "asset_id": asset.asset_id,
            "payment_id": capture.external_id,
            "constraint": error.constraint,
            "compensated": compensated,
        }) from error

    # ------------------------------------------------------------------
    # Bulk purchase
    # ------------------------------------------------------------------

    async def bulk_purchase(self, actor_id: str, asset_ids: Sequence[str], intent: PaymentIntent) -> BulkPurchaseResult:
        """Purchase several assets with one capture.

        Identical retries (same actor, transaction id and asset set) return
        the stored result without charging again.
        """
        if not actor_id:
            raise ValidationError("Actor is required")
        if not intent.transaction_id:
            raise ValidationError("transaction_id is required for bulk purchases", {"field": "transaction_id"})
        if not intent.payment_method:
            raise ValidationError("Payment method is required", {"field": "payment_method"})

        unique_ids = list(dict.fromkeys(asset_ids))
        if not unique_ids or any(not asset_id for asset_id in unique_ids):
            raise ValidationError("asset_ids must be a non-empty list of ids", {"field": "asset_ids"})
        if len(unique_ids) > self.settings.bulk_max_items:
            raise ValidationError(
                f"At most {self.settings.bulk_max_items} assets per bulk purchase",
                {"field": "asset_ids", "count": len(unique_ids)}
            )

        key = self.ledger.generate_key(actor_id, intent.transaction_id, sorted(unique_ids))
        entry = await self.ledger.begin(
            key, actor_id, OperationKind.BULK_PURCHASE,
            metadata={"asset_count": len(unique_ids), "payment_method": intent.payment_method}
        )
        if not entry.is_new:
            return entry.existing_result.model_copy(update={"replayed": True})

        with self.metrics.time_operation("purchase_duration_seconds", kind="bulk"):
            try:
                result = await self._run_bulk(key, actor_id, unique_ids, intent)
            except EngineException as e:
                await self.ledger.fail(key, e.code)
                raise
            except Exception as e:
                await self.ledger.fail(key, type(e).__name__)
                raise

        await self._complete_bulk(key, result)
        return result

    async def _complete_bulk(self, key: str, result: BulkPurchaseResult) -> None:
        # Entitlements are already committed, so a failure here is not surfaced
        for attempt in (1, 2):
            try:
                await self.ledger.complete(key, result)
                return
            except Exception as e:
                self.logger.warning("Failed to record bulk result", bulk_id=key, attempt=attempt, error=str(e))
        self.logger.error(
            "Bulk result not recorded, record left processing; requires manual sweep",
            bulk_id=key,
            payment_id=result.payment_id,
            purchased_ids=result.purchased_ids
        )

    async def _run_bulk(
        self,
        bulk_id: str,
        actor_id: str,
        asset_ids: List[str],
        intent: PaymentIntent,
    ) -> BulkPurchaseResult:
        assets = await self.catalog.get_assets(asset_ids)
        owned = {
            entitlement.asset_id
            for entitlement in await self.store.find_active_entitlements(actor_id, asset_ids, self.clock())
        }
        currency = intent.currency or self._bulk_currency(asset_ids, assets)

        already_owned: List[str] = []
        failed: List[FailedItem] = []
        purchasable: List[Asset] = []
        for asset_id in asset_ids:
            asset = assets.get(asset_id)
            if asset_id in owned:
                already_owned.append(asset_id)
            elif asset is None or not asset.purchasable:
                failed.append(FailedItem(asset_id=asset_id, code="NOT_FOUND", message="Asset not found or not available"))
            elif asset.currency != currency:
                failed.append(FailedItem(
                    asset_id=asset_id,
                    code="CURRENCY_MISMATCH",
                    message=f"Asset is priced in {asset.currency}, not {currency}"
                ))
            else:
                purchasable.append(asset)

        if not purchasable:
            raise NothingToPurchaseError(details={
                "already_owned_ids": already_owned,
                "failed": [item.model_dump() for item in failed],
            })

        total = sum((asset.price for asset in purchasable), Decimal("0"))
        capture_key = f"bulk:{bulk_id}"
        capture = await self._capture(
            amount=total,
            currency=currency,
            actor_id=actor_id,
            description=f"Bulk purchase of {len(purchasable)} assets",
            metadata={"bulk_id": bulk_id, "asset_ids": [asset.asset_id for asset in purchasable]},
            idempotency_key=await self._capture_key(capture_key),
            intent=intent,
        )

        now = self.clock()
        purchased: List[Asset] = []
        not_granted: List[Asset] = []
        for start in range(0, len(purchasable), self.settings.bulk_batch_size):
            batch = purchasable[start:start + self.settings.bulk_batch_size]
            entitlements = [
                self._build_entitlement(
                    actor_id, asset, intent, capture, now,
                    transaction_id=f"{capture.external_id}:{asset.asset_id}",
                    bulk_id=bulk_id,
                )
                for asset in batch
            ]
            try:
                await self._write(actor_id, batch, entitlements, now)
                purchased.extend(batch)
            except Exception as e:
                self.logger.warning(
                    "Bulk batch failed, retrying item by item",
                    bulk_id=bulk_id,
                    batch_size=len(batch),
                    error=str(e)
                )
                for asset, entitlement in zip(batch, entitlements):
                    outcome = await self._write_single_item(actor_id, asset, entitlement, now)
                    if outcome == "purchased":
                        purchased.append(asset)
                    elif outcome == "already_owned":
                        already_owned.append(asset.asset_id)
                        not_granted.append(asset)
                    else:
                        failed.append(FailedItem(
                            asset_id=asset.asset_id,
                            code="INTERNAL_WRITE_FAILURE",
                            message="Entitlement could not be written"
                        ))
                        not_granted.append(asset)

        if not purchased:
            compensated = await self._compensate(
                capture.external_id, total, "bulk purchase write failed", capture_key
            )
            self._count_bulk_items("write_failed", len(purchasable))
            raise InternalWriteFailure(details={
                "bulk_id": bulk_id,
                "payment_id": capture.external_id,
                "compensated": compensated,
            })

        refunded_amount = Decimal("0")
        if not_granted:
            share = sum((asset.price for asset in not_granted), Decimal("0"))
            if await self._compensate(capture.external_id, share, "bulk items not granted"):
                refunded_amount = share

        result = BulkPurchaseResult(
            bulk_id=bulk_id,
            purchased_ids=[asset.asset_id for asset in purchased],
            already_owned_ids=already_owned,
            failed=failed,
            total_amount=sum((asset.price for asset in purchased), Decimal("0")),
            currency=currency,
            payment_id=capture.external_id,
            refunded_amount=refunded_amount,
        )

        self._count_bulk_items("purchased", len(result.purchased_ids))
        self._count_bulk_items("already_owned", len(result.already_owned_ids))
        self._count_bulk_items("failed", len(result.failed))
        self.logger.info(
            "Bulk purchase completed",
            bulk_id=bulk_id,
            actor_id=actor_id,
            purchased=len(result.purchased_ids),
            already_owned=len(result.already_owned_ids),
            failed=len(result.failed),
            total_amount=str(result.total_amount)
        )
        self.side_effects.schedule(
            "bulk_purchase_completed", actor_id, result.purchased_ids,
            bulk_id=bulk_id,
            amount=str(result.total_amount),
            currency=currency,
        )
        return result

    async def _write_single_item(self, actor_id: str, asset: Asset, entitlement: Entitlement, now: datetime) -> str:
        try:
            await self._write(actor_id, [asset], [entitlement], now)
            return "purchased"
        except DuplicateRecordError as e:
            if e.constraint == ACTIVE_ENTITLEMENT_CONSTRAINT:
                return "already_owned"
            if e.constraint == TRANSACTION_ID_CONSTRAINT:
                return "purchased"
            self.logger.error("Bulk item write failed", asset_id=asset.asset_id, constraint=e.constraint)
            return "failed"
        except Exception as e:
            self.logger.error("Bulk item write failed", asset_id=asset.asset_id, error=str(e))
            return "failed"

    def _bulk_currency(self, asset_ids: Sequence[str], assets: Dict[str, Asset]) -> str:
        for asset_id in asset_ids:
            asset = assets.get(asset_id)
            if asset is not None and asset.purchasable:
                return asset.currency
        return self.settings.default_currency

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    async def _capture(
        self,
        amount: Decimal,
        currency: str,
        actor_id: str,
        description: str,
        metadata: Dict,
        idempotency_key: Optional[str],
        intent: PaymentIntent,
    ) -> CaptureResult:
        capture = await self.payments.capture(
            amount=amount,
            currency=currency,
            actor_ref=actor_id,
            description=description,
            metadata={**intent.metadata, **metadata},
            idempotency_key=idempotency_key,
            method=intent.payment_method,
        )
        if not capture.success:
            self.logger.info("Payment declined", actor_id=actor_id, reason=capture.reason, code=capture.error_code)
            self._count_purchase("declined")
            raise PaymentDeclinedError(
                capture.reason or "Payment declined",
                {"error_code": capture.error_code}
            )
        return capture

    async def _write(
        self,
        actor_id: str,
        assets: Sequence[Asset],
        entitlements: Sequence[Entitlement],
        now: datetime,
    ) -> None:
        asset_ids = [asset.asset_id for asset in assets]
        async with self.store.transaction() as txn:
            await txn.retire_expired(actor_id, asset_ids, now)
            await txn.insert_entitlements(entitlements)
            await txn.add_owned_assets(
                actor_id, asset_ids, sum((e.amount for e in entitlements), Decimal("0")), now
            )
            await txn.increment_purchase_counts(asset_ids)

    async def _capture_key(self, base_key: Optional[str]) -> Optional[str]:
        """Gateway idempotency key for the next capture made under ``base_key``.

        The gateway replays whatever it captured under a key, refunded or not,
        so every capture refunded in full moves the key on to a fresh one.
        """
        if base_key is None:
            return None
        refunded = await self.store.count_compensations(base_key)
        return f"{base_key}:{refunded}" if refunded else base_key

    async def _compensate(
        self,
        external_id: Optional[str],
        amount: Decimal,
        reason: str,
        capture_key: Optional[str] = None,
    ) -> bool:
        """Refund a capture whose entitlement was not granted. Never raises.

        Pass ``capture_key`` when the whole capture is refunded so that the
        next attempt under the same key captures again.
        """
        try:
            result = await self.payments.refund(
                external_id, amount, reason,
                idempotency_key=f"compensation:{external_id}:{uuid.uuid4().hex}",
            )
        except Exception as e:
            self.logger.error(
                "Compensating refund failed",
                payment_id=external_id,
                amount=str(amount),
                error=str(e)
            )
            self.metrics.increment_counter("compensations_total", result="error")
            return False

        if not result.success:
            self.logger.error(
                "Compensating refund declined",
                payment_id=external_id,
                amount=str(amount),
                reason=result.reason
            )
            self.metrics.increment_counter("compensations_total", result="declined")
            return False

        self.logger.warning(
            "Compensating refund issued",
            payment_id=external_id,
            refund_id=result.refund_id,
            amount=str(amount),
            reason=reason
        )
        self.metrics.increment_counter("compensations_total", result="refunded")
        if capture_key is not None:
            try:
                await self.store.record_compensation(capture_key, external_id, amount, reason, self.clock())
            except Exception as e:
                self.logger.error(
                    "Failed to record compensating refund",
                    capture_key=capture_key,
                    payment_id=external_id,
                    error=str(e)
                )
        return True

    def _build_entitlement(
        self,
        actor_id: str,
        asset: Asset,
        intent: PaymentIntent,
        capture: CaptureResult,
        now: datetime,
        transaction_id: Optional[str],
        bulk_id: Optional[str] = None,
    ) -> Entitlement:
        expires_at = None
        if asset.access_duration_seconds and asset.access_duration_seconds > 0:
            expires_at = now + timedelta(seconds=asset.access_duration_seconds)

        metadata = dict(intent.metadata)
        if intent.transaction_id:
            metadata["client_transaction_id"] = intent.transaction_id
        if capture.gateway:
            metadata["gateway"] = capture.gateway

        return Entitlement(
            entitlement_id=uuid.uuid4().hex,
            actor_id=actor_id,
            asset_id=asset.asset_id,
            amount=asset.price,
            currency=asset.currency,
            payment_method=capture.method or intent.payment_method,
            status=EntitlementStatus.COMPLETED,
            purchase_date=now,
            expires_at=expires_at,
            transaction_id=transaction_id,
            payment_reference=capture.external_id,
            bulk_id=bulk_id,
            status_history=[StatusChange(EntitlementStatus.COMPLETED, now, "payment captured", ChangedBy.GATEWAY)],
            metadata=metadata,
        )

    def _count_purchase(self, outcome: str) -> None:
        self.metrics.increment_counter("purchases_total", outcome=outcome)

    def _count_bulk_items(self, outcome: str, count: int) -> None:
        if count:
            self.metrics.increment_counter("bulk_items_total", amount=count, outcome=outcome)
