"""
Unit tests for the idempotency ledger.
"""

import asyncio
from decimal import Decimal

import pytest

from service_purchases.app.errors import IdempotencyInProgressError
from service_purchases.app.idempotency.ledger import IdempotencyLedger
from service_purchases.app.models import BulkPurchaseResult, IdempotencyStatus, OperationKind


def _result(bulk_id: str) -> BulkPurchaseResult:
    return BulkPurchaseResult(
        bulk_id=bulk_id,
        purchased_ids=["X"],
        total_amount=Decimal("100"),
        currency="THB",
        payment_id="pay_1",
    )


class TestGenerateKey:
    """Test cases for idempotency key derivation."""

    def test_key_is_deterministic(self):
        first = IdempotencyLedger.generate_key("A", "t1", {"ids": ["X", "Y"], "method": "card"})
        second = IdempotencyLedger.generate_key("A", "t1", {"method": "card", "ids": ["X", "Y"]})

        assert first == second
        assert len(first) == 64

    def test_key_depends_on_every_part(self):
        base = IdempotencyLedger.generate_key("A", "t1", ["X"])

        assert IdempotencyLedger.generate_key("B", "t1", ["X"]) != base
        assert IdempotencyLedger.generate_key("A", "t2", ["X"]) != base
        assert IdempotencyLedger.generate_key("A", "t1", ["Y"]) != base


class TestIdempotencyLedger:
    """Test cases for IdempotencyLedger."""

    @pytest.mark.asyncio
    async def test_first_attempt_is_new(self, ledger, store):
        entry = await ledger.begin("k1", "A", OperationKind.BULK_PURCHASE)

        assert entry.is_new is True
        assert store.idempotency["k1"].status == IdempotencyStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_second_attempt_while_processing_is_rejected(self, ledger):
        await ledger.begin("k1", "A", OperationKind.BULK_PURCHASE)

        with pytest.raises(IdempotencyInProgressError):
            await ledger.begin("k1", "A", OperationKind.BULK_PURCHASE)

    @pytest.mark.asyncio
    async def test_completed_attempt_is_replayed(self, ledger, metrics):
        await ledger.begin("k1", "A", OperationKind.BULK_PURCHASE)
        await ledger.complete("k1", _result("k1"))

        entry = await ledger.begin("k1", "A", OperationKind.BULK_PURCHASE)

        assert entry.is_new is False
        assert isinstance(entry.existing_result, BulkPurchaseResult)
        assert entry.existing_result.purchased_ids == ["X"]
        assert entry.existing_result.total_amount == Decimal("100")
        assert metrics.get_counter_value("idempotency_replays_total", operation="bulk_purchase") == 1

    @pytest.mark.asyncio
    async def test_failed_attempt_can_be_retried(self, ledger, store):
        await ledger.begin("k1", "A", OperationKind.BULK_PURCHASE)
        await ledger.fail("k1", "PAYMENT_DECLINED")

        entry = await ledger.begin("k1", "A", OperationKind.BULK_PURCHASE)

        assert entry.is_new is True
        assert store.idempotency["k1"].status == IdempotencyStatus.PROCESSING
        assert store.idempotency["k1"].error is None

    @pytest.mark.asyncio
    async def test_expired_record_is_reopened(self, ledger, clock):
        await ledger.begin("k1", "A", OperationKind.BULK_PURCHASE)
        await ledger.complete("k1", _result("k1"))

        clock.advance(days=8)
        entry = await ledger.begin("k1", "A", OperationKind.BULK_PURCHASE)

        assert entry.is_new is True

    @pytest.mark.asyncio
    async def test_concurrent_retries_reopen_once(self, ledger):
        await ledger.begin("k1", "A", OperationKind.BULK_PURCHASE)
        await ledger.fail("k1", "INTERNAL_WRITE_FAILURE")

        results = await asyncio.gather(
            ledger.begin("k1", "A", OperationKind.BULK_PURCHASE),
            ledger.begin("k1", "A", OperationKind.BULK_PURCHASE),
            return_exceptions=True,
        )

        reopened = [r for r in results if not isinstance(r, Exception) and r.is_new]
        rejected = [r for r in results if isinstance(r, IdempotencyInProgressError)]
        assert len(reopened) == 1
        assert len(rejected) == 1

    @pytest.mark.asyncio
    async def test_finish_happens_once(self, ledger, store):
        await ledger.begin("k1", "A", OperationKind.BULK_PURCHASE)

        assert await ledger.complete("k1", _result("k1")) is True
        assert await ledger.fail("k1", "late failure") is False
        assert store.idempotency["k1"].status == IdempotencyStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_finish_requires_terminal_status(self, ledger):
        await ledger.begin("k1", "A", OperationKind.BULK_PURCHASE)

        with pytest.raises(ValueError):
            await ledger.finish("k1", IdempotencyStatus.PROCESSING)

    @pytest.mark.asyncio
    async def test_purge_expired_keeps_live_records(self, ledger, store, clock):
        await ledger.begin("old", "A", OperationKind.BULK_PURCHASE)
        await ledger.complete("old", _result("old"))
        clock.advance(days=8)
        await ledger.begin("new", "A", OperationKind.BULK_PURCHASE)
        await ledger.complete("new", _result("new"))

        purged = await ledger.purge_expired()

        assert purged == 1
        assert set(store.idempotency) == {"new"}

    @pytest.mark.asyncio
    async def test_fail_stale_releases_abandoned_attempts(self, ledger, clock):
        await ledger.begin("k1", "A", OperationKind.BULK_PURCHASE)
        clock.advance(minutes=10)

        assert await ledger.fail_stale(300) == 1

        entry = await ledger.begin("k1", "A", OperationKind.BULK_PURCHASE)
        assert entry.is_new is True
