"""
Unit tests for bulk purchases.
"""

import asyncio
from decimal import Decimal

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from shared.errors import ValidationError
from service_purchases.app.errors import (
    IdempotencyInProgressError, InternalWriteFailure, NothingToPurchaseError, PaymentDeclinedError
)
from service_purchases.app.models import EntitlementStatus, IdempotencyStatus, PaymentIntent


def _card(transaction_id="bulk-1", currency=None) -> PaymentIntent:
    return PaymentIntent(payment_method="card", transaction_id=transaction_id, currency=currency)


class TestBulkPurchase:
    """Test cases for PurchaseEngine.bulk_purchase."""

    @pytest.mark.asyncio
    async def test_mixed_outcomes(self, engine, store, payments):
        await engine.purchase("A", "Y", PaymentIntent(payment_method="card"))

        result = await engine.bulk_purchase("A", ["X", "Y", "Z"], _card())

        assert result.purchased_ids == ["X"]
        assert result.already_owned_ids == ["Y"]
        assert result.failed_ids == ["Z"]
        assert result.failed[0].code == "NOT_FOUND"
        assert result.total_amount == Decimal("100")
        assert result.refunded_amount == Decimal("0")
        assert payments.captures[-1]["amount"] == Decimal("100")
        assert result.payment_id == payments.captures[-1]["external_id"]

    @pytest.mark.asyncio
    async def test_identical_retry_replays_without_charging(self, engine, payments):
        first = await engine.bulk_purchase("A", ["X", "Y"], _card())
        second = await engine.bulk_purchase("A", ["Y", "X"], _card())

        assert len(payments.captures) == 1
        assert second.replayed is True
        assert second.bulk_id == first.bulk_id
        assert second.purchased_ids == first.purchased_ids
        assert second.total_amount == Decimal("150")

    @pytest.mark.asyncio
    async def test_new_transaction_id_is_a_new_operation(self, engine, payments):
        await engine.bulk_purchase("A", ["X"], _card("bulk-1"))
        result = await engine.bulk_purchase("A", ["X", "Y"], _card("bulk-2"))

        assert result.replayed is False
        assert result.already_owned_ids == ["X"]
        assert result.purchased_ids == ["Y"]
        assert result.total_amount == Decimal("50")
        assert len(payments.captures) == 2

    @pytest.mark.asyncio
    async def test_duplicate_ids_are_collapsed(self, engine, payments):
        result = await engine.bulk_purchase("A", ["X", "X", "Y"], _card())

        assert result.purchased_ids == ["X", "Y"]
        assert payments.captures[0]["amount"] == Decimal("150")

    @pytest.mark.asyncio
    async def test_entitlements_share_payment_and_bulk_id(self, engine, store):
        result = await engine.bulk_purchase("A", ["X", "Y"], _card())

        written = [e for e in store.entitlements.values() if e.bulk_id == result.bulk_id]
        assert len(written) == 2
        assert {e.payment_reference for e in written} == {result.payment_id}
        assert {e.transaction_id for e in written} == {f"{result.payment_id}:X", f"{result.payment_id}:Y"}
        assert all(e.status == EntitlementStatus.COMPLETED for e in written)
        assert store.actors["A"]["total_spent"] == Decimal("150")

    @pytest.mark.asyncio
    async def test_currency_mismatch_fails_item(self, engine):
        result = await engine.bulk_purchase("A", ["X", "W"], _card())

        assert result.purchased_ids == ["X"]
        assert result.failed[0].asset_id == "W"
        assert result.failed[0].code == "CURRENCY_MISMATCH"

    @pytest.mark.asyncio
    async def test_nothing_purchasable(self, engine, store, payments):
        await engine.purchase("A", "X", PaymentIntent(payment_method="card"))

        with pytest.raises(NothingToPurchaseError):
            await engine.bulk_purchase("A", ["X", "Z"], _card())

        assert len(payments.captures) == 1
        assert [r.status for r in store.idempotency.values()] == [IdempotencyStatus.FAILED]

    @pytest.mark.asyncio
    async def test_declined_bulk_can_be_retried(self, engine, payments):
        payments.decline_captures = True
        with pytest.raises(PaymentDeclinedError):
            await engine.bulk_purchase("A", ["X"], _card())

        payments.decline_captures = False
        result = await engine.bulk_purchase("A", ["X"], _card())

        assert result.purchased_ids == ["X"]
        assert result.replayed is False

    @pytest.mark.asyncio
    async def test_transaction_id_is_required(self, engine):
        with pytest.raises(ValidationError):
            await engine.bulk_purchase("A", ["X"], _card(transaction_id=None))

    @pytest.mark.asyncio
    async def test_empty_and_oversized_inputs_are_rejected(self, engine):
        with pytest.raises(ValidationError):
            await engine.bulk_purchase("A", [], _card())

        with pytest.raises(ValidationError):
            await engine.bulk_purchase("A", [f"asset-{i}" for i in range(11)], _card())

    @pytest.mark.asyncio
    async def test_failed_batch_is_retried_item_by_item(self, engine, store, payments, settings):
        for asset_id in ["B1", "B2", "B3", "B4", "B5"]:
            store.add_asset(asset_id, "10")
        store.fail_asset_ids.add("B3")

        result = await engine.bulk_purchase("A", ["B1", "B2", "B3", "B4", "B5"], _card())

        assert settings.bulk_batch_size == 2
        assert result.purchased_ids == ["B1", "B2", "B4", "B5"]
        assert result.failed_ids == ["B3"]
        assert result.failed[0].code == "INTERNAL_WRITE_FAILURE"
        assert result.total_amount == Decimal("40")
        assert result.refunded_amount == Decimal("10")
        assert payments.refunds == [{
            "refund_id": payments.refunds[0]["refund_id"],
            "external_id": result.payment_id,
            "amount": Decimal("10"),
            "reason": "bulk items not granted",
        }]
        assert store.actors["A"]["owned"] == {"B1", "B2", "B4", "B5"}

    @pytest.mark.asyncio
    async def test_nothing_written_refunds_everything(self, engine, store, payments):
        store.fail_all_writes = True

        with pytest.raises(InternalWriteFailure) as exc_info:
            await engine.bulk_purchase("A", ["X", "Y"], _card())

        assert exc_info.value.details["compensated"] is True
        assert payments.refunds[0]["amount"] == Decimal("150")
        assert [r.status for r in store.idempotency.values()] == [IdempotencyStatus.FAILED]

    @pytest.mark.asyncio
    async def test_concurrent_identical_requests_charge_once(self, engine, payments):
        results = await asyncio.gather(
            engine.bulk_purchase("A", ["X", "Y"], _card()),
            engine.bulk_purchase("A", ["X", "Y"], _card()),
            return_exceptions=True,
        )

        succeeded = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, IdempotencyInProgressError)]
        assert len(succeeded) == 1
        assert len(rejected) == 1
        assert len(payments.captures) == 1

    @pytest.mark.asyncio
    async def test_result_is_recorded_in_ledger(self, engine, store, metrics):
        result = await engine.bulk_purchase("A", ["X"], _card())

        record = store.idempotency[result.bulk_id]
        assert record.status == IdempotencyStatus.COMPLETED
        assert record.result["purchased_ids"] == ["X"]
        assert metrics.get_counter_value("bulk_items_total", outcome="purchased") == 1

    @pytest.mark.asyncio
    async def test_retry_after_full_refund_is_charged_again(self, http_engine, store, gateway_server):
        store.fail_all_writes = True
        with pytest.raises(InternalWriteFailure) as exc_info:
            await http_engine.bulk_purchase("A", ["X", "Y"], _card())
        store.fail_all_writes = False

        result = await http_engine.bulk_purchase("A", ["X", "Y"], _card())

        assert exc_info.value.details["payment_id"] == "pay_1"
        assert result.purchased_ids == ["X", "Y"]
        assert result.payment_id == "pay_2"
        assert [c["key"] for c in gateway_server.captures.values()] == [
            f"bulk:{result.bulk_id}", f"bulk:{result.bulk_id}:1"
        ]
        assert gateway_server.net_charged() == Decimal("150")

    @pytest.mark.asyncio
    async def test_partial_refund_does_not_move_the_key(self, engine, store):
        for asset_id in ["B1", "B2"]:
            store.add_asset(asset_id, "10")
        store.fail_asset_ids.add("B2")

        result = await engine.bulk_purchase("A", ["B1", "B2"], _card())

        assert result.refunded_amount == Decimal("10")
        assert store.compensations == []

    @pytest.mark.asyncio
    async def test_ledger_completion_is_retried(self, engine, ledger, store):
        with patch.object(ledger, "complete", AsyncMock(side_effect=[RuntimeError("db down"), True])) as complete:
            result = await engine.bulk_purchase("A", ["X"], _card())

        assert complete.await_count == 2
        assert result.purchased_ids == ["X"]
        assert store.completed_for("A", "X")

    @pytest.mark.asyncio
    async def test_unrecorded_result_is_flagged_for_sweep(self, engine, ledger, store):
        engine.logger = MagicMock()

        with patch.object(ledger, "complete", AsyncMock(side_effect=RuntimeError("db down"))) as complete:
            result = await engine.bulk_purchase("A", ["X"], _card())

        assert complete.await_count == 2
        assert result.purchased_ids == ["X"]
        assert store.idempotency[result.bulk_id].status == IdempotencyStatus.PROCESSING
        engine.logger.error.assert_called_once()
        assert engine.logger.error.call_args.kwargs["bulk_id"] == result.bulk_id
        assert "manual sweep" in engine.logger.error.call_args.args[0]
