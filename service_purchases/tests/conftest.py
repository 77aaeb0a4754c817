"""
Shared fixtures for Purchases service tests.
"""

import asyncio
import copy
import json
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import fakeredis
import httpx
import pytest

from shared.config import get_config
from shared.metrics import MetricsCollector
from service_purchases.app.access.service import AccessService
from service_purchases.app.cache.redis_cache import AccessCache
from service_purchases.app.idempotency.ledger import IdempotencyLedger
from service_purchases.app.locking.redis_lock import RedisLockStore
from service_purchases.app.models import (
    ACTIVE_STATUSES, Asset, ChangedBy, Entitlement, EntitlementStatus, IdempotencyRecord,
    IdempotencyStatus, PurchaseStats, StatusChange, utcnow
)
from service_purchases.app.payments.client import HttpPaymentGateway, SandboxPaymentGateway
from service_purchases.app.persistence.base import (
    ACTIVE_ENTITLEMENT_CONSTRAINT, IDEMPOTENCY_KEY_CONSTRAINT, TRANSACTION_ID_CONSTRAINT,
    AssetCatalog, DuplicateRecordError, EntitlementStore, IdempotencyStore, StoreTransaction
)
from service_purchases.app.purchases.engine import PurchaseEngine
from service_purchases.app.purchases.side_effects import PostCommitActions
from service_purchases.app.ratelimit.window_limiter import FixedWindowRateLimiter


class MutableClock:
    """Clock whose time only moves when a test says so."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


class SimulatedWriteFailure(Exception):
    """Raised by the in-memory store when a write is set up to fail."""


class InMemoryTransaction(StoreTransaction):

    def __init__(self, store: "InMemoryStore"):
        self.store = store

    async def retire_expired(self, actor_id: str, asset_ids: Sequence[str], now: datetime) -> int:
        retired = 0
        for entitlement in self.store.entitlements.values():
            if (entitlement.actor_id == actor_id and entitlement.asset_id in asset_ids
                    and entitlement.status == EntitlementStatus.COMPLETED
                    and entitlement.expires_at is not None and entitlement.expires_at <= now):
                entitlement.status = EntitlementStatus.CANCELLED
                entitlement.cancelled_at = now
                entitlement.status_history.append(
                    StatusChange(EntitlementStatus.CANCELLED, now, "access expired")
                )
                retired += 1
        return retired

    async def insert_entitlements(self, entitlements: Sequence[Entitlement]) -> None:
        await asyncio.sleep(self.store.latency)
        for entitlement in entitlements:
            if self.store.fail_all_writes or entitlement.asset_id in self.store.fail_asset_ids:
                raise SimulatedWriteFailure(f"write failed for {entitlement.asset_id}")
            for existing in self.store.entitlements.values():
                if entitlement.transaction_id and existing.transaction_id == entitlement.transaction_id:
                    raise DuplicateRecordError(TRANSACTION_ID_CONSTRAINT)
                if (entitlement.status in ACTIVE_STATUSES and existing.status in ACTIVE_STATUSES
                        and existing.actor_id == entitlement.actor_id
                        and existing.asset_id == entitlement.asset_id):
                    raise DuplicateRecordError(ACTIVE_ENTITLEMENT_CONSTRAINT)
            self.store.entitlements[entitlement.entitlement_id] = copy.deepcopy(entitlement)

    async def add_owned_assets(self, actor_id: str, asset_ids: Sequence[str], amount: Decimal, now: datetime) -> None:
        actor = self.store.actors.setdefault(actor_id, {"total_spent": Decimal("0"), "owned": set()})
        actor["total_spent"] += amount
        actor["owned"].update(asset_ids)

    async def remove_owned_asset(self, actor_id: str, asset_id: str, amount: Decimal, now: datetime) -> None:
        actor = self.store.actors.get(actor_id)
        if actor is None:
            return
        actor["total_spent"] = max(Decimal("0"), actor["total_spent"] - amount)
        actor["owned"].discard(asset_id)

    async def increment_purchase_counts(self, asset_ids: Sequence[str]) -> None:
        for asset_id in asset_ids:
            if asset_id in self.store.assets:
                self.store.assets[asset_id].purchase_count += 1

    async def mark_refunded(
        self,
        entitlement_id: str,
        reason: str,
        refund_id: Optional[str],
        now: datetime,
    ) -> Optional[Entitlement]:
        entitlement = self.store.entitlements.get(entitlement_id)
        if entitlement is None or entitlement.status != EntitlementStatus.COMPLETED:
            return None
        if self.store.fail_refund_writes:
            raise SimulatedWriteFailure("refund write failed")
        entitlement.status = EntitlementStatus.REFUNDED
        entitlement.refunded_at = now
        entitlement.refund_reason = reason
        entitlement.status_history.append(StatusChange(EntitlementStatus.REFUNDED, now, reason, ChangedBy.USER))
        entitlement.metadata["refund_id"] = refund_id
        return copy.deepcopy(entitlement)


class InMemoryStore(EntitlementStore, IdempotencyStore, AssetCatalog):
    """Dict-backed store with the same uniqueness rules as the PostgreSQL schema.

    Transactions are serialized and roll back every change on error. Every
    read and write yields to the event loop so concurrent callers interleave.
    """

    def __init__(self):
        self.assets: Dict[str, Asset] = {}
        self.entitlements: Dict[str, Entitlement] = {}
        self.actors: Dict[str, Dict[str, Any]] = {}
        self.idempotency: Dict[str, IdempotencyRecord] = {}
        self.compensations: List[Dict[str, Any]] = []
        self.latency = 0
        self.fail_all_writes = False
        self.fail_refund_writes = False
        self.fail_asset_ids: Set[str] = set()
        self._lock = asyncio.Lock()

    def add_asset(self, asset_id: str, price: str, currency: str = "THB", **fields: Any) -> Asset:
        asset = Asset(asset_id=asset_id, price=Decimal(price), currency=currency, title=asset_id, **fields)
        self.assets[asset_id] = asset
        return asset

    def completed_for(self, actor_id: str, asset_id: str) -> List[Entitlement]:
        return [
            e for e in self.entitlements.values()
            if e.actor_id == actor_id and e.asset_id == asset_id and e.status == EntitlementStatus.COMPLETED
        ]

    @asynccontextmanager
    async def transaction(self):
        async with self._lock:
            snapshot = copy.deepcopy((self.entitlements, self.actors, self.assets))
            try:
                yield InMemoryTransaction(self)
            except BaseException:
                self.entitlements, self.actors, self.assets = snapshot
                raise

    async def get_asset(self, asset_id: str) -> Optional[Asset]:
        await asyncio.sleep(self.latency)
        return copy.deepcopy(self.assets.get(asset_id))

    async def get_assets(self, asset_ids: Sequence[str]) -> Dict[str, Asset]:
        await asyncio.sleep(self.latency)
        return {asset_id: copy.deepcopy(self.assets[asset_id]) for asset_id in asset_ids if asset_id in self.assets}

    async def get_entitlement(self, entitlement_id: str) -> Optional[Entitlement]:
        await asyncio.sleep(self.latency)
        return copy.deepcopy(self.entitlements.get(entitlement_id))

    async def find_active_entitlement(self, actor_id: str, asset_id: str, now: datetime) -> Optional[Entitlement]:
        found = await self.find_active_entitlements(actor_id, [asset_id], now)
        return found[0] if found else None

    async def find_active_entitlements(
        self, actor_id: str, asset_ids: Sequence[str], now: datetime
    ) -> List[Entitlement]:
        await asyncio.sleep(self.latency)
        return [
            copy.deepcopy(e) for e in self.entitlements.values()
            if e.actor_id == actor_id and e.asset_id in asset_ids and e.is_active(now)
        ]

    async def find_by_transaction(self, transaction_id: str) -> Optional[Entitlement]:
        await asyncio.sleep(self.latency)
        for entitlement in self.entitlements.values():
            if entitlement.transaction_id == transaction_id:
                return copy.deepcopy(entitlement)
        return None

    async def record_usage(
        self, entitlement_id: str, position: float, watched_delta: float, now: datetime
    ) -> Optional[Entitlement]:
        # No await before the update: it is atomic like the single SQL statement
        entitlement = self.entitlements.get(entitlement_id)
        if entitlement is None or not entitlement.is_active(now):
            return None
        entitlement.access_count += 1
        entitlement.watch_duration += watched_delta
        entitlement.last_playback_position = max(entitlement.last_playback_position, position)
        entitlement.last_accessed_at = now
        asset = self.assets.get(entitlement.asset_id)
        if asset is not None and asset.duration_seconds:
            rate = min(100, round(entitlement.watch_duration * 100 / asset.duration_seconds))
            entitlement.completion_rate = max(entitlement.completion_rate, rate)
        return copy.deepcopy(entitlement)

    async def list_entitlements(
        self,
        actor_id: str,
        status: Optional[EntitlementStatus] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[Entitlement], int]:
        matches = [
            e for e in self.entitlements.values()
            if e.actor_id == actor_id
            and (status is None or e.status == status)
            and (from_date is None or e.purchase_date >= from_date)
            and (to_date is None or e.purchase_date <= to_date)
        ]
        matches.sort(key=lambda e: e.purchase_date, reverse=True)
        return [copy.deepcopy(e) for e in matches[offset:offset + limit]], len(matches)

    async def get_purchase_stats(self, actor_id: str) -> PurchaseStats:
        mine = [e for e in self.entitlements.values() if e.actor_id == actor_id]
        completed = [e for e in mine if e.status == EntitlementStatus.COMPLETED]
        total_all = sum((e.amount for e in mine), Decimal("0"))
        return PurchaseStats(
            total_spent=sum((e.amount for e in completed), Decimal("0")),
            total_purchases=len(mine),
            completed_purchases=len(completed),
            refunded_purchases=len([e for e in mine if e.status == EntitlementStatus.REFUNDED]),
            average_purchase=(total_all / len(mine)).quantize(Decimal("0.01")) if mine else Decimal("0"),
        )

    async def record_compensation(
        self, capture_key: str, external_id: str, amount: Decimal, reason: str, now: datetime
    ) -> None:
        await asyncio.sleep(self.latency)
        self.compensations.append({
            "capture_key": capture_key,
            "external_id": external_id,
            "amount": amount,
            "reason": reason,
            "created_at": now,
        })

    async def count_compensations(self, capture_key: str) -> int:
        await asyncio.sleep(self.latency)
        return len([c for c in self.compensations if c["capture_key"] == capture_key])

    async def insert_idempotency_record(self, record: IdempotencyRecord) -> None:
        await asyncio.sleep(self.latency)
        if record.key in self.idempotency:
            raise DuplicateRecordError(IDEMPOTENCY_KEY_CONSTRAINT)
        self.idempotency[record.key] = copy.deepcopy(record)

    async def get_idempotency_record(self, key: str) -> Optional[IdempotencyRecord]:
        await asyncio.sleep(self.latency)
        return copy.deepcopy(self.idempotency.get(key))

    async def reopen_idempotency_record(self, key: str, now: datetime, expires_at: datetime) -> bool:
        await asyncio.sleep(self.latency)
        record = self.idempotency.get(key)
        if record is None or not (record.status == IdempotencyStatus.FAILED or record.expires_at <= now):
            return False
        record.status = IdempotencyStatus.PROCESSING
        record.result = None
        record.error = None
        record.completed_at = None
        record.failed_at = None
        record.created_at = now
        record.expires_at = expires_at
        return True

    async def finish_idempotency_record(
        self,
        key: str,
        status: IdempotencyStatus,
        result: Optional[Dict[str, Any]],
        error: Optional[str],
        now: datetime,
        expires_at: datetime,
    ) -> bool:
        record = self.idempotency.get(key)
        if record is None or record.status != IdempotencyStatus.PROCESSING:
            return False
        record.status = status
        record.result = copy.deepcopy(result)
        record.error = error
        record.completed_at = now if status == IdempotencyStatus.COMPLETED else None
        record.failed_at = now if status == IdempotencyStatus.FAILED else None
        record.expires_at = expires_at
        return True

    async def purge_expired_idempotency_records(self, now: datetime) -> int:
        expired = [
            key for key, record in self.idempotency.items()
            if record.expires_at <= now and record.status != IdempotencyStatus.PROCESSING
        ]
        for key in expired:
            del self.idempotency[key]
        return len(expired)

    async def fail_stale_idempotency_records(self, cutoff: datetime, now: datetime) -> int:
        stale = [
            record for record in self.idempotency.values()
            if record.status == IdempotencyStatus.PROCESSING and record.created_at < cutoff
        ]
        for record in stale:
            record.status = IdempotencyStatus.FAILED
            record.error = "stale processing record"
            record.failed_at = now
        return len(stale)


class KeyedGatewayServer:
    """HTTP gateway stand-in that applies each Idempotency-Key once.

    A repeated key gets the first response back, whatever happened to the
    payment since. Plug it into ``httpx.MockTransport``.
    """

    def __init__(self):
        self.captures: Dict[str, Dict[str, Any]] = {}
        self.refunds: List[Dict[str, Any]] = []
        self._responses: Dict[str, Dict[str, Any]] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        key = request.headers.get("Idempotency-Key")
        if key and key in self._responses:
            return httpx.Response(200, json=self._responses[key])

        body = json.loads(request.content)
        if request.url.path == "/payments/capture":
            payment_id = f"pay_{len(self.captures) + 1}"
            self.captures[payment_id] = {"amount": Decimal(body["amount"]), "key": key}
            data = {"id": payment_id, "status": "succeeded", "gateway": "TEST"}
        else:
            refund_id = f"ref_{len(self.refunds) + 1}"
            self.refunds.append({
                "refund_id": refund_id,
                "payment_id": body["payment_id"],
                "amount": Decimal(body["amount"]),
                "key": key,
            })
            data = {"id": refund_id, "status": "succeeded"}

        if key:
            self._responses[key] = data
        return httpx.Response(200, json=data)

    def refunded_amount(self, payment_id: str) -> Decimal:
        return sum((r["amount"] for r in self.refunds if r["payment_id"] == payment_id), Decimal("0"))

    def net_charged(self) -> Decimal:
        captured = sum((c["amount"] for c in self.captures.values()), Decimal("0"))
        return captured - sum((r["amount"] for r in self.refunds), Decimal("0"))


@pytest.fixture
def settings():
    """Service configuration with small bulk batches."""
    return get_config("purchases", 8013, bulk_batch_size=2, bulk_max_items=10)


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def store():
    """In-memory store seeded with a small catalog.

    X 100 THB, Y 50 THB, Z inactive, W priced in USD, R one-hour rental,
    V a 100 second video.
    """
    store = InMemoryStore()
    store.add_asset("X", "100")
    store.add_asset("Y", "50")
    store.add_asset("Z", "30", active=False)
    store.add_asset("W", "20", currency="USD")
    store.add_asset("R", "40", access_duration_seconds=3600)
    store.add_asset("V", "60", duration_seconds=100)
    return store


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
def redis_client(redis_server):
    return fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)


@pytest.fixture
def metrics():
    return MetricsCollector("purchases")


@pytest.fixture
def payments():
    return SandboxPaymentGateway()


@pytest.fixture
def lock_store(redis_client):
    return RedisLockStore(redis_client, default_ttl=15)


@pytest.fixture
def rate_limiter(redis_client):
    return FixedWindowRateLimiter(redis_client, {"purchase": 3, "default": 5}, window_seconds=60)


@pytest.fixture
def access_cache(redis_client):
    return AccessCache(redis_client, default_ttl=300)


@pytest.fixture
def side_effects(access_cache, metrics):
    return PostCommitActions(access_cache, metrics, retry_delay=0)


@pytest.fixture
def ledger(store, metrics, clock):
    return IdempotencyLedger(store, retention_days=7, metrics=metrics, clock=clock)


@pytest.fixture
def engine(store, payments, ledger, side_effects, settings, metrics, clock):
    return PurchaseEngine(store, store, payments, ledger, side_effects, settings, metrics, clock)


@pytest.fixture
def access_service(store, payments, side_effects, settings, access_cache, metrics, clock):
    return AccessService(store, payments, side_effects, settings, access_cache, metrics, clock)


@pytest.fixture
def gateway_server():
    return KeyedGatewayServer()


@pytest.fixture
def http_payments(gateway_server):
    client = httpx.AsyncClient(base_url="http://payments.local", transport=httpx.MockTransport(gateway_server))
    return HttpPaymentGateway("http://payments.local", client=client)


@pytest.fixture
def http_engine(store, http_payments, ledger, side_effects, settings, metrics, clock):
    """Engine wired to the key-replaying HTTP gateway."""
    return PurchaseEngine(store, store, http_payments, ledger, side_effects, settings, metrics, clock)


@pytest.fixture
def http_access_service(store, http_payments, side_effects, settings, access_cache, metrics, clock):
    return AccessService(store, http_payments, side_effects, settings, access_cache, metrics, clock)
