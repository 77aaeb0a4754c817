"""
Storage contracts for the Purchases service.

The document/transaction store is the single source of truth. Implementations
must enforce the same uniqueness constraints as the PostgreSQL schema and
report violations as :class:`DuplicateRecordError`.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncContextManager, Dict, List, Optional, Sequence, Tuple

from ..models import (
    Asset, Entitlement, EntitlementStatus, IdempotencyRecord, IdempotencyStatus, PurchaseStats
)

# Constraint names shared by every store implementation
ACTIVE_ENTITLEMENT_CONSTRAINT = "uq_entitlements_active"
TRANSACTION_ID_CONSTRAINT = "uq_entitlements_transaction"
IDEMPOTENCY_KEY_CONSTRAINT = "idempotency_records_pkey"


class DuplicateRecordError(Exception):
    """A write violated a uniqueness constraint."""

    def __init__(self, constraint: str, message: str = ""):
        self.constraint = constraint
        super().__init__(message or f"unique constraint violated: {constraint}")


class AssetCatalog(ABC):
    """Read-only view of the asset catalog."""

    @abstractmethod
    async def get_asset(self, asset_id: str) -> Optional[Asset]:
        ...

    @abstractmethod
    async def get_assets(self, asset_ids: Sequence[str]) -> Dict[str, Asset]:
        """Return the assets that exist, keyed by id."""


class StoreTransaction(ABC):
    """Writes that must commit or abort together."""

    @abstractmethod
    async def retire_expired(self, actor_id: str, asset_ids: Sequence[str], now: datetime) -> int:
        """Cancel completed entitlements whose access window has ended."""

    @abstractmethod
    async def insert_entitlements(self, entitlements: Sequence[Entitlement]) -> None:
        ...

    @abstractmethod
    async def add_owned_assets(self, actor_id: str, asset_ids: Sequence[str], amount: Decimal, now: datetime) -> None:
        """Add assets to the actor's owned set and increase total spent."""

    @abstractmethod
    async def remove_owned_asset(self, actor_id: str, asset_id: str, amount: Decimal, now: datetime) -> None:
        """Remove an asset from the owned set and decrease total spent."""

    @abstractmethod
    async def increment_purchase_counts(self, asset_ids: Sequence[str]) -> None:
        ...

    @abstractmethod
    async def mark_refunded(
        self,
        entitlement_id: str,
        reason: str,
        refund_id: Optional[str],
        now: datetime,
    ) -> Optional[Entitlement]:
        """Transition completed -> refunded; ``None`` if it was not completed."""


class EntitlementStore(ABC):
    """Entitlement records and actor balances."""

    @abstractmethod
    def transaction(self) -> AsyncContextManager[StoreTransaction]:
        ...

    @abstractmethod
    async def get_entitlement(self, entitlement_id: str) -> Optional[Entitlement]:
        ...

    @abstractmethod
    async def find_active_entitlement(self, actor_id: str, asset_id: str, now: datetime) -> Optional[Entitlement]:
        ...

    @abstractmethod
    async def find_active_entitlements(
        self, actor_id: str, asset_ids: Sequence[str], now: datetime
    ) -> List[Entitlement]:
        ...

    @abstractmethod
    async def find_by_transaction(self, transaction_id: str) -> Optional[Entitlement]:
        ...

    @abstractmethod
    async def record_usage(
        self, entitlement_id: str, position: float, watched_delta: float, now: datetime
    ) -> Optional[Entitlement]:
        """Atomically apply a usage report to an active entitlement."""

    @abstractmethod
    async def list_entitlements(
        self,
        actor_id: str,
        status: Optional[EntitlementStatus] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[Entitlement], int]:
        ...

    @abstractmethod
    async def get_purchase_stats(self, actor_id: str) -> PurchaseStats:
        ...

    @abstractmethod
    async def record_compensation(
        self, capture_key: str, external_id: str, amount: Decimal, reason: str, now: datetime
    ) -> None:
        """Remember that the capture made under ``capture_key`` was refunded in full."""

    @abstractmethod
    async def count_compensations(self, capture_key: str) -> int:
        """Number of captures under ``capture_key`` that were refunded in full."""

    async def health_check(self) -> bool:
        return True


class IdempotencyStore(ABC):
    """Durable idempotency records."""

    @abstractmethod
    async def insert_idempotency_record(self, record: IdempotencyRecord) -> None:
        """Insert a record; raise DuplicateRecordError if the key exists."""

    @abstractmethod
    async def get_idempotency_record(self, key: str) -> Optional[IdempotencyRecord]:
        ...

    @abstractmethod
    async def reopen_idempotency_record(self, key: str, now: datetime, expires_at: datetime) -> bool:
        """Move a failed or expired record back to processing."""

    @abstractmethod
    async def finish_idempotency_record(
        self,
        key: str,
        status: IdempotencyStatus,
        result: Optional[Dict[str, Any]],
        error: Optional[str],
        now: datetime,
        expires_at: datetime,
    ) -> bool:
        """Move a processing record to a terminal status."""

    @abstractmethod
    async def purge_expired_idempotency_records(self, now: datetime) -> int:
        ...

    @abstractmethod
    async def fail_stale_idempotency_records(self, cutoff: datetime, now: datetime) -> int:
        """Mark processing records created before ``cutoff`` as failed."""
