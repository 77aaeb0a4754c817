"""
Data models for the Purchases service.

Domain records are plain dataclasses; request/response payloads and
idempotency results are pydantic models.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, Field, computed_field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntitlementStatus(str, Enum):
    """Entitlement lifecycle states."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


# Statuses covered by the one-per-(actor, asset) uniqueness constraint
ACTIVE_STATUSES = (EntitlementStatus.COMPLETED, EntitlementStatus.PROCESSING)


class ChangedBy(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ADMIN = "admin"
    GATEWAY = "gateway"


class IdempotencyStatus(str, Enum):
    """Idempotency record states."""
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class OperationKind(str, Enum):
    """Operations tracked by the idempotency ledger."""
    BULK_PURCHASE = "bulk_purchase"


@dataclass
class StatusChange:
    """One entry of an entitlement's status history."""
    status: EntitlementStatus
    changed_at: datetime
    reason: str = ""
    changed_by: ChangedBy = ChangedBy.SYSTEM

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "changed_at": self.changed_at.isoformat(),
            "reason": self.reason,
            "changed_by": self.changed_by.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StatusChange":
        return cls(
            status=EntitlementStatus(data["status"]),
            changed_at=datetime.fromisoformat(data["changed_at"]),
            reason=data.get("reason", ""),
            changed_by=ChangedBy(data.get("changed_by", "system")),
        )


@dataclass
class Entitlement:
    """One actor's paid right to one asset."""
    entitlement_id: str
    actor_id: str
    asset_id: str
    amount: Decimal
    currency: str
    payment_method: str
    status: EntitlementStatus
    purchase_date: datetime
    expires_at: Optional[datetime] = None
    transaction_id: Optional[str] = None
    payment_reference: Optional[str] = None
    bulk_id: Optional[str] = None
    access_count: int = 0
    last_accessed_at: Optional[datetime] = None
    last_playback_position: float = 0.0
    watch_duration: float = 0.0
    completion_rate: int = 0
    refunded_at: Optional[datetime] = None
    refund_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    status_history: List[StatusChange] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.amount < 0:
            raise ValueError("amount must be non-negative")
        if self.expires_at is not None and self.expires_at <= self.purchase_date:
            raise ValueError("expires_at must be after purchase_date")

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return self.status == EntitlementStatus.COMPLETED and not self.is_expired(now)

    def remaining_seconds(self, now: Optional[datetime] = None) -> Optional[float]:
        """Seconds of access left; ``None`` for perpetual access."""
        if self.expires_at is None:
            return None
        return max(0.0, (self.expires_at - (now or utcnow())).total_seconds())


@dataclass
class Asset:
    """Catalog view of a purchasable asset."""
    asset_id: str
    price: Decimal
    currency: str
    active: bool = True
    ready: bool = True
    title: str = ""
    access_duration_seconds: Optional[int] = None
    duration_seconds: Optional[int] = None
    purchase_count: int = 0

    @property
    def purchasable(self) -> bool:
        return self.active and self.ready


@dataclass
class PaymentIntent:
    """How the caller wants to pay."""
    payment_method: str
    transaction_id: Optional[str] = None
    currency: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CaptureResult:
    """Outcome of a payment capture."""
    success: bool
    external_id: Optional[str] = None
    gateway: Optional[str] = None
    method: Optional[str] = None
    captured_at: Optional[datetime] = None
    reason: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class RefundResult:
    """Outcome of a payment refund."""
    success: bool
    refund_id: Optional[str] = None
    reason: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class PurchaseOutcome:
    """Result of a single purchase."""
    entitlement: Entitlement
    already_owned: bool = False
    payment: Optional[CaptureResult] = None


@dataclass
class IdempotencyRecord:
    """One logical operation attempt tracked by the ledger."""
    key: str
    actor_id: str
    operation: OperationKind
    status: IdempotencyStatus
    created_at: datetime
    expires_at: datetime
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None


@dataclass
class PurchaseStats:
    """Per-actor purchase aggregates."""
    total_spent: Decimal = Decimal("0")
    total_purchases: int = 0
    completed_purchases: int = 0
    refunded_purchases: int = 0
    average_purchase: Decimal = Decimal("0")


# ---------------------------------------------------------------------------
# Operation results (stored in the idempotency ledger)
# ---------------------------------------------------------------------------

class FailedItem(BaseModel):
    """A bulk input that could not be purchased."""
    asset_id: str
    code: str
    message: str


class BulkPurchaseResult(BaseModel):
    """Per-item outcome of a bulk purchase."""
    kind: Literal["bulk_purchase"] = "bulk_purchase"
    bulk_id: str
    purchased_ids: List[str] = []
    already_owned_ids: List[str] = []
    failed: List[FailedItem] = []
    total_amount: Decimal = Decimal("0")
    currency: str
    payment_id: Optional[str] = None
    refunded_amount: Decimal = Decimal("0")
    replayed: bool = False

    @computed_field
    @property
    def failed_ids(self) -> List[str]:
        return [item.asset_id for item in self.failed]


# Result model per ledger operation; every OperationKind must have an entry
RESULT_MODELS: Dict[OperationKind, Type[BaseModel]] = {
    OperationKind.BULK_PURCHASE: BulkPurchaseResult,
}


def decode_result(kind: OperationKind, payload: Dict[str, Any]) -> BaseModel:
    """Rebuild a stored operation result."""
    return RESULT_MODELS[kind].model_validate(payload)


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------

class PurchaseRequest(BaseModel):
    """Single purchase request body."""
    payment_method: str = Field(..., min_length=1)
    transaction_id: Optional[str] = None
    currency: Optional[str] = None


class BulkPurchaseRequest(BaseModel):
    """Bulk purchase request body."""
    asset_ids: List[str] = Field(..., min_length=1)
    payment_method: str = Field(..., min_length=1)
    transaction_id: str = Field(..., min_length=1)
    currency: Optional[str] = None


class UsageRequest(BaseModel):
    """Playback progress report."""
    position: float = Field(..., ge=0)
    watched_delta: float = Field(0, ge=0)


class RefundRequest(BaseModel):
    """Refund request body."""
    reason: str = "Customer request"


class EntitlementResponse(BaseModel):
    """Client-facing view of an entitlement."""
    entitlement_id: str
    asset_id: str
    amount: Decimal
    currency: str
    status: EntitlementStatus
    purchased_at: datetime
    expires_at: Optional[datetime] = None
    is_expired: bool
    remaining_seconds: Optional[float] = None
    access_count: int
    last_accessed_at: Optional[datetime] = None
    last_playback_position: float
    completion_rate: int
    bulk_id: Optional[str] = None

    @classmethod
    def from_entitlement(cls, entitlement: Entitlement, now: Optional[datetime] = None) -> "EntitlementResponse":
        now = now or utcnow()
        return cls(
            entitlement_id=entitlement.entitlement_id,
            asset_id=entitlement.asset_id,
            amount=entitlement.amount,
            currency=entitlement.currency,
            status=entitlement.status,
            purchased_at=entitlement.purchase_date,
            expires_at=entitlement.expires_at,
            is_expired=entitlement.is_expired(now),
            remaining_seconds=entitlement.remaining_seconds(now),
            access_count=entitlement.access_count,
            last_accessed_at=entitlement.last_accessed_at,
            last_playback_position=entitlement.last_playback_position,
            completion_rate=entitlement.completion_rate,
            bulk_id=entitlement.bulk_id,
        )


class PurchaseResponse(BaseModel):
    """Single purchase response."""
    success: bool = True
    already_owned: bool
    entitlement: EntitlementResponse
    payment_id: Optional[str] = None
    gateway: Optional[str] = None


class AccessCheck(BaseModel):
    """Access decision for one (actor, asset)."""
    has_access: bool
    entitlement_id: Optional[str] = None
    purchased_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    remaining_seconds: Optional[float] = None
    days_remaining: Optional[int] = None


class EntitlementListResponse(BaseModel):
    """Paginated purchase history."""
    entitlements: List[EntitlementResponse]
    total: int
    page: int
    limit: int
    total_pages: int
