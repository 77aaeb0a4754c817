"""
Payment collaborator clients.

The engine never captures money itself; it calls a :class:`PaymentGateway`.
A decline is a normal result (``success=False``); an unreachable gateway
raises :class:`PaymentGatewayError`.
"""

import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx

from shared.logging import get_logger
from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.retry import RetryConfig, RetryError, retry_on_exception
from ..errors import PaymentGatewayError
from ..models import CaptureResult, RefundResult, utcnow


class PaymentGateway(ABC):
    """Payment collaborator contract."""

    async def start(self):
        """Open pooled resources."""

    async def stop(self):
        """Release pooled resources."""

    @abstractmethod
    async def capture(
        self,
        amount: Decimal,
        currency: str,
        actor_ref: str,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        method: Optional[str] = None,
    ) -> CaptureResult:
        """Capture ``amount``. Raises PaymentGatewayError on transport failure."""

    @abstractmethod
    async def refund(
        self,
        external_id: str,
        amount: Decimal,
        reason: str,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        """Refund part or all of a capture. Raises PaymentGatewayError on transport failure.

        Refunds sharing ``idempotency_key`` are applied once. Several refunds
        against one capture must therefore use distinct keys.
        """

    async def health_check(self) -> bool:
        return True


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class HttpPaymentGateway(PaymentGateway):
    """Client for an HTTP payment gateway."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.logger = get_logger("purchases.payments.http")
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=3,
            recovery_timeout=30.0,
            name="payment_gateway"
        )
        self._client = client
        self._owns_client = client is None

    async def start(self):
        if self._client is None:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, headers=headers)
            self._owns_client = True

    async def stop(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # Connection errors happen before the request is sent; captures also carry an idempotency key
    @retry_on_exception((httpx.ConnectError,), config=RetryConfig(max_attempts=3, base_delay=0.5, max_delay=5.0))
    async def _post(self, path: str, payload: Dict[str, Any], idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        if self._client is None:
            await self.start()
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}
        response = await self._client.post(path, json=payload, headers=headers)
        # 4xx bodies describe declines; 5xx means the gateway itself failed
        if response.status_code >= 500:
            response.raise_for_status()
        return response.json()

    async def _call(self, path: str, payload: Dict[str, Any], idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        try:
            return await self.circuit_breaker.call(self._post, path, payload, idempotency_key)
        except (httpx.HTTPError, RetryError, CircuitBreakerOpenException, ValueError) as e:
            self.logger.error("Payment gateway call failed", path=path, error=str(e))
            raise PaymentGatewayError(details={"path": path, "error": str(e), "retry_after": 5}) from e

    async def capture(
        self,
        amount: Decimal,
        currency: str,
        actor_ref: str,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        method: Optional[str] = None,
    ) -> CaptureResult:
        data = await self._call("/payments/capture", {
            "amount": str(amount),
            "currency": currency,
            "customer_id": actor_ref,
            "description": description,
            "payment_method": method,
            "metadata": metadata or {},
        }, idempotency_key)

        if data.get("status") != "succeeded":
            self.logger.info("Payment declined", reason=data.get("failure_reason"), code=data.get("failure_code"))
            return CaptureResult(
                success=False,
                reason=data.get("failure_reason", "declined"),
                error_code=data.get("failure_code"),
            )

        return CaptureResult(
            success=True,
            external_id=data["id"],
            gateway=data.get("gateway"),
            method=data.get("payment_method", method),
            captured_at=_parse_timestamp(data.get("captured_at")) or utcnow(),
        )

    async def refund(
        self,
        external_id: str,
        amount: Decimal,
        reason: str,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        data = await self._call("/payments/refund", {
            "payment_id": external_id,
            "amount": str(amount),
            "reason": reason,
        }, idempotency_key or f"refund:{external_id}:{uuid.uuid4().hex}")

        if data.get("status") != "succeeded":
            return RefundResult(
                success=False,
                reason=data.get("failure_reason", "refund failed"),
                error_code=data.get("failure_code"),
            )
        return RefundResult(success=True, refund_id=data.get("id"))

    async def health_check(self) -> bool:
        return not self.circuit_breaker.is_open()


class SandboxPaymentGateway(PaymentGateway):
    """In-process gateway for local runs and tests.

    Declines non-positive amounts and amounts above ``max_amount``. Captures
    sharing an idempotency key return the same payment id, even after the
    capture was refunded; refunds sharing a key are applied once.
    """

    def __init__(self, max_amount: Decimal = Decimal("50000")):
        self.max_amount = max_amount
        self.logger = get_logger("purchases.payments.sandbox")
        self.captures: List[Dict[str, Any]] = []
        self.refunds: List[Dict[str, Any]] = []
        self._by_idempotency_key: Dict[str, CaptureResult] = {}
        self._refunds_by_key: Dict[str, RefundResult] = {}

        # Failure switches for tests
        self.decline_captures = False
        self.capture_unavailable = False
        self.decline_refunds = False
        self.refund_unavailable = False

    async def capture(
        self,
        amount: Decimal,
        currency: str,
        actor_ref: str,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        method: Optional[str] = None,
    ) -> CaptureResult:
        if self.capture_unavailable:
            raise PaymentGatewayError(details={"error": "sandbox gateway unavailable"})
        if idempotency_key and idempotency_key in self._by_idempotency_key:
            return self._by_idempotency_key[idempotency_key]

        if amount <= 0:
            return CaptureResult(success=False, reason="Invalid amount", error_code="INVALID_AMOUNT")
        if amount > self.max_amount:
            return CaptureResult(success=False, reason="Insufficient funds", error_code="INSUFFICIENT_FUNDS")
        if self.decline_captures:
            return CaptureResult(success=False, reason="Card declined", error_code="CARD_DECLINED")

        result = CaptureResult(
            success=True,
            external_id=f"pay_{uuid.uuid4().hex[:16]}",
            gateway="SANDBOX",
            method=method or "credit_card",
            captured_at=utcnow(),
        )
        self.captures.append({
            "external_id": result.external_id,
            "amount": amount,
            "currency": currency,
            "actor_ref": actor_ref,
            "description": description,
            "metadata": metadata or {},
        })
        if idempotency_key:
            self._by_idempotency_key[idempotency_key] = result
        self.logger.info("Sandbox capture", external_id=result.external_id, amount=str(amount))
        return result

    async def refund(
        self,
        external_id: str,
        amount: Decimal,
        reason: str,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        if self.refund_unavailable:
            raise PaymentGatewayError(details={"error": "sandbox gateway unavailable"})
        if idempotency_key and idempotency_key in self._refunds_by_key:
            return self._refunds_by_key[idempotency_key]
        if self.decline_refunds:
            return RefundResult(success=False, reason="Refund processing failed", error_code="REFUND_FAILED")

        refund_id = f"ref_{uuid.uuid4().hex[:16]}"
        self.refunds.append({
            "refund_id": refund_id,
            "external_id": external_id,
            "amount": amount,
            "reason": reason,
        })
        result = RefundResult(success=True, refund_id=refund_id)
        if idempotency_key:
            self._refunds_by_key[idempotency_key] = result
        self.logger.info("Sandbox refund", external_id=external_id, amount=str(amount))
        return result

    def captured_amount(self, external_id: str) -> Decimal:
        return sum((c["amount"] for c in self.captures if c["external_id"] == external_id), Decimal("0"))

    def refunded_amount(self, external_id: str) -> Decimal:
        return sum((r["amount"] for r in self.refunds if r["external_id"] == external_id), Decimal("0"))
