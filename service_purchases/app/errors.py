"""
Error codes raised by the purchase engine.

Generic codes (validation, not found, rate limit) live in ``shared.errors``.
"""

from typing import Any, Dict, Optional

from shared.errors import EngineException


class DuplicateInFlightError(EngineException):
    """An identical request currently holds the lock."""

    http_status = 409
    retryable = True

    def __init__(self, message: str = "Duplicate request detected. Please wait.", details: Optional[Dict[str, Any]] = None):
        super().__init__("DUPLICATE_IN_FLIGHT", message, details)


class LockUnavailableError(EngineException):
    """The lock store could not be reached; the request is rejected."""

    http_status = 503
    retryable = True

    def __init__(self, message: str = "Lock store unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("LOCK_UNAVAILABLE", message, details)


class PaymentDeclinedError(EngineException):
    """The payment collaborator refused the capture. Nothing was written."""

    http_status = 402

    def __init__(self, message: str = "Payment declined", details: Optional[Dict[str, Any]] = None):
        super().__init__("PAYMENT_DECLINED", message, details)


class PaymentGatewayError(EngineException):
    """The payment collaborator could not be reached."""

    http_status = 503
    retryable = True

    def __init__(self, message: str = "Payment gateway unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("PAYMENT_GATEWAY_UNAVAILABLE", message, details)


class InternalWriteFailure(EngineException):
    """The entitlement write failed after payment; compensation was attempted."""

    http_status = 500

    def __init__(self, message: str = "Entitlement write failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("INTERNAL_WRITE_FAILURE", message, details)


class IdempotencyInProgressError(EngineException):
    """Another attempt with the same idempotency key has not finished."""

    http_status = 409
    retryable = True

    def __init__(self, message: str = "Request is still processing", details: Optional[Dict[str, Any]] = None):
        super().__init__("IDEMPOTENCY_IN_PROGRESS", message, details)


class NothingToPurchaseError(EngineException):
    """No bulk input was purchasable."""

    http_status = 422

    def __init__(self, message: str = "No purchasable assets", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOTHING_TO_PURCHASE", message, details)


class RefundNotAllowedError(EngineException):
    """Entitlement is not in a refundable state."""

    http_status = 409

    def __init__(self, message: str = "Only completed purchases can be refunded", details: Optional[Dict[str, Any]] = None):
        super().__init__("REFUND_NOT_ALLOWED", message, details)


class RefundWindowExpiredError(EngineException):
    """Refund requested after the refund window closed."""

    http_status = 409

    def __init__(self, message: str = "Refund window has expired", details: Optional[Dict[str, Any]] = None):
        super().__init__("REFUND_WINDOW_EXPIRED", message, details)


class RefundFailedError(EngineException):
    """The gateway refused or could not process the refund. Entitlement unchanged."""

    http_status = 502
    retryable = True

    def __init__(self, message: str = "Refund failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("REFUND_FAILED", message, details)


class AccessDeniedError(EngineException):
    """Entitlement exists but no longer grants access."""

    http_status = 403

    def __init__(self, message: str = "Entitlement is not active", details: Optional[Dict[str, Any]] = None):
        super().__init__("ACCESS_DENIED", message, details)
