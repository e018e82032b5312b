"""
Shipping Bridge Exception Hierarchy

All exceptions include code, message, and details for logging and for the
JSON error body returned to API clients. status_code is the HTTP status the
API layer responds with.

Exception Hierarchy:
    ShippingBridgeError
    ├── ShippingValidationError
    ├── OrderNotFoundError
    ├── ShipmentNotFoundError
    ├── ShipmentInProgressError
    ├── ShipmentPersistenceError
    ├── WebhookSignatureError
    └── CarrierError
        ├── CarrierNotConfiguredError
        ├── CarrierAuthError
        ├── CarrierInvalidRequestError
        ├── CarrierRemoteError
        └── CarrierUnreachableError
"""
from typing import Optional, Dict, Any


class ShippingBridgeError(Exception):
    """
    Base exception for all shipping bridge errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context (for carrier errors, the remote payload)
        severity: P0-P3 severity level
        status_code: HTTP status for the API response
    """

    default_code: str = "SHIPPING_ERROR"
    default_severity: str = "P2"
    status_code: int = 400

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


class ShippingValidationError(ShippingBridgeError):
    """Missing or malformed request fields."""
    default_code = "VALIDATION_ERROR"
    default_severity = "P3"


class OrderNotFoundError(ShippingBridgeError):
    default_code = "ORDER_NOT_FOUND"
    default_severity = "P3"
    status_code = 404

    def __init__(self, order_id: Any, **kwargs):
        details = kwargs.pop("details", {})
        details["order_id"] = order_id
        super().__init__("Order not found", details=details, **kwargs)


class ShipmentNotFoundError(ShippingBridgeError):
    default_code = "SHIPMENT_NOT_FOUND"
    default_severity = "P3"
    status_code = 404

    def __init__(self, order_id: Any, **kwargs):
        details = kwargs.pop("details", {})
        details["order_id"] = order_id
        super().__init__("No shipment found for this order", details=details, **kwargs)


class ShipmentInProgressError(ShippingBridgeError):
    """Another request holds the shipment reservation for this order."""
    default_code = "SHIPMENT_IN_PROGRESS"
    status_code = 409


class ShipmentPersistenceError(ShippingBridgeError):
    """Local shipment state could not be written; stored truth may diverge."""
    default_code = "SHIPMENT_PERSISTENCE_FAILED"
    default_severity = "P0"
    status_code = 500


class WebhookSignatureError(ShippingBridgeError):
    default_code = "INVALID_WEBHOOK_SIGNATURE"
    default_severity = "P1"
    status_code = 401


# =============================================================================
# CARRIER ERRORS
# =============================================================================

class CarrierError(ShippingBridgeError):
    """
    Base exception for Stallion Express API failures.

    retryable tells the caller whether repeating the same request may succeed.
    The client never retries on its own.
    """
    default_code = "CARRIER_ERROR"
    default_severity = "P1"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        remote_status: Optional[int] = None,
        **kwargs
    ):
        self.remote_status = remote_status
        super().__init__(message, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["remote_status"] = self.remote_status
        data["retryable"] = self.retryable
        return data


class CarrierNotConfiguredError(CarrierError):
    """No API key (or integration disabled); raised before any network I/O."""
    default_code = "CARRIER_NOT_CONFIGURED"
    default_severity = "P0"
    status_code = 503


class CarrierAuthError(CarrierError):
    """Carrier rejected our credentials (401/403)."""
    default_code = "CARRIER_UNAUTHENTICATED"
    default_severity = "P0"


class CarrierInvalidRequestError(CarrierError):
    """Carrier rejected the payload (400)."""
    default_code = "CARRIER_INVALID_REQUEST"
    default_severity = "P2"


class CarrierRemoteError(CarrierError):
    """Any other non-2xx response; the remote body is kept in details."""
    default_code = "CARRIER_REMOTE_ERROR"


class CarrierUnreachableError(CarrierError):
    """No response received (connection failure or timeout)."""
    default_code = "CARRIER_UNREACHABLE"
    status_code = 503
    retryable = True
