"""
Vinclub Exception Hierarchy

All exceptions carry code, message, details and severity so they can be
logged and serialized uniformly.

Exception Hierarchy:
    VinclubError
    ├── WebhookError
    │   ├── InvalidSignature
    │   ├── ExpiredTimestamp
    │   └── MalformedPayload
    ├── SubscriptionError
    │   └── SubscriptionNotFound
    ├── FulfillmentError
    │   └── ShipmentNotFound
    └── CarrierError
        ├── CarrierUnavailable
        ├── CarrierRejected
        └── UnsupportedCarrier

Duplicate events, unmodeled transitions and short stock are outcomes,
not exceptions. They are recorded on the ledger or the shipment.
"""
from typing import Optional, Dict, Any


class VinclubError(Exception):
    """
    Base exception for all Vinclub errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
        severity: P0-P3 severity level
    """

    default_code: str = "VINCLUB_ERROR"
    default_severity: str = "P2"

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


# =============================================================================
# WEBHOOK ERRORS
# =============================================================================

class WebhookError(VinclubError):
    """Inbound billing event rejected at the boundary."""
    default_code = "WEBHOOK_REJECTED"
    default_severity = "P1"


class InvalidSignature(WebhookError):
    default_code = "WEBHOOK_INVALID_SIGNATURE"


class ExpiredTimestamp(WebhookError):
    """Signed timestamp falls outside the replay tolerance window."""
    default_code = "WEBHOOK_EXPIRED_TIMESTAMP"

    def __init__(self, message: str, timestamp: Optional[int] = None, tolerance: Optional[int] = None, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"timestamp": timestamp, "tolerance": tolerance})
        super().__init__(message, details=details, **kwargs)


class MalformedPayload(WebhookError):
    default_code = "WEBHOOK_MALFORMED_PAYLOAD"
    default_severity = "P2"


# =============================================================================
# SUBSCRIPTION ERRORS
# =============================================================================

class SubscriptionError(VinclubError):
    default_code = "SUBSCRIPTION_ERROR"


class SubscriptionNotFound(SubscriptionError):
    default_code = "SUBSCRIPTION_NOT_FOUND"
    default_severity = "P3"

    def __init__(self, subscription_id: Any, **kwargs):
        details = kwargs.pop("details", {})
        details["subscription_id"] = subscription_id
        super().__init__(f"Subscription {subscription_id} not found", details=details, **kwargs)


# =============================================================================
# FULFILLMENT ERRORS
# =============================================================================

class FulfillmentError(VinclubError):
    default_code = "FULFILLMENT_ERROR"
    default_severity = "P1"


class ShipmentNotFound(FulfillmentError):
    default_code = "SHIPMENT_NOT_FOUND"
    default_severity = "P3"

    def __init__(self, shipment_id: Any, **kwargs):
        details = kwargs.pop("details", {})
        details["shipment_id"] = shipment_id
        super().__init__(f"Shipment {shipment_id} not found", details=details, **kwargs)


# =============================================================================
# CARRIER ERRORS
# =============================================================================

class CarrierError(VinclubError):
    """Base exception for carrier gateway errors."""
    default_code = "CARRIER_ERROR"
    retriable: bool = False

    def __init__(self, message: str, carrier: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["carrier"] = carrier
        self.carrier = carrier
        super().__init__(message, details=details, **kwargs)


class CarrierUnavailable(CarrierError):
    """Timeout, connection failure or 5xx. Safe to retry later."""
    default_code = "CARRIER_UNAVAILABLE"
    retriable = True


class CarrierRejected(CarrierError):
    """Carrier refused the request (4xx). Retrying unchanged will not help."""
    default_code = "CARRIER_REJECTED"

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["status_code"] = status_code
        self.status_code = status_code
        super().__init__(message, details=details, **kwargs)


class UnsupportedCarrier(CarrierError):
    default_code = "CARRIER_UNSUPPORTED"
    default_severity = "P1"

    def __init__(self, carrier: Optional[str], **kwargs):
        super().__init__(f"Unsupported carrier: {carrier}", carrier=carrier, **kwargs)
