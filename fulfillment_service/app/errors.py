"""Exceptions raised by the fulfillment service.

Each error carries the HTTP status and error code used when it reaches the
API boundary; see ``main.fulfillment_error_handler``.
"""


class FulfillmentError(Exception):
    """Base exception for all fulfillment errors."""

    status_code = 500
    code = "INTERNAL_SERVER_ERROR"

    def __init__(self, message: str, details=None):
        self.message = message
        self.details = details
        super().__init__(message)


class ValidationFailed(FulfillmentError):
    """Raised when input is malformed or refers to unusable data."""

    status_code = 400
    code = "VALIDATION_ERROR"


class Unauthenticated(FulfillmentError):
    """Raised when no valid bearer credential was presented."""

    status_code = 401
    code = "UNAUTHORIZED"

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class Forbidden(FulfillmentError):
    """Raised when the principal lacks the role or ownership required."""

    status_code = 403
    code = "FORBIDDEN"

    def __init__(self, message: str = "Permission denied"):
        super().__init__(message)


class NotFound(FulfillmentError):
    """Raised when a referenced resource doesn't exist."""

    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str, resource_id=None):
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource} not found"
        if resource_id is not None:
            msg = f"{resource} with ID {resource_id} not found"
        super().__init__(msg)


class Conflict(FulfillmentError):
    """Raised when a resource already exists (duplicate invoice, payment, label)."""

    status_code = 409
    code = "CONFLICT"


class InsufficientInventory(FulfillmentError):
    """Raised when a reservation would take stock below zero."""

    status_code = 400
    code = "INSUFFICIENT_INVENTORY"

    def __init__(self, variant_id: int, requested: int):
        self.variant_id = variant_id
        self.requested = requested
        super().__init__(
            f"Insufficient inventory for product variant {variant_id}",
            details={"product_variant_id": variant_id, "requested": requested},
        )


class InvalidStateTransition(FulfillmentError):
    """Raised when an order status change isn't legal from the current status."""

    status_code = 400
    code = "INVALID_STATE_TRANSITION"

    def __init__(self, current, target, message: str | None = None):
        self.current = current
        self.target = target
        current_value = getattr(current, "value", current)
        target_value = getattr(target, "value", target)
        super().__init__(
            message or f"Cannot move order from '{current_value}' to '{target_value}'",
            details={"current_status": current_value, "requested_status": target_value},
        )


class PaymentStateError(FulfillmentError):
    """Raised when a payment operation doesn't fit the payment's status."""

    status_code = 400
    code = "INVALID_PAYMENT_STATE"


class PaymentVerificationFailed(FulfillmentError):
    """Raised when a gateway callback signature doesn't match."""

    status_code = 400
    code = "PAYMENT_VERIFICATION_FAILED"

    def __init__(self, message: str = "Payment verification failed"):
        super().__init__(message)


class MissingGatewayReference(FulfillmentError):
    """Raised when the stored payment details lack the gateway payment id."""

    status_code = 400
    code = "MISSING_GATEWAY_REFERENCE"


class GatewayError(FulfillmentError):
    """Raised when the payment gateway is unreachable or rejects a call."""

    status_code = 502
    code = "PAYMENT_GATEWAY_ERROR"


class GatewayTimeout(GatewayError):
    """Raised when the payment gateway doesn't answer in time."""

    status_code = 504
    code = "PAYMENT_GATEWAY_TIMEOUT"


class CarrierError(FulfillmentError):
    """Raised when the shipping carrier is unreachable or rejects a call."""

    status_code = 502
    code = "SHIPPING_CARRIER_ERROR"
