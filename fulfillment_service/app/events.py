"""Message payloads for order lifecycle events published on the bus."""

from .models import Order, Payment, PaymentStatus

PAYMENT_ROUTING_KEYS = {
    PaymentStatus.COMPLETED: "payment.succeeded",
    PaymentStatus.FAILED: "payment.failed",
    PaymentStatus.REFUNDED: "payment.refunded",
}


def order_event(order: Order, routing_key: str | None = None):
    """Returns (routing_key, message) describing the order's current status."""
    return routing_key or f"order.{order.status.value}", {
        "order_id": order.id,
        "order_number": order.order_number,
        "user_id": order.user_id,
        "status": order.status.value,
        "total_amount": str(order.total_amount),
    }


def payment_event(payment: Payment):
    return PAYMENT_ROUTING_KEYS[payment.status], {
        "payment_id": payment.id,
        "order_id": payment.order_id,
        "amount": str(payment.amount),
        "status": payment.status.value,
        "transaction_id": payment.transaction_id,
    }
