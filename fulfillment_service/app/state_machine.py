"""Order status state machine.

All order status changes go through :class:`OrderStateMachine`, which checks
legality against one transition table, performs the inventory side effects,
and appends exactly one status-history entry per applied transition. It never
commits; the caller's transaction covers the status row, its history entry
and any inventory movement together.
"""

import enum
import logging

from sqlalchemy.orm import Session

from .errors import InvalidStateTransition
from .inventory import InventoryLedger
from .models import Order, OrderStatus, OrderStatusHistory, utcnow

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

TERMINAL_STATUSES = frozenset(
    {OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.REFUNDED}
)
NON_TERMINAL_STATUSES = frozenset(set(OrderStatus) - TERMINAL_STATUSES)
CANCELLABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.PROCESSING})
LABEL_STATUSES = frozenset(
    {OrderStatus.PROCESSING, OrderStatus.READY_TO_SHIP, OrderStatus.CONFIRMED}
)


class Event(str, enum.Enum):
    PAYMENT_COMPLETED = "payment_completed"
    CANCEL = "cancel"
    LABEL_GENERATED = "label_generated"
    DELIVERED = "delivered"
    REFUND = "refund"


# event -> (statuses it may fire from, resulting status)
EVENT_TRANSITIONS = {
    Event.PAYMENT_COMPLETED: (CANCELLABLE_STATUSES, OrderStatus.PROCESSING),
    Event.CANCEL: (CANCELLABLE_STATUSES, OrderStatus.CANCELLED),
    Event.LABEL_GENERATED: (LABEL_STATUSES, OrderStatus.SHIPPED),
    Event.DELIVERED: (frozenset({OrderStatus.SHIPPED}), OrderStatus.DELIVERED),
    Event.REFUND: (NON_TERMINAL_STATUSES, OrderStatus.REFUNDED),
}

# Moves an administrator may make directly. Refunds only happen through the
# payment refund flow, so REFUNDED is never an admin target.
ADMIN_TRANSITIONS = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset(
        {
            OrderStatus.CONFIRMED,
            OrderStatus.READY_TO_SHIP,
            OrderStatus.SHIPPED,
            OrderStatus.CANCELLED,
        }
    ),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.READY_TO_SHIP, OrderStatus.SHIPPED}),
    OrderStatus.READY_TO_SHIP: frozenset({OrderStatus.SHIPPED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}


def _statuses(values):
    return ", ".join(sorted(s.value for s in values))


class OrderStateMachine:
    def __init__(self, db: Session, ledger: InventoryLedger | None = None):
        self.db = db
        self.ledger = ledger or InventoryLedger(db)

    def start(self, order: Order, actor: str, note: str = "Order created") -> OrderStatusHistory:
        """
        Puts a freshly inserted order into PENDING.
        Reserves stock for every line item; any shortfall raises and the caller rolls back.
        """
        for item in order.items:
            self.ledger.reserve(item.product_variant_id, item.quantity)

        order.status = OrderStatus.PENDING
        return self._append_history(order, OrderStatus.PENDING, actor, note)

    def can_apply(self, order: Order, event: Event) -> bool:
        sources, _ = EVENT_TRANSITIONS[event]
        return order.status in sources

    def check(self, order: Order, event: Event) -> None:
        """Raises InvalidStateTransition if the event can't fire from the order's status."""
        sources, target = EVENT_TRANSITIONS[event]
        if order.status not in sources:
            raise InvalidStateTransition(
                order.status,
                target,
                _event_rejection(event, order.status, sources),
            )

    def apply(self, order: Order, event: Event, actor: str = SYSTEM_ACTOR,
              note: str | None = None) -> OrderStatusHistory:
        """Fires an event against the order, or raises InvalidStateTransition."""
        self.check(order, event)
        _, target = EVENT_TRANSITIONS[event]
        return self._transition(order, target, actor, note)

    def set_status(self, order: Order, target: OrderStatus, actor: str,
                   note: str | None = None) -> OrderStatusHistory:
        """Applies an administrator's status change along ADMIN_TRANSITIONS."""
        allowed = ADMIN_TRANSITIONS[order.status]
        if target not in allowed:
            if target == OrderStatus.REFUNDED:
                message = "Orders are refunded through the payment refund endpoint"
            elif allowed:
                message = (
                    f"Cannot move order from '{order.status.value}' to '{target.value}'. "
                    f"Allowed: {_statuses(allowed)}"
                )
            else:
                message = f"Order in '{order.status.value}' status can no longer change"
            raise InvalidStateTransition(order.status, target, message)
        return self._transition(order, target, actor, note)

    def _transition(self, order: Order, target: OrderStatus, actor: str,
                    note: str | None) -> OrderStatusHistory:
        current = order.status

        # Compare-and-set on the status column: a concurrent transition that
        # got there first leaves zero matching rows.
        now = utcnow()
        updated = (
            self.db.query(Order)
            .filter(Order.id == order.id, Order.status == current)
            .update({Order.status: target, Order.updated_at: now})
        )
        if updated == 0:
            self.db.refresh(order)
            raise InvalidStateTransition(
                order.status,
                target,
                f"Order status changed concurrently (now '{order.status.value}')",
            )
        order.status = target
        order.updated_at = now

        if target == OrderStatus.CANCELLED:
            for item in order.items:
                self.ledger.release(item.product_variant_id, item.quantity)

        logger.info("Order %s: %s -> %s by %s", order.order_number, current.value, target.value, actor)
        return self._append_history(order, target, actor, note)

    def _append_history(self, order: Order, status: OrderStatus, actor: str,
                        note: str | None) -> OrderStatusHistory:
        entry = OrderStatusHistory(
            status=status,
            notes=note,
            created_by=actor,
            created_at=utcnow(),
        )
        order.status_history.append(entry)
        self.db.flush()
        return entry


def _event_rejection(event: Event, current: OrderStatus, sources) -> str:
    if event == Event.CANCEL:
        return f"Cannot cancel order in '{current.value}' status"
    if event == Event.LABEL_GENERATED:
        return (
            f"Cannot generate shipping label for order in '{current.value}' status. "
            f"Order must be in one of these statuses: {_statuses(sources)}"
        )
    if event == Event.REFUND:
        return f"Cannot refund order in '{current.value}' status"
    return f"Cannot apply '{event.value}' to order in '{current.value}' status"
