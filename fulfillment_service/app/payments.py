"""Payment reconciliation against the Razorpay gateway.

Gateway calls never run inside an open database transaction: each flow reads
and validates, commits to end the read, calls the gateway, then applies its
writes in a fresh transaction guarded by a conditional status update.
"""

import json
import logging
from decimal import Decimal

from sqlalchemy.orm import Session

from .config import Settings
from .errors import (
    Conflict,
    GatewayError,
    GatewayTimeout,
    MissingGatewayReference,
    NotFound,
    PaymentStateError,
    PaymentVerificationFailed,
    Unauthenticated,
    ValidationFailed,
)
from .events import order_event, payment_event
from .messaging import EventPublisher, NullPublisher
from .models import Order, OrderStatus, Payment, PaymentStatus, utcnow
from .pricing import to_minor_units, to_money
from .state_machine import SYSTEM_ACTOR, Event, OrderStateMachine

logger = logging.getLogger(__name__)

# Remote payment states that mean the customer's money was taken.
GATEWAY_SUCCESS_STATUSES = ("authorized", "captured")


class PaymentReconciliation:
    def __init__(self, db: Session, gateway, settings: Settings,
                 machine: OrderStateMachine | None = None,
                 publisher: EventPublisher | None = None):
        self.db = db
        self.gateway = gateway
        self.settings = settings
        self.machine = machine or OrderStateMachine(db)
        self.publisher = publisher or NullPublisher()

    # --- Lookups ---

    def get(self, payment_id: int):
        return self.db.query(Payment).filter(Payment.id == payment_id).first()

    def get_or_raise(self, payment_id: int) -> Payment:
        payment = self.get(payment_id)
        if payment is None:
            raise NotFound("Payment", payment_id)
        return payment

    def get_for_order(self, order_id: int):
        """Returns the order's payment, or None."""
        return self.db.query(Payment).filter(Payment.order_id == order_id).first()

    # --- Checkout ---

    def create_payment(self, order: Order) -> Payment:
        """Creates the PENDING payment for a new order. Part of the checkout transaction."""
        if self.get_for_order(order.id) is not None:
            raise Conflict(f"Payment already exists for order {order.id}")

        payment = Payment(
            amount=order.total_amount,
            payment_method=order.payment_method,
            status=PaymentStatus.PENDING,
            payment_details={},
        )
        payment.order = order
        self.db.add(payment)
        self.db.flush()
        return payment

    # --- Gateway flows ---

    def start_gateway_checkout(self, payment: Payment, customer: dict | None = None) -> dict:
        """
        Creates the remote gateway order and returns the parameters the client
        needs to open the checkout widget.
        - Payment moves to PROCESSING and remembers the remote order id.
        - The key secret never leaves the server.
        """
        if payment.status in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED):
            raise PaymentStateError(
                f"Cannot start payment for a payment in '{payment.status.value}' status"
            )
        order = payment.order
        self.machine.check(order, Event.PAYMENT_COMPLETED)

        customer = customer or {}
        payment_id = payment.id
        order_id = order.id
        order_number = order.order_number
        amount = to_minor_units(payment.amount)
        notes = {
            "order_id": str(order_id),
            "payment_id": str(payment_id),
            "customer_email": customer.get("email") or "",
            "customer_name": customer.get("name") or "",
        }
        self.db.commit()

        remote = self.gateway.create_order(amount, self.settings.currency, f"order_{order_id}", notes)
        remote_order_id = remote.get("id")
        if not remote_order_id:
            raise GatewayError("Payment gateway returned no order id")

        payment = self.get_or_raise(payment_id)
        if not self._move(payment, PaymentStatus.PROCESSING,
                          (PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.FAILED)):
            self.db.rollback()
            logger.warning(
                "Payment %s was settled while gateway order %s was being created",
                payment_id, remote_order_id,
            )
            raise PaymentStateError("Payment was settled while the checkout was being opened")
        payment.payment_details = {
            **(payment.payment_details or {}),
            "gateway": "razorpay",
            "razorpay_order_id": remote_order_id,
        }
        payment.updated_at = utcnow()
        self.db.commit()
        logger.info("Payment %s: gateway order %s created for %s", payment_id, remote_order_id, order_number)

        return {
            "payment_id": payment_id,
            **self.gateway.client_config(),
            "order_id": remote_order_id,
            "amount": amount,
            "currency": self.settings.currency,
            "name": self.settings.store_name,
            "description": f"Payment for order {order_number}",
            "prefill": {
                "name": customer.get("name") or "",
                "email": customer.get("email") or "",
                "contact": customer.get("contact") or "",
            },
            "notes": notes,
        }

    def verify(self, payment: Payment, razorpay_order_id: str, razorpay_payment_id: str,
               razorpay_signature: str, actor: str) -> Payment:
        """
        Checks the checkout callback signature and confirms the payment with the gateway.
        - Bad signature: payment FAILED, order untouched, PaymentVerificationFailed.
        - Gateway timeout or error: payment left as it was.
        """
        if (payment.status == PaymentStatus.COMPLETED
                and payment.transaction_id == razorpay_payment_id):
            return payment
        if payment.status not in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
            raise PaymentStateError(f"Cannot verify a payment in '{payment.status.value}' status")

        stored_order_id = (payment.payment_details or {}).get("razorpay_order_id")
        signature_ok = stored_order_id == razorpay_order_id and self.gateway.verify_payment_signature(
            razorpay_order_id, razorpay_payment_id, razorpay_signature
        )
        if not signature_ok:
            logger.warning("Payment %s: signature verification failed", payment.id)
            self._fail(payment, "Payment signature verification failed",
                       {"razorpay_payment_id": razorpay_payment_id})
            self.db.commit()
            self._publish(payment_event(payment))
            raise PaymentVerificationFailed()

        payment_id = payment.id
        self.db.commit()

        try:
            remote = self.gateway.fetch_payment(razorpay_payment_id)
        except GatewayTimeout:
            logger.warning(
                "Payment %s: gateway timed out during verification, status left unchanged "
                "for operator follow-up", payment_id,
            )
            raise

        payment = self.get_or_raise(payment_id)
        remote_status = remote.get("status")
        if remote_status in GATEWAY_SUCCESS_STATUSES:
            completed = self.complete_payment(
                payment,
                razorpay_payment_id,
                {
                    "razorpay_order_id": razorpay_order_id,
                    "razorpay_payment_id": razorpay_payment_id,
                    "razorpay_signature": razorpay_signature,
                    "method": remote.get("method"),
                    "gateway_status": remote_status,
                },
                actor,
            )
            self.db.commit()
            if completed:
                self._publish_settlement(payment, OrderStatus.PROCESSING)
            return payment

        if remote_status == "failed":
            self._fail(payment, remote.get("error_description") or "Payment failed at the gateway",
                       {"razorpay_payment_id": razorpay_payment_id})
            self.db.commit()
            self._publish(payment_event(payment))
            raise PaymentVerificationFailed("Payment failed at the gateway")

        raise PaymentStateError(f"Gateway reports payment status '{remote_status}'")

    # --- Refunds ---

    def refund(self, payment_id: int, actor: str, reason: str | None = None,
               amount=None) -> Payment:
        """
        Refunds a completed payment through the gateway and moves the order to REFUNDED.
        All checks run before the gateway is called.
        """
        payment = self.get_or_raise(payment_id)
        if payment.status != PaymentStatus.COMPLETED:
            raise PaymentStateError(
                f"Cannot refund payment in '{payment.status.value}' status. "
                "Only completed payments can be refunded"
            )
        self.machine.check(payment.order, Event.REFUND)

        gateway_payment_id = (payment.payment_details or {}).get("razorpay_payment_id")
        if not gateway_payment_id:
            raise MissingGatewayReference("Gateway payment id not found in payment details")

        refund_amount = None
        if amount is not None:
            refund_amount = to_money(amount)
            if refund_amount <= 0 or refund_amount > payment.amount:
                raise ValidationFailed("Refund amount must be positive and not exceed the payment amount")
        self.db.commit()

        remote = self.gateway.create_refund(
            gateway_payment_id, to_minor_units(refund_amount) if refund_amount is not None else None
        )

        payment = self.get_or_raise(payment_id)
        refunded = self._apply_refund(
            payment,
            refund_id=remote.get("id"),
            actor=actor,
            reason=reason or "Customer request",
            amount=refund_amount if refund_amount is not None else payment.amount,
        )
        self.db.commit()
        if refunded:
            self._publish_settlement(payment, OrderStatus.REFUNDED)
        else:
            logger.info("Payment %s was already refunded", payment_id)
        return payment

    # --- Webhooks ---

    def handle_webhook(self, body: bytes, signature: str | None) -> str:
        """
        Applies one gateway webhook delivery. Returns a short outcome label.
        Raises Unauthenticated for a bad signature when a webhook secret is configured.
        """
        if self.gateway.webhook_secret:
            if not self.gateway.verify_webhook_signature(body, signature or ""):
                logger.warning("Rejected webhook with an invalid signature")
                raise Unauthenticated("Invalid webhook signature")

        try:
            payload = json.loads(body)
        except ValueError:
            logger.warning("Ignoring webhook with a malformed body")
            return "ignored"
        if not isinstance(payload, dict):
            return "ignored"

        event = payload.get("event")
        handlers = {
            "payment.authorized": self._on_payment_captured,
            "payment.captured": self._on_payment_captured,
            "payment.failed": self._on_payment_failed,
            "refund.processed": self._on_refund_processed,
        }
        handler = handlers.get(event)
        if handler is None:
            logger.info("Ignoring unhandled webhook event %r", event)
            return "ignored"

        body_payload = payload.get("payload")
        outcome = handler(body_payload if isinstance(body_payload, dict) else {})
        logger.info("Webhook %s: %s", event, outcome)
        return outcome

    def _on_payment_captured(self, body: dict) -> str:
        entity = _entity(body, "payment")
        payment = self._payment_from_entity(entity)
        if payment is None:
            return "ignored"

        completed = self.complete_payment(
            payment,
            entity.get("id"),
            {
                "razorpay_payment_id": entity.get("id"),
                "razorpay_order_id": entity.get("order_id"),
                "method": entity.get("method"),
                "gateway_status": entity.get("status"),
            },
            SYSTEM_ACTOR,
        )
        self.db.commit()
        if not completed:
            return "duplicate"
        self._publish_settlement(payment, OrderStatus.PROCESSING)
        return "processed"

    def _on_payment_failed(self, body: dict) -> str:
        entity = _entity(body, "payment")
        payment = self._payment_from_entity(entity)
        if payment is None:
            return "ignored"

        failed = self._fail(
            payment,
            entity.get("error_description") or "Payment failed",
            {"razorpay_payment_id": entity.get("id"), "error_code": entity.get("error_code")},
        )
        self.db.commit()
        if not failed:
            return "duplicate"
        self._publish(payment_event(payment))
        return "processed"

    def _on_refund_processed(self, body: dict) -> str:
        refund = _entity(body, "refund")
        gateway_payment_id = refund.get("payment_id")
        if not gateway_payment_id:
            return "ignored"
        payment = (
            self.db.query(Payment)
            .filter(Payment.transaction_id == gateway_payment_id)
            .first()
        )
        if payment is None:
            logger.info("No payment with transaction id %s", gateway_payment_id)
            return "ignored"
        if payment.status == PaymentStatus.REFUNDED:
            return "duplicate"
        if payment.status != PaymentStatus.COMPLETED:
            logger.warning(
                "Refund webhook for payment %s in '%s' status ignored", payment.id, payment.status.value
            )
            return "ignored"

        amount = payment.amount
        if isinstance(refund.get("amount"), int):
            amount = to_money(Decimal(refund["amount"]) / 100)
        refund_notes = refund.get("notes") if isinstance(refund.get("notes"), dict) else {}

        refunded = self._apply_refund(
            payment,
            refund_id=refund.get("id"),
            actor=SYSTEM_ACTOR,
            reason=refund_notes.get("reason") or "Refund processed by gateway",
            amount=amount,
        )
        self.db.commit()
        if not refunded:
            return "duplicate"
        self._publish_settlement(payment, OrderStatus.REFUNDED)
        return "processed"

    def _payment_from_entity(self, entity: dict):
        """Finds our payment from the order/payment ids we put in the gateway notes."""
        notes = entity.get("notes") if isinstance(entity.get("notes"), dict) else {}
        try:
            payment_id = int(notes.get("payment_id"))
            order_id = int(notes.get("order_id"))
        except (TypeError, ValueError):
            payment_id = order_id = None

        if payment_id is not None:
            payment = (
                self.db.query(Payment)
                .filter(Payment.id == payment_id, Payment.order_id == order_id)
                .first()
            )
        elif entity.get("id"):
            payment = (
                self.db.query(Payment)
                .filter(Payment.transaction_id == entity["id"])
                .first()
            )
        else:
            payment = None

        if payment is None:
            logger.info("Webhook payment entity %s matches no payment", entity.get("id"))
        return payment

    # --- Status changes ---

    def _move(self, payment: Payment, target: PaymentStatus, allowed) -> bool:
        """Conditionally moves the payment status; False when another writer got there first."""
        updated = (
            self.db.query(Payment)
            .filter(Payment.id == payment.id, Payment.status.in_(list(allowed)))
            .update({Payment.status: target, Payment.updated_at: utcnow()})
        )
        if updated:
            payment.status = target
        return bool(updated)

    def complete_payment(self, payment: Payment, transaction_id: str | None, details: dict,
                         actor: str) -> bool:
        """
        Marks a payment COMPLETED inside the caller's transaction and fires the
        order's payment-completed transition when it is still legal.
        Returns False if the payment was already settled.
        """
        if not self._move(payment, PaymentStatus.COMPLETED,
                          (PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.FAILED)):
            return False

        if transaction_id:
            payment.transaction_id = transaction_id
        payment.payment_details = {
            **(payment.payment_details or {}),
            **{key: value for key, value in details.items() if value is not None},
            "completed_at": utcnow().isoformat(),
        }

        order = payment.order
        if self.machine.can_apply(order, Event.PAYMENT_COMPLETED):
            self.machine.apply(order, Event.PAYMENT_COMPLETED, actor, "Payment completed")
        else:
            logger.warning(
                "Payment %s completed while order %s is '%s'; order status left unchanged",
                payment.id, order.order_number, order.status.value,
            )
        self.db.flush()
        logger.info("Payment %s completed (transaction %s)", payment.id, payment.transaction_id)
        return True

    def _fail(self, payment: Payment, reason: str, details: dict) -> bool:
        if not self._move(payment, PaymentStatus.FAILED,
                          (PaymentStatus.PENDING, PaymentStatus.PROCESSING)):
            return False
        payment.payment_details = {
            **(payment.payment_details or {}),
            **{key: value for key, value in details.items() if value is not None},
            "error_description": reason,
            "failed_at": utcnow().isoformat(),
        }
        self.db.flush()
        logger.info("Payment %s failed: %s", payment.id, reason)
        return True

    def _apply_refund(self, payment: Payment, refund_id, actor: str, reason: str, amount) -> bool:
        if not self._move(payment, PaymentStatus.REFUNDED, (PaymentStatus.COMPLETED,)):
            return False

        payment.payment_details = {
            **(payment.payment_details or {}),
            "refund_reason": reason,
            "refunded_at": utcnow().isoformat(),
            "refunded_by": actor,
            "razorpay_refund_id": refund_id,
            "refund_amount": str(to_money(amount)),
        }

        order = payment.order
        if self.machine.can_apply(order, Event.REFUND):
            self.machine.apply(order, Event.REFUND, actor, f"Order refunded: {reason}")
        else:
            logger.warning(
                "Payment %s refunded while order %s is '%s'; order status left unchanged",
                payment.id, order.order_number, order.status.value,
            )
        self.db.flush()
        logger.info("Payment %s refunded by %s", payment.id, actor)
        return True

    # --- Events ---

    def _publish(self, event) -> None:
        routing_key, message = event
        self.publisher.publish(routing_key, message)

    def _publish_settlement(self, payment: Payment, order_status: OrderStatus) -> None:
        self._publish(payment_event(payment))
        # Only announce the order if the settlement actually moved it.
        if payment.order.status == order_status:
            self._publish(order_event(payment.order))


def _entity(body: dict, name: str) -> dict:
    wrapper = body.get(name)
    if not isinstance(wrapper, dict):
        return {}
    entity = wrapper.get("entity")
    return entity if isinstance(entity, dict) else {}
