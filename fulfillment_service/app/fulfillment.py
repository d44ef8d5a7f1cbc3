"""Fulfillment orchestration.

FulfillmentService sequences the ledger, state machine, payments, invoices and
shipping inside request-scoped transactions. Checkout, cancellation and admin
status changes are single transactions; label generation and tracking refresh
end the read transaction before calling the carrier and write in a new one.
Events are published only after the commit they describe.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from .carrier import TrackingEvent
from .config import Settings
from .errors import CarrierError, Conflict, NotFound, Unauthenticated
from .events import order_event, payment_event
from .identity import Principal, ensure_owner_or_admin
from .inventory import InventoryLedger
from .invoices import InvoiceRepository
from .messaging import EventPublisher, NullPublisher
from .models import InvoiceStatus, Order, OrderStatus
from .orders import OrderRepository
from .payments import PaymentReconciliation
from .shipping import ShippingService, address_to_dict
from .state_machine import SYSTEM_ACTOR, Event, OrderStateMachine

logger = logging.getLogger(__name__)

SUPPORTED_GATEWAYS = ("razorpay",)


class FulfillmentService:
    def __init__(self, db: Session, settings: Settings, gateway, carrier,
                 publisher: EventPublisher | None = None):
        self.db = db
        self.settings = settings
        self.carrier = carrier
        self.publisher = publisher or NullPublisher()
        self.ledger = InventoryLedger(db)
        self.machine = OrderStateMachine(db, self.ledger)
        self.orders = OrderRepository(db)
        self.payments = PaymentReconciliation(db, gateway, settings, self.machine, self.publisher)
        self.invoices = InvoiceRepository(db, self.payments)
        self.shipping = ShippingService(db, carrier, settings)

    @contextmanager
    def _transaction(self):
        try:
            yield
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def _publish(self, event) -> None:
        routing_key, message = event
        self.publisher.publish(routing_key, message)

    def _load_order(self, principal: Principal, order_id: int) -> Order:
        order = self.orders.get_or_raise(order_id)
        ensure_owner_or_admin(principal, order.user_id)
        return order

    # --- Orders ---

    def checkout(self, principal: Principal, cart_id: str, shipping_address_id: int,
                 billing_address_id: int, shipping_method: str, payment_method: str,
                 notes: str | None = None) -> Order:
        """
        Converts the caller's cart into a PENDING order with a pending payment.
        Everything happens in one transaction: any failure leaves no order, no
        payment and no inventory movement behind.
        """
        with self._transaction():
            order = self.orders.create_from_cart(
                self.machine,
                user_id=principal.user_id,
                cart_id=cart_id,
                shipping_address_id=shipping_address_id,
                billing_address_id=billing_address_id,
                shipping_method=shipping_method,
                payment_method=payment_method,
                notes=notes,
                tax_rate=self.settings.tax_rate,
            )
            self.payments.create_payment(order)

        self._publish(order_event(order, "order.created"))
        return order

    def get_order(self, principal: Principal, order_id: int) -> Order:
        return self._load_order(principal, order_id)

    def list_orders(self, principal: Principal, page: int, limit: int):
        return self.orders.list_for_user(principal.user_id, page, limit)

    def list_all_orders(self, status=None, from_date=None, to_date=None, search=None,
                        page: int = 1, limit: int = 20):
        return self.orders.list_all(status, from_date, to_date, search, page, limit)

    def cancel(self, principal: Principal, order_id: int) -> Order:
        with self._transaction():
            order = self._load_order(principal, order_id)
            role = "admin" if principal.is_admin else "customer"
            self.machine.apply(order, Event.CANCEL, principal.user_id, f"Order cancelled by {role}")

        self._publish(order_event(order))
        return order

    def update_status(self, principal: Principal, order_id: int, status: OrderStatus,
                      notes: str | None = None) -> Order:
        with self._transaction():
            order = self.orders.get_or_raise(order_id)
            self.machine.set_status(
                order, status, principal.user_id, notes or f"Status updated to {status.value}"
            )

        self._publish(order_event(order))
        return order

    # --- Payments ---

    def _payment_for(self, order: Order):
        payment = self.payments.get_for_order(order.id)
        if payment is None:
            raise NotFound("Payment for order", order.id)
        return payment

    def get_payment(self, principal: Principal, order_id: int):
        return self._payment_for(self._load_order(principal, order_id))

    def start_payment(self, principal: Principal, order_id: int) -> dict:
        order = self._load_order(principal, order_id)
        payment = self._payment_for(order)
        address = order.shipping_address
        customer = {
            "email": principal.email,
            "name": address.name if address is not None else None,
            "contact": address.phone if address is not None else None,
        }
        return self.payments.start_gateway_checkout(payment, customer)

    def verify_payment(self, principal: Principal, order_id: int, razorpay_order_id: str,
                       razorpay_payment_id: str, razorpay_signature: str):
        order = self._load_order(principal, order_id)
        payment = self._payment_for(order)
        return self.payments.verify(
            payment, razorpay_order_id, razorpay_payment_id, razorpay_signature, principal.user_id
        )

    def refund(self, principal: Principal, payment_id: int, reason: str | None = None, amount=None):
        return self.payments.refund(payment_id, principal.user_id, reason, amount)

    def ingest_webhook(self, gateway_name: str, body: bytes, signature: str | None) -> dict:
        """
        Applies a gateway webhook. Internal failures are logged and swallowed so
        the gateway always gets a success answer; only a bad signature is refused.
        """
        outcome = "ignored"
        if gateway_name not in SUPPORTED_GATEWAYS:
            logger.warning("Webhook for unsupported gateway '%s' ignored", gateway_name)
        else:
            try:
                outcome = self.payments.handle_webhook(body, signature)
            except Unauthenticated:
                raise
            except Exception:  # Gateways retry on errors; never hand them one.
                self.db.rollback()
                logger.exception("Webhook processing failed for gateway '%s'", gateway_name)
                outcome = "error"

        return {
            "received": True,
            "outcome": outcome,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    # --- Invoices ---

    def create_invoice(self, principal: Principal, order_id: int):
        with self._transaction():
            order = self._load_order(principal, order_id)
            invoice = self.invoices.create(order, due_days=self.settings.invoice_due_days)
        return invoice

    def get_invoice(self, principal: Principal, order_id: int):
        order = self._load_order(principal, order_id)
        invoice = self.invoices.get_by_order(order.id)
        if invoice is None:
            raise NotFound("Invoice for order", order.id)
        return invoice

    def update_invoice_status(self, principal: Principal, invoice_id: int, status: InvoiceStatus):
        with self._transaction():
            invoice = self.invoices.get_or_raise(invoice_id)
            invoice, settled = self.invoices.update_status(invoice, status, principal.user_id)

        if settled is not None:
            self._publish(payment_event(settled))
            if settled.order.status == OrderStatus.PROCESSING:
                self._publish(order_event(settled.order))
        return invoice

    # --- Shipping ---

    def generate_label(self, principal: Principal, order_id: int) -> dict:
        """
        Books the shipment with the carrier, then records tracking and ships the
        order in one transaction.
        """
        order = self.orders.get_or_raise(order_id)
        self.machine.check(order, Event.LABEL_GENERATED)
        if self.shipping.get_tracking(order.id) is not None:
            raise Conflict(f"Shipping label already exists for order {order.id}")
        if order.shipping_address is None:
            raise NotFound("Shipping address", order.shipping_address_id)

        reference = order.order_number
        ship_to = address_to_dict(order.shipping_address)
        parcel = self.shipping.parcel_for(order)
        prepaid = order.payment_method != "cod"
        self.db.commit()

        waybill = self.carrier.create_shipment(
            reference, self.shipping.warehouse(), ship_to, parcel, prepaid=prepaid
        )

        try:
            with self._transaction():
                order = self.orders.get_or_raise(order_id)
                record = self.shipping.create_tracking(order, waybill)
                self.machine.apply(
                    order,
                    Event.LABEL_GENERATED,
                    principal.user_id,
                    f"Shipped via {self.carrier.name}. Tracking number: {waybill}",
                )
        except Exception:
            logger.error(
                "Carrier booked waybill %s for %s but it could not be recorded", waybill, reference
            )
            raise

        self._publish(order_event(order))
        return {
            "tracking_number": record.tracking_number,
            "label_url": record.label_url,
            "carrier": record.carrier,
            "order_status": order.status,
        }

    def track(self, principal: Principal, tracking_number: str) -> dict:
        record = self.shipping.get_tracking_by_number(tracking_number)
        if record is None:
            raise NotFound("Shipment", tracking_number)
        ensure_owner_or_admin(principal, record.order.user_id)
        return self._refresh_tracking(record)

    def order_shipping(self, principal: Principal, order_id: int) -> dict:
        order = self._load_order(principal, order_id)
        summary = {
            "order_id": order.id,
            "shipping_method": order.shipping_method,
            "tracking_number": None,
            "carrier": None,
            "status": "pending",
            "estimated_delivery": None,
            "events": [],
            "tracking_url": None,
        }
        record = self.shipping.get_tracking(order.id)
        if record is not None:
            summary.update(self._refresh_tracking(record))
        return summary

    def _refresh_tracking(self, record) -> dict:
        """
        Pulls the latest carrier status into the tracking record. A delivered
        shipment delivers the order. Carrier failures fall back to the stored record.
        """
        record_id = record.id
        tracking_number = record.tracking_number
        self.db.commit()

        try:
            info = self.carrier.track_shipment(tracking_number)
        except CarrierError as exc:
            logger.warning("Tracking %s from the carrier failed, using stored record: %s",
                           tracking_number, exc)
            record = self.shipping.get_tracking_by_number(tracking_number)
            return self._tracking_summary(
                record,
                [TrackingEvent(date=record.created_at.isoformat(), location="System",
                               activity="Shipment created")],
            )

        delivered = False
        with self._transaction():
            record = self.shipping.get_tracking_by_number(tracking_number)
            record.status = info.status
            if info.estimated_delivery:
                record.estimated_delivery = info.estimated_delivery
            order = record.order
            if info.status == "delivered" and self.machine.can_apply(order, Event.DELIVERED):
                delivered_on = (info.delivery_date or datetime.now(timezone.utc).isoformat())[:10]
                self.machine.apply(
                    order, Event.DELIVERED, SYSTEM_ACTOR,
                    f"Delivered by {record.carrier} on {delivered_on}",
                )
                delivered = True

        logger.info("Tracking record %s refreshed: %s", record_id, info.status)
        if delivered:
            self._publish(order_event(order))
        return self._tracking_summary(record, info.events)

    def _tracking_summary(self, record, events) -> dict:
        return {
            "tracking_number": record.tracking_number,
            "carrier": record.carrier,
            "status": record.status,
            "estimated_delivery": record.estimated_delivery,
            "label_url": record.label_url,
            "events": [
                {"date": event.date, "location": event.location, "activity": event.activity}
                for event in events
            ],
            "tracking_url": self.carrier.tracking_url(record.tracking_number),
        }

    def quote_shipping(self, principal: Principal, shipping_method_id: int, address_id: int,
                       items) -> dict:
        user_id = None if principal.is_admin else principal.user_id
        return self.shipping.quote(shipping_method_id, address_id, items, user_id=user_id)

    def list_shipping_methods(self):
        return self.shipping.list_methods()

    def create_shipping_method(self, **fields):
        with self._transaction():
            method = self.shipping.create_method(**fields)
        return method

    def update_shipping_method(self, method_id: int, **changes):
        with self._transaction():
            method = self.shipping.update_method(method_id, **changes)
        return method

    # --- Inventory administration ---

    def list_inventory(self, low_stock: bool, page: int, limit: int):
        return self.ledger.list(low_stock, page, limit), self.ledger.count(low_stock)

    def get_inventory(self, variant_id: int):
        record = self.ledger.get(variant_id)
        if record is None:
            raise NotFound("Inventory for product variant", variant_id)
        return record

    def create_inventory(self, variant_id: int, quantity: int, reorder_level: int,
                         reorder_quantity: int):
        with self._transaction():
            record = self.ledger.create(variant_id, quantity, reorder_level, reorder_quantity)
        return record

    def adjust_inventory(self, variant_id: int, **changes):
        with self._transaction():
            record = self.ledger.adjust(variant_id, **changes)
        return record
