import logging
from datetime import timedelta

from sqlalchemy.orm import Session

from .errors import Conflict, NotFound, PaymentStateError, ValidationFailed
from .models import Invoice, InvoiceStatus, Order, OrderStatus, PaymentStatus, utcnow
from .orders import generate_order_number
from .payments import PaymentReconciliation

logger = logging.getLogger(__name__)


class InvoiceRepository:
    """Issues invoices and tracks their status. Never commits."""

    def __init__(self, db: Session, payments: PaymentReconciliation):
        self.db = db
        self.payments = payments

    def get(self, invoice_id: int):
        return self.db.query(Invoice).filter(Invoice.id == invoice_id).first()

    def get_or_raise(self, invoice_id: int) -> Invoice:
        invoice = self.get(invoice_id)
        if invoice is None:
            raise NotFound("Invoice", invoice_id)
        return invoice

    def get_by_order(self, order_id: int):
        """Returns the order's invoice, or None."""
        return self.db.query(Invoice).filter(Invoice.order_id == order_id).first()

    def create(self, order: Order, due_days: int = 30, due_date=None) -> Invoice:
        """
        Issues the invoice for an order.
        - Only a completed payment can be invoiced.
        - Amount is subtotal plus shipping; tax is carried separately.
        - A second invoice for the same order is rejected and the first is left untouched.
        """
        if order.status == OrderStatus.CANCELLED:
            raise ValidationFailed("Cannot create an invoice for a cancelled order")
        if order.payment is None or order.payment.status != PaymentStatus.COMPLETED:
            raise PaymentStateError("Cannot generate invoice: payment not completed")
        if self.get_by_order(order.id) is not None:
            raise Conflict("Invoice already exists for this order")

        issue_date = utcnow()
        number = generate_order_number(prefix="INV")
        while self.db.query(Invoice.id).filter(Invoice.invoice_number == number).first() is not None:
            number = generate_order_number(prefix="INV")

        invoice = Invoice(
            invoice_number=number,
            issue_date=issue_date,
            due_date=due_date or issue_date + timedelta(days=due_days),
            status=InvoiceStatus.ISSUED,
            amount=order.subtotal + order.shipping_fee,
            tax_amount=order.tax_amount,
            total_amount=order.total_amount,
        )
        invoice.order = order
        self.db.add(invoice)
        self.db.flush()
        logger.info("Invoice %s issued for order %s", invoice.invoice_number, order.order_number)
        return invoice

    def update_status(self, invoice: Invoice, status: InvoiceStatus, actor: str):
        """
        Sets the invoice status. Marking it paid settles a still-pending payment.
        Returns (invoice, settled_payment_or_None).
        """
        previous = invoice.status
        invoice.status = status
        invoice.updated_at = utcnow()

        settled = None
        if status == InvoiceStatus.PAID:
            payment = self.payments.get_for_order(invoice.order_id)
            if payment is not None and payment.status == PaymentStatus.PENDING:
                details = {"settled_by_invoice": invoice.invoice_number}
                if self.payments.complete_payment(payment, None, details, actor):
                    settled = payment

        self.db.flush()
        logger.info(
            "Invoice %s: %s -> %s by %s", invoice.invoice_number, previous.value, status.value, actor
        )
        return invoice, settled
