import logging
import random

from sqlalchemy.orm import Session

from .errors import NotFound, ValidationFailed
from .models import Address, Cart, CartItem, Order, OrderItem, ShippingMethod, utcnow
from .pricing import calculate_totals
from .state_machine import OrderStateMachine

logger = logging.getLogger(__name__)


def generate_order_number(prefix: str = "ORD") -> str:
    """Format: ORD-YYYYMMDD-XXXXX, where XXXXX is a random 5-digit number."""
    return f"{prefix}-{utcnow():%Y%m%d}-{random.randint(10000, 99999)}"


class OrderRepository:
    """Loads and creates orders together with their line items."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, order_id: int):
        """Returns the order with this id, or None."""
        return self.db.query(Order).filter(Order.id == order_id).first()

    def get_or_raise(self, order_id: int) -> Order:
        order = self.get(order_id)
        if order is None:
            raise NotFound("Order", order_id)
        return order

    def _unique_order_number(self) -> str:
        # Random suffixes can collide; the unique index is the backstop.
        for _ in range(10):
            number = generate_order_number()
            if self.db.query(Order.id).filter(Order.order_number == number).first() is None:
                return number
        raise RuntimeError("Could not allocate a unique order number")

    def create_from_cart(
        self,
        machine: OrderStateMachine,
        user_id: str,
        cart_id: str,
        shipping_address_id: int,
        billing_address_id: int,
        shipping_method: str,
        payment_method: str,
        notes: str | None = None,
        tax_rate=None,
    ) -> Order:
        """
        Builds a PENDING order from the user's cart.
        - Snapshots catalog names and cart prices into the line items.
        - Reserves stock through the state machine and empties the cart.
        Nothing is committed here; the caller owns the transaction.
        """
        cart = (
            self.db.query(Cart)
            .filter(Cart.id == cart_id, Cart.user_id == user_id)
            .first()
        )
        if cart is None:
            raise NotFound("Cart", cart_id)
        cart_items = list(cart.items)
        if not cart_items:
            raise ValidationFailed("Cart is empty")

        for address_id, label in ((shipping_address_id, "Shipping"), (billing_address_id, "Billing")):
            address = (
                self.db.query(Address)
                .filter(Address.id == address_id, Address.user_id == user_id)
                .first()
            )
            if address is None:
                raise NotFound(f"{label} address", address_id)

        method = (
            self.db.query(ShippingMethod)
            .filter(ShippingMethod.name == shipping_method, ShippingMethod.is_active.is_(True))
            .first()
        )
        if method is None:
            raise ValidationFailed(f"Invalid shipping method: {shipping_method}")

        totals_args = {} if tax_rate is None else {"tax_rate": tax_rate}
        totals = calculate_totals(
            ((item.price, item.quantity) for item in cart_items),
            method.base_price,
            **totals_args,
        )

        now = utcnow()
        order = Order(
            order_number=self._unique_order_number(),
            user_id=user_id,
            subtotal=totals.subtotal,
            shipping_fee=totals.shipping_fee,
            tax_amount=totals.tax_amount,
            total_amount=totals.total_amount,
            shipping_address_id=shipping_address_id,
            billing_address_id=billing_address_id,
            shipping_method=method.name,
            payment_method=payment_method,
            notes=notes,
            created_at=now,
            updated_at=now,
        )
        for item in cart_items:
            variant = item.variant
            order.items.append(
                OrderItem(
                    product_variant_id=item.product_variant_id,
                    quantity=item.quantity,
                    price=item.price,
                    product_name=variant.product.name,
                    variant_name=variant.name,
                    sku=variant.sku,
                    created_at=now,
                )
            )
        self.db.add(order)
        self.db.flush()

        machine.start(order, actor=user_id)

        # Clear the cart.
        self.db.query(CartItem).filter(CartItem.cart_id == cart.id).delete()
        self.db.flush()

        logger.info(
            "Order %s created from cart %s: %s item(s), total %s",
            order.order_number, cart.id, len(order.items), order.total_amount,
        )
        return order

    def list_for_user(self, user_id: str, page: int = 1, limit: int = 10):
        """Returns (orders, total) for one customer, newest first."""
        query = self.db.query(Order).filter(Order.user_id == user_id)
        total = query.count()
        orders = (
            query.order_by(Order.created_at.desc(), Order.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return orders, total

    def list_all(self, status=None, from_date=None, to_date=None, search=None,
                 page: int = 1, limit: int = 20):
        """Returns (orders, total) across all customers, with optional filters."""
        query = self.db.query(Order)
        if status is not None:
            query = query.filter(Order.status == status)
        if from_date is not None:
            query = query.filter(Order.created_at >= from_date)
        if to_date is not None:
            query = query.filter(Order.created_at <= to_date)
        if search:
            query = query.filter(Order.order_number.ilike(f"%{search}%"))

        total = query.count()
        orders = (
            query.order_by(Order.created_at.desc(), Order.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return orders, total
