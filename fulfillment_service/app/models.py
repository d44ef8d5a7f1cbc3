import enum
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from .database import Base  # Import the Base class from our database setup


def utcnow():
    return datetime.now(timezone.utc)


# Currency columns: exact decimals with two places.
Money = Numeric(12, 2)


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    CONFIRMED = "confirmed"
    READY_TO_SHIP = "ready_to_ship"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class InvoiceStatus(str, enum.Enum):
    ISSUED = "issued"
    PAID = "paid"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


def _enum_column(enum_cls):
    # Store enum values ("pending"), not member names ("PENDING").
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        validate_strings=True,
        length=32,
    )


# --- Catalog, carts and addresses (owned by other services, read here) ---

class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)


class ProductVariant(Base):
    __tablename__ = "product_variants"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    name = Column(String, nullable=False)
    sku = Column(String, unique=True, nullable=False)
    price = Column(Money, nullable=False)
    weight_kg = Column(Numeric(10, 3)) # Unknown weights fall back to a default at quote time.

    product = relationship("Product")


class Cart(Base):
    __tablename__ = "carts"

    id = Column(String, primary_key=True) # Carts use opaque string ids.
    user_id = Column(String, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    items = relationship("CartItem", back_populates="cart", order_by="CartItem.id")


class CartItem(Base):
    __tablename__ = "cart_items"

    id = Column(Integer, primary_key=True, index=True)
    cart_id = Column(String, ForeignKey("carts.id"), nullable=False, index=True)
    product_variant_id = Column(Integer, ForeignKey("product_variants.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    price = Column(Money, nullable=False) # Price captured when the item was added.

    cart = relationship("Cart", back_populates="items")
    variant = relationship("ProductVariant")


class Address(Base):
    __tablename__ = "addresses"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, index=True, nullable=False)
    name = Column(String)
    phone = Column(String)
    address_line1 = Column(String, nullable=False)
    address_line2 = Column(String)
    landmark = Column(String)
    city = Column(String, nullable=False)
    state = Column(String, nullable=False)
    postal_code = Column(String, nullable=False)
    country = Column(String, nullable=False)


class ShippingMethod(Base):
    __tablename__ = "shipping_methods"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, unique=True, nullable=False)
    description = Column(Text)
    base_price = Column(Money, nullable=False)
    estimated_days = Column(Integer)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


# --- Inventory ---

class InventoryRecord(Base):
    __tablename__ = "inventory"

    id = Column(Integer, primary_key=True, index=True)
    product_variant_id = Column(
        Integer, ForeignKey("product_variants.id"), unique=True, nullable=False, index=True
    )
    quantity = Column(Integer, nullable=False, default=0) # Units on hand; never negative.
    reserved_quantity = Column(Integer, nullable=False, default=0)
    reorder_level = Column(Integer, nullable=False, default=5)
    reorder_quantity = Column(Integer, nullable=False, default=10)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


# --- Orders ---

class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String, unique=True, nullable=False) # Business-level order identifier.
    user_id = Column(String, index=True, nullable=False)
    status = Column(_enum_column(OrderStatus), nullable=False, default=OrderStatus.PENDING)
    subtotal = Column(Money, nullable=False)
    shipping_fee = Column(Money, nullable=False)
    tax_amount = Column(Money, nullable=False)
    total_amount = Column(Money, nullable=False)
    shipping_address_id = Column(Integer, ForeignKey("addresses.id"), nullable=False)
    billing_address_id = Column(Integer, ForeignKey("addresses.id"), nullable=False)
    shipping_method = Column(String, nullable=False)
    payment_method = Column(String, nullable=False)
    notes = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.id")
    status_history = relationship(
        "OrderStatusHistory", back_populates="order", order_by="OrderStatusHistory.id"
    )
    payment = relationship("Payment", back_populates="order", uselist=False)
    invoice = relationship("Invoice", back_populates="order", uselist=False)
    tracking = relationship("ShipmentTracking", back_populates="order", uselist=False)
    shipping_address = relationship("Address", foreign_keys=[shipping_address_id])
    billing_address = relationship("Address", foreign_keys=[billing_address_id])


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    product_variant_id = Column(Integer, ForeignKey("product_variants.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Money, nullable=False) # Unit price at order time.
    # Catalog names captured at order time so later edits don't rewrite history.
    product_name = Column(String, nullable=False)
    variant_name = Column(String, nullable=False)
    sku = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    order = relationship("Order", back_populates="items")


class OrderStatusHistory(Base):
    __tablename__ = "order_status_history"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    status = Column(_enum_column(OrderStatus), nullable=False)
    notes = Column(Text)
    created_by = Column(String, nullable=False) # Actor: a user id or "system".
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    order = relationship("Order", back_populates="status_history")


# --- Payments, invoices and shipments ---

class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), unique=True, nullable=False) # One payment per order.
    amount = Column(Money, nullable=False)
    payment_method = Column(String, nullable=False)
    status = Column(_enum_column(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    transaction_id = Column(String, index=True) # Gateway payment id once known.
    payment_details = Column(JSON) # Opaque gateway-specific data.
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    order = relationship("Order", back_populates="payment")


class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True)
    invoice_number = Column(String, unique=True, nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"), unique=True, nullable=False)
    issue_date = Column(DateTime(timezone=True), nullable=False)
    due_date = Column(DateTime(timezone=True), nullable=False)
    status = Column(_enum_column(InvoiceStatus), nullable=False, default=InvoiceStatus.ISSUED)
    amount = Column(Money, nullable=False) # Excluding tax.
    tax_amount = Column(Money, nullable=False)
    total_amount = Column(Money, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    order = relationship("Order", back_populates="invoice")


class ShipmentTracking(Base):
    __tablename__ = "shipping_tracking"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), unique=True, nullable=False)
    tracking_number = Column(String, unique=True, nullable=False, index=True)
    carrier = Column(String, nullable=False)
    status = Column(String, nullable=False)
    estimated_delivery = Column(String)
    label_url = Column(String)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    order = relationship("Order", back_populates="tracking")
