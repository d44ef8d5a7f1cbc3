"""Request and response models for the HTTP API."""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, RootModel

from .models import InvoiceStatus, OrderStatus, PaymentStatus


# --- Requests ---

class CheckoutRequest(BaseModel):
    """Defines the data model for an incoming checkout request."""
    cart_id: str = Field(min_length=1)
    shipping_address_id: int
    billing_address_id: int
    shipping_method: str = Field(min_length=1)
    payment_method: str = Field(min_length=1)
    notes: Optional[str] = None


class StatusUpdateRequest(BaseModel):
    status: OrderStatus
    notes: Optional[str] = None


class CreateGatewayOrderRequest(BaseModel):
    action: Literal["create_order"]
    order_id: int


class VerifyPaymentRequest(BaseModel):
    action: Literal["verify"]
    order_id: int
    razorpay_order_id: str = Field(min_length=1)
    razorpay_payment_id: str = Field(min_length=1)
    razorpay_signature: str = Field(min_length=1)


class PaymentProcessRequest(
    RootModel[
        Annotated[
            Union[CreateGatewayOrderRequest, VerifyPaymentRequest],
            Field(discriminator="action"),
        ]
    ]
):
    """The "action" field picks the payment flow."""


class RefundRequest(BaseModel):
    reason: Optional[str] = None
    amount: Optional[Decimal] = Field(default=None, gt=0)


class InvoiceStatusRequest(BaseModel):
    status: InvoiceStatus


class ShippingMethodCreate(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    base_price: Decimal = Field(ge=0)
    estimated_days: Optional[int] = Field(default=None, ge=0)
    is_active: bool = True


class ShippingMethodUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    base_price: Optional[Decimal] = Field(default=None, ge=0)
    estimated_days: Optional[int] = Field(default=None, ge=0)
    is_active: Optional[bool] = None


class QuoteItem(BaseModel):
    product_variant_id: int
    quantity: int = Field(gt=0)


class ShippingQuoteRequest(BaseModel):
    shipping_method_id: int
    address_id: int
    items: List[QuoteItem] = []


class InventoryCreate(BaseModel):
    product_variant_id: int
    quantity: int = Field(default=0, ge=0)
    reorder_level: int = Field(default=5, ge=0)
    reorder_quantity: int = Field(default=10, ge=0)


class InventoryUpdate(BaseModel):
    quantity: Optional[int] = Field(default=None, ge=0)
    reserved_quantity: Optional[int] = Field(default=None, ge=0)
    reorder_level: Optional[int] = Field(default=None, ge=0)
    reorder_quantity: Optional[int] = Field(default=None, ge=0)


# --- Responses ---

class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class OrderItemOut(ORMModel):
    id: int
    product_variant_id: int
    quantity: int
    price: Decimal
    product_name: str
    variant_name: str
    sku: str


class StatusHistoryOut(ORMModel):
    id: int
    status: OrderStatus
    notes: Optional[str] = None
    created_by: str
    created_at: datetime


class PaymentOut(ORMModel):
    id: int
    order_id: int
    amount: Decimal
    payment_method: str
    status: PaymentStatus
    transaction_id: Optional[str] = None
    payment_details: Optional[dict] = None
    created_at: datetime
    updated_at: datetime


class InvoiceOut(ORMModel):
    id: int
    invoice_number: str
    order_id: int
    issue_date: datetime
    due_date: datetime
    status: InvoiceStatus
    amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal


class TrackingOut(ORMModel):
    tracking_number: str
    carrier: str
    status: str
    estimated_delivery: Optional[str] = None
    label_url: Optional[str] = None


class OrderSummary(ORMModel):
    id: int
    order_number: str
    user_id: str
    status: OrderStatus
    subtotal: Decimal
    shipping_fee: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    shipping_method: str
    payment_method: str
    created_at: datetime
    updated_at: datetime


class OrderDetail(OrderSummary):
    shipping_address_id: int
    billing_address_id: int
    notes: Optional[str] = None
    items: List[OrderItemOut] = []
    status_history: List[StatusHistoryOut] = []
    payment: Optional[PaymentOut] = None
    invoice: Optional[InvoiceOut] = None
    tracking: Optional[TrackingOut] = None


class ShippingMethodOut(ORMModel):
    id: int
    name: str
    description: Optional[str] = None
    base_price: Decimal
    estimated_days: Optional[int] = None
    is_active: bool


class InventoryOut(ORMModel):
    id: int
    product_variant_id: int
    quantity: int
    reserved_quantity: int
    reorder_level: int
    reorder_quantity: int
    updated_at: datetime


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


def paginated(items: List[Any], total: int, page: int, limit: int) -> dict:
    return {
        "items": items,
        "pagination": Pagination(
            page=page, limit=limit, total=total, pages=(total + limit - 1) // limit
        ),
    }
