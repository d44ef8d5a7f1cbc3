"""Shared fixtures: an in-memory database, seeded catalog data and fake collaborators."""

from decimal import Decimal
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fulfillment_service.app.carrier import DelhiveryCarrier, RateQuote, TrackingEvent, TrackingInfo
from fulfillment_service.app.config import Settings
from fulfillment_service.app.database import Base, get_db
from fulfillment_service.app.fulfillment import FulfillmentService
from fulfillment_service.app.gateway import RazorpayGateway, hmac_sha256_hex
from fulfillment_service.app.identity import IdentityProvider, Principal
from fulfillment_service.app.main import create_app
from fulfillment_service.app.messaging import EventPublisher
from fulfillment_service.app.models import (
    Address,
    Cart,
    CartItem,
    InventoryRecord,
    Product,
    ProductVariant,
    ShippingMethod,
)

KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"

CUSTOMER = Principal(user_id="user-1", email="alice@example.com", role="customer")
OTHER_CUSTOMER = Principal(user_id="user-2", email="bob@example.com", role="customer")
ADMIN = Principal(user_id="admin-1", email="ops@example.com", role="admin")

TOKENS = {
    "customer-token": CUSTOMER,
    "other-token": OTHER_CUSTOMER,
    "admin-token": ADMIN,
}


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


# --- Fakes ---

class FakeIdentity(IdentityProvider):
    def verify(self, token):
        return TOKENS.get(token)


class FakeGateway(RazorpayGateway):
    """Razorpay client with the network calls replaced; signatures are checked for real."""

    def __init__(self):
        super().__init__("rzp_test_key", KEY_SECRET, WEBHOOK_SECRET)
        self.created_orders = []
        self.fetched = []
        self.refunds = []
        self.remote_status = "captured"
        self.fetch_error = None
        self.refund_error = None

    def create_order(self, amount, currency, receipt, notes=None):
        self.created_orders.append(
            {"amount": amount, "currency": currency, "receipt": receipt, "notes": notes}
        )
        return {"id": f"order_rzp_{len(self.created_orders)}", "amount": amount, "currency": currency}

    def fetch_payment(self, payment_id):
        self.fetched.append(payment_id)
        if self.fetch_error is not None:
            raise self.fetch_error
        return {"id": payment_id, "status": self.remote_status, "method": "card"}

    def create_refund(self, payment_id, amount=None):
        self.refunds.append((payment_id, amount))
        if self.refund_error is not None:
            raise self.refund_error
        return {"id": f"rfnd_{len(self.refunds)}", "payment_id": payment_id, "amount": amount}

    def sign(self, order_id, payment_id):
        return hmac_sha256_hex(KEY_SECRET, f"{order_id}|{payment_id}".encode("utf-8"))

    def sign_webhook(self, body: bytes):
        return hmac_sha256_hex(WEBHOOK_SECRET, body)


class FakeCarrier(DelhiveryCarrier):
    def __init__(self):
        super().__init__("test-api-key")
        self.shipments = []
        self.rate_requests = []
        self.status_code = "In Transit"
        self.rate = RateQuote(cost=Decimal("42.00"), estimated_days=3)
        self.error = None

    def create_shipment(self, reference, ship_from, ship_to, parcel, prepaid=True):
        if self.error is not None:
            raise self.error
        self.shipments.append(
            {"reference": reference, "ship_from": ship_from, "ship_to": ship_to,
             "parcel": parcel, "prepaid": prepaid}
        )
        return f"WB{1000 + len(self.shipments)}"

    def track_shipment(self, tracking_number):
        if self.error is not None:
            raise self.error
        return TrackingInfo(
            tracking_number=tracking_number,
            status_code=self.status_code,
            estimated_delivery="2026-10-20",
            delivery_date="2026-10-19T10:00:00" if self.status_code == "Delivered" else None,
            events=[TrackingEvent(date="2026-10-17", location="Delhi Hub", activity="Picked up")],
        )

    def calculate_rate(self, origin_postal, destination_postal, weight_kg):
        self.rate_requests.append((origin_postal, destination_postal, weight_kg))
        if self.error is not None:
            raise self.error
        return self.rate


class RecordingPublisher(EventPublisher):
    def __init__(self):
        self.events = []

    def publish(self, routing_key, message):
        self.events.append((routing_key, message))

    @property
    def routing_keys(self):
        return [key for key, _ in self.events]


# --- Database ---

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def seed(db):
    """
    Two variants in stock, addresses for two customers, shipping methods, and
    user-1's cart holding 3 x variant A @ 10.00 and 1 x variant B @ 25.00.
    """
    product = Product(name="T-Shirt")
    db.add(product)
    db.flush()

    variant_a = ProductVariant(product_id=product.id, name="Small", sku="TS-S",
                               price=Decimal("10.00"), weight_kg=Decimal("0.400"))
    variant_b = ProductVariant(product_id=product.id, name="Large", sku="TS-L",
                               price=Decimal("25.00"))
    db.add_all([variant_a, variant_b])
    db.flush()

    db.add_all([
        InventoryRecord(product_variant_id=variant_a.id, quantity=10),
        InventoryRecord(product_variant_id=variant_b.id, quantity=5),
    ])

    home = Address(user_id="user-1", name="Alice", phone="5550001", address_line1="1 Main St",
                   city="Springfield", state="IL", postal_code="62701", country="US")
    india = Address(user_id="user-1", name="Alice", phone="9990001", address_line1="7 MG Road",
                    city="Bengaluru", state="KA", postal_code="560001", country="IN")
    bobs = Address(user_id="user-2", name="Bob", phone="5550002", address_line1="2 Oak Ave",
                   city="Portland", state="OR", postal_code="97201", country="US")
    db.add_all([home, india, bobs])

    standard = ShippingMethod(name="Standard", description="3-5 days",
                              base_price=Decimal("5.00"), estimated_days=5)
    express = ShippingMethod(name="Express", base_price=Decimal("15.00"), estimated_days=2)
    retired = ShippingMethod(name="Pigeon", base_price=Decimal("1.00"), is_active=False)
    db.add_all([standard, express, retired])

    cart = Cart(id="cart-1", user_id="user-1")
    other_cart = Cart(id="cart-2", user_id="user-2")
    db.add_all([cart, other_cart])
    db.flush()
    db.add_all([
        CartItem(cart_id=cart.id, product_variant_id=variant_a.id, quantity=3, price=Decimal("10.00")),
        CartItem(cart_id=cart.id, product_variant_id=variant_b.id, quantity=1, price=Decimal("25.00")),
    ])
    db.commit()

    return SimpleNamespace(
        variant_a=variant_a.id,
        variant_b=variant_b.id,
        address=home.id,
        india_address=india.id,
        other_address=bobs.id,
        standard=standard.id,
        express=express.id,
        retired=retired.id,
        cart="cart-1",
        other_cart="cart-2",
    )


# --- Principals ---

@pytest.fixture
def customer():
    return CUSTOMER


@pytest.fixture
def other_customer():
    return OTHER_CUSTOMER


@pytest.fixture
def admin():
    return ADMIN


# --- Collaborators ---

@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def carrier():
    return FakeCarrier()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def service(db, settings, gateway, carrier, publisher):
    return FulfillmentService(db, settings, gateway, carrier, publisher)


@pytest.fixture
def place_order(service, seed):
    """Checks out user-1's cart and returns the new order's id."""
    def _place(payment_method="card", shipping_method="Standard"):
        order = service.checkout(
            CUSTOMER,
            cart_id=seed.cart,
            shipping_address_id=seed.address,
            billing_address_id=seed.address,
            shipping_method=shipping_method,
            payment_method=payment_method,
        )
        return order.id
    return _place


# --- HTTP ---

@pytest.fixture
def app(session_factory, settings, gateway, carrier, publisher):
    app = create_app(
        settings=settings,
        identity=FakeIdentity(),
        gateway=gateway,
        carrier=carrier,
        publisher=publisher,
    )

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def auth():
    return SimpleNamespace(
        customer=bearer("customer-token"),
        other=bearer("other-token"),
        admin=bearer("admin-token"),
    )


@pytest.fixture
def stock(db):
    """Reads a variant's on-hand quantity straight from the database."""
    def _stock(variant_id):
        return (
            db.query(InventoryRecord.quantity)
            .filter(InventoryRecord.product_variant_id == variant_id)
            .scalar()
        )
    return _stock


@pytest.fixture
def checkout_body(seed):
    return {
        "cart_id": seed.cart,
        "shipping_address_id": seed.address,
        "billing_address_id": seed.address,
        "shipping_method": "Standard",
        "payment_method": "card",
    }

