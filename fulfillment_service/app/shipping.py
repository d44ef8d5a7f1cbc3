"""Shipping methods, quotes and shipment tracking records."""

import logging
from dataclasses import asdict
from datetime import timedelta
from decimal import Decimal

from sqlalchemy.orm import Session

from .carrier import Parcel
from .config import Settings
from .errors import CarrierError, Conflict, NotFound, ValidationFailed
from .models import Address, Order, ProductVariant, ShipmentTracking, ShippingMethod, utcnow
from .pricing import to_money

logger = logging.getLogger(__name__)

DEFAULT_ITEM_WEIGHT_KG = Decimal("0.5")
DEFAULT_DELIVERY_DAYS = 7
# Flat multipliers by destination when no carrier quote is available.
INTERNATIONAL_COUNTRIES = frozenset({"CA", "GB", "AU", "DE", "FR", "JP", "CN"})
REMOTE_US_STATES = frozenset({"AK", "HI"})

METHOD_FIELDS = ("name", "description", "base_price", "estimated_days", "is_active")


def estimate_shipping_cost(base_price, weight_kg, country: str, state: str | None = None) -> Decimal:
    """
    Local shipping estimate:
    - base price plus 2 per kg above the first kilogram
    - doubled for major international destinations, tripled for other non-US ones
    - 1.5x for Alaska and Hawaii
    """
    cost = Decimal(str(base_price))
    weight = Decimal(str(weight_kg))
    if weight > 1:
        cost += (weight - 1) * 2

    if country != "US":
        cost *= 2 if country in INTERNATIONAL_COUNTRIES else 3
    elif state in REMOTE_US_STATES:
        cost *= Decimal("1.5")
    return to_money(cost)


def address_to_dict(address: Address) -> dict:
    return {
        "name": address.name,
        "phone": address.phone,
        "address_line1": address.address_line1,
        "address_line2": address.address_line2,
        "landmark": address.landmark,
        "city": address.city,
        "state": address.state,
        "postal_code": address.postal_code,
        "country": address.country,
    }


class ShippingService:
    def __init__(self, db: Session, carrier, settings: Settings):
        self.db = db
        self.carrier = carrier
        self.settings = settings

    # --- Shipping methods ---

    def list_methods(self):
        """Active shipping methods, cheapest first."""
        return (
            self.db.query(ShippingMethod)
            .filter(ShippingMethod.is_active.is_(True))
            .order_by(ShippingMethod.base_price.asc(), ShippingMethod.id.asc())
            .all()
        )

    def get_method_or_raise(self, method_id: int) -> ShippingMethod:
        method = self.db.query(ShippingMethod).filter(ShippingMethod.id == method_id).first()
        if method is None:
            raise NotFound("Shipping method", method_id)
        return method

    def _check_name_free(self, name: str, exclude_id: int | None = None) -> None:
        query = self.db.query(ShippingMethod.id).filter(ShippingMethod.name == name)
        if exclude_id is not None:
            query = query.filter(ShippingMethod.id != exclude_id)
        if query.first() is not None:
            raise Conflict(f'Shipping method with name "{name}" already exists')

    def create_method(self, name: str, base_price, description: str | None = None,
                      estimated_days: int | None = None, is_active: bool = True) -> ShippingMethod:
        self._check_name_free(name)
        method = ShippingMethod(
            name=name,
            description=description,
            base_price=to_money(base_price),
            estimated_days=estimated_days,
            is_active=is_active,
        )
        self.db.add(method)
        self.db.flush()
        logger.info("Shipping method '%s' created", name)
        return method

    def update_method(self, method_id: int, **changes) -> ShippingMethod:
        values = {name: value for name, value in changes.items() if value is not None}
        unknown = set(values) - set(METHOD_FIELDS)
        if unknown:
            raise ValidationFailed(f"Unknown shipping method fields: {', '.join(sorted(unknown))}")
        if not values:
            raise ValidationFailed("No fields provided for update")

        method = self.get_method_or_raise(method_id)
        if "name" in values and values["name"] != method.name:
            self._check_name_free(values["name"], exclude_id=method.id)
        if "base_price" in values:
            values["base_price"] = to_money(values["base_price"])

        for name, value in values.items():
            setattr(method, name, value)
        method.updated_at = utcnow()
        self.db.flush()
        return method

    # --- Quotes ---

    def total_weight(self, items) -> Decimal:
        """Sums (variant_id, quantity) pairs; unknown weights count as the default item weight."""
        items = list(items)
        weights = {}
        if items:
            variant_ids = {variant_id for variant_id, _ in items}
            rows = (
                self.db.query(ProductVariant.id, ProductVariant.weight_kg)
                .filter(ProductVariant.id.in_(variant_ids))
                .all()
            )
            weights = {row.id: row.weight_kg for row in rows}

        total = sum(
            (Decimal(str(weights.get(variant_id) or DEFAULT_ITEM_WEIGHT_KG)) * quantity
             for variant_id, quantity in items),
            Decimal("0"),
        )
        return total if total > 0 else DEFAULT_ITEM_WEIGHT_KG

    def quote(self, method_id: int, address_id: int, items, user_id: str | None = None) -> dict:
        """
        Estimates shipping for a basket. Indian addresses are priced by the carrier,
        everything else (and any carrier failure) by estimate_shipping_cost.
        """
        method = self.get_method_or_raise(method_id)
        query = self.db.query(Address).filter(Address.id == address_id)
        if user_id is not None:
            query = query.filter(Address.user_id == user_id)
        address = query.first()
        if address is None:
            raise NotFound("Address", address_id)

        weight = self.total_weight(items)
        cost = None
        days = None
        carrier_name = None
        if address.country == "IN":
            try:
                rate = self.carrier.calculate_rate(
                    self.settings.warehouse.postal_code, address.postal_code, weight
                )
                if rate.cost > 0:
                    cost, days, carrier_name = to_money(rate.cost), rate.estimated_days, self.carrier.name
            except CarrierError as exc:
                logger.warning("Carrier rate lookup failed, using local estimate: %s", exc)

        if cost is None:
            cost = estimate_shipping_cost(method.base_price, weight, address.country, address.state)
            days = method.estimated_days

        days = days or DEFAULT_DELIVERY_DAYS
        return {
            "shipping_method_id": method.id,
            "shipping_method_name": method.name,
            "cost": cost,
            "currency": "INR" if address.country == "IN" else "USD",
            "weight_kg": weight,
            "estimated_delivery_days": days,
            "estimated_delivery_date": (utcnow() + timedelta(days=days)).date().isoformat(),
            "carrier": carrier_name,
        }

    # --- Shipments ---

    def parcel_for(self, order: Order) -> Parcel:
        weight = self.total_weight((item.product_variant_id, item.quantity) for item in order.items)
        description = ", ".join(f"{item.quantity}x {item.product_name}" for item in order.items)
        return Parcel(weight_kg=weight, declared_value=order.total_amount, description=description)

    def warehouse(self) -> dict:
        return asdict(self.settings.warehouse)

    def get_tracking(self, order_id: int):
        """Returns the order's tracking record, or None."""
        return self.db.query(ShipmentTracking).filter(ShipmentTracking.order_id == order_id).first()

    def get_tracking_by_number(self, tracking_number: str):
        return (
            self.db.query(ShipmentTracking)
            .filter(ShipmentTracking.tracking_number == tracking_number)
            .first()
        )

    def create_tracking(self, order: Order, tracking_number: str) -> ShipmentTracking:
        if self.get_tracking(order.id) is not None:
            raise Conflict(f"Shipping label already exists for order {order.id}")
        record = ShipmentTracking(
            tracking_number=tracking_number,
            carrier=self.carrier.name,
            status="shipped",
            estimated_delivery=(utcnow() + timedelta(days=DEFAULT_DELIVERY_DAYS)).isoformat(),
            label_url=self.carrier.label_url(tracking_number),
        )
        record.order = order
        self.db.add(record)
        self.db.flush()
        return record
