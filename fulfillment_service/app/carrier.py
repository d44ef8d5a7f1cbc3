"""Delhivery shipping carrier client."""

import logging
from dataclasses import dataclass, field
from decimal import Decimal

import requests

from .errors import CarrierError

logger = logging.getLogger(__name__)

CREATE_SHIPMENT = "/v1/packages/json/"
TRACK_SHIPMENT = "/v1/packages/json/track/"
CALCULATE_RATE = "/v1/packages/json/estimate/"

# Carrier status code -> our shipment status
CARRIER_STATUS_MAP = {
    "Delivered": "delivered",
    "Out for Delivery": "out_for_delivery",
    "Pending Pickup": "pending",
}


def map_carrier_status(status_code: str | None) -> str:
    return CARRIER_STATUS_MAP.get(status_code or "", "in_transit")


@dataclass(frozen=True)
class TrackingEvent:
    date: str
    location: str
    activity: str


@dataclass
class TrackingInfo:
    tracking_number: str
    status_code: str
    status_description: str = ""
    estimated_delivery: str | None = None
    delivery_date: str | None = None
    events: list = field(default_factory=list)

    @property
    def status(self) -> str:
        return map_carrier_status(self.status_code)


@dataclass(frozen=True)
class RateQuote:
    cost: Decimal
    estimated_days: int


@dataclass(frozen=True)
class Parcel:
    """What goes in the box: weight in kg, declared value, short description."""
    weight_kg: Decimal
    declared_value: Decimal
    description: str


def format_address(address: dict) -> str:
    parts = [
        address.get("address_line1") or address.get("address"),
        address.get("address_line2"),
        address.get("landmark"),
        address.get("city"),
        address.get("state"),
        address.get("postal_code"),
    ]
    return ", ".join(part.strip() for part in parts if part and part.strip())


class DelhiveryCarrier:
    """Creates, tracks and prices shipments through the Delhivery JSON API."""

    name = "Delhivery"

    def __init__(self, api_key: str, base_url: str = "https://track.delhivery.com/api",
                 timeout: float = 10.0, session: requests.Session | None = None):
        if not api_key:
            logger.warning("Delhivery API key not configured; shipping operations will fail")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = self.session.request(
                method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs
            )
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as exc:
            logger.error("Delhivery %s %s failed: %s", method, path, exc)
            raise CarrierError(f"Delhivery API error: {exc}") from exc
        except ValueError as exc:
            raise CarrierError("Delhivery returned a malformed response") from exc

    def create_shipment(self, reference: str, ship_from: dict, ship_to: dict, parcel: Parcel,
                        prepaid: bool = True) -> str:
        """Books a pickup and returns the waybill (tracking number)."""
        shipment = {
            "name": ship_to.get("name") or "",
            "add": format_address(ship_to),
            "pin": ship_to.get("postal_code"),
            "city": ship_to.get("city"),
            "state": ship_to.get("state"),
            "country": ship_to.get("country"),
            "phone": ship_to.get("phone") or "",
            "order": reference,
            "payment_mode": "Prepaid" if prepaid else "COD",
            "cod_amount": "0" if prepaid else str(parcel.declared_value),
            "return_pin": ship_from.get("postal_code"),
            "return_city": ship_from.get("city"),
            "return_phone": ship_from.get("phone"),
            "return_add": format_address(ship_from),
            "return_state": ship_from.get("state"),
            "return_country": ship_from.get("country"),
            "products_desc": parcel.description,
            "weight": str(parcel.weight_kg),
            "quantity": "1",
        }
        payload = {
            "format": "json",
            "data": {
                "shipments": [shipment],
                "pickup_location": {
                    "name": ship_from.get("name"),
                    "add": format_address(ship_from),
                    "city": ship_from.get("city"),
                    "pin": ship_from.get("postal_code"),
                    "state": ship_from.get("state"),
                    "country": ship_from.get("country"),
                    "phone": ship_from.get("phone"),
                },
            },
        }
        data = self._request(
            "POST", CREATE_SHIPMENT, json=payload, headers={"Authorization": f"Token {self.api_key}"}
        )

        packages = data.get("packages") or []
        waybill = packages[0].get("waybill") if packages else None
        if not waybill:
            raise CarrierError(f"Failed to create shipment: {data.get('error') or 'no waybill returned'}")
        logger.info("Delhivery shipment %s created for %s", waybill, reference)
        return waybill

    def track_shipment(self, tracking_number: str) -> TrackingInfo:
        data = self._request(
            "GET", TRACK_SHIPMENT, params={"waybill": tracking_number, "token": self.api_key}
        )
        shipments = data.get("ShipmentData") or []
        if not shipments:
            raise CarrierError(f"No tracking data found for {tracking_number}")

        shipment = shipments[0].get("Shipment") or {}
        events = [
            TrackingEvent(
                date=scan.get("ScanDateTime", ""),
                location=scan.get("ScannedLocation", ""),
                activity=scan.get("Instructions", ""),
            )
            for scan in shipments[0].get("Scans") or []
        ]
        return TrackingInfo(
            tracking_number=tracking_number,
            status_code=shipment.get("StatusCode") or "",
            status_description=shipment.get("StatusDescription") or "",
            estimated_delivery=shipment.get("ExpectedDeliveryDate"),
            delivery_date=shipment.get("DeliveryDate"),
            events=events,
        )

    def calculate_rate(self, origin_postal: str, destination_postal: str, weight_kg) -> RateQuote:
        data = self._request(
            "GET",
            CALCULATE_RATE,
            params={
                "o_pin": origin_postal,
                "d_pin": destination_postal,
                "weight": str(weight_kg),
                "token": self.api_key,
            },
        )
        return RateQuote(
            cost=Decimal(str(data.get("rate") or 0)),
            estimated_days=int(data.get("expected_delivery_days") or 5),
        )

    def label_url(self, waybill: str) -> str:
        return f"{self.base_url}/p/packing-slip/{waybill}"

    def tracking_url(self, waybill: str) -> str:
        return f"https://www.delhivery.com/track/package/{waybill}"
