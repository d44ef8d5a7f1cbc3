import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal


# Address packages are shipped from; sent to the carrier as the pickup location.
@dataclass(frozen=True)
class WarehouseAddress:
    name: str = "Warehouse"
    address: str = "123 Warehouse St"
    city: str = "New Delhi"
    state: str = "DL"
    postal_code: str = "110001"
    country: str = "IN"
    phone: str = "0000000000"


@dataclass(frozen=True)
class Settings:
    """Runtime configuration, read from environment variables."""
    log_level: str = "INFO"

    # Pricing
    tax_rate: Decimal = Decimal("0.10")
    currency: str = "INR"
    store_name: str = "Your E-Commerce Store"
    invoice_due_days: int = 30

    # Payment gateway (Razorpay)
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_webhook_secret: str = ""
    razorpay_base_url: str = "https://api.razorpay.com/v1"
    gateway_timeout_seconds: float = 10.0

    # Shipping carrier (Delhivery)
    delhivery_api_key: str = ""
    delhivery_base_url: str = "https://track.delhivery.com/api"
    carrier_timeout_seconds: float = 10.0
    warehouse: WarehouseAddress = field(default_factory=WarehouseAddress)

    # Identity provider: token introspection endpoint.
    identity_url: str = ""

    # Message bus. An empty host disables event publishing.
    rabbitmq_host: str = ""
    rabbitmq_exchange: str = "events"


def load_settings() -> Settings:
    """Build a Settings object from the process environment."""
    defaults = Settings()
    warehouse = WarehouseAddress(
        name=os.getenv("WAREHOUSE_NAME", defaults.warehouse.name),
        address=os.getenv("WAREHOUSE_ADDRESS", defaults.warehouse.address),
        city=os.getenv("WAREHOUSE_CITY", defaults.warehouse.city),
        state=os.getenv("WAREHOUSE_STATE", defaults.warehouse.state),
        postal_code=os.getenv("WAREHOUSE_POSTAL_CODE", defaults.warehouse.postal_code),
        country=os.getenv("WAREHOUSE_COUNTRY", defaults.warehouse.country),
        phone=os.getenv("WAREHOUSE_PHONE", defaults.warehouse.phone),
    )
    return Settings(
        log_level=os.getenv("LOG_LEVEL", defaults.log_level),
        tax_rate=Decimal(os.getenv("TAX_RATE", str(defaults.tax_rate))),
        currency=os.getenv("CURRENCY", defaults.currency),
        store_name=os.getenv("STORE_NAME", defaults.store_name),
        invoice_due_days=int(os.getenv("INVOICE_DUE_DAYS", str(defaults.invoice_due_days))),
        razorpay_key_id=os.getenv("RAZORPAY_KEY_ID", ""),
        razorpay_key_secret=os.getenv("RAZORPAY_KEY_SECRET", ""),
        razorpay_webhook_secret=os.getenv("RAZORPAY_WEBHOOK_SECRET", ""),
        razorpay_base_url=os.getenv("RAZORPAY_BASE_URL", defaults.razorpay_base_url),
        gateway_timeout_seconds=float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10")),
        delhivery_api_key=os.getenv("DELHIVERY_API_KEY", ""),
        delhivery_base_url=os.getenv("DELHIVERY_BASE_URL", defaults.delhivery_base_url),
        carrier_timeout_seconds=float(os.getenv("CARRIER_TIMEOUT_SECONDS", "10")),
        warehouse=warehouse,
        identity_url=os.getenv("IDENTITY_URL", ""),
        rabbitmq_host=os.getenv("RABBITMQ_HOST", ""),
        rabbitmq_exchange=os.getenv("RABBITMQ_EXCHANGE", defaults.rabbitmq_exchange),
    )


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger once at startup."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
