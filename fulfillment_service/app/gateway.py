"""Razorpay payment gateway client."""

import hashlib
import hmac
import logging

import requests

from .errors import GatewayError, GatewayTimeout

logger = logging.getLogger(__name__)


def hmac_sha256_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class RazorpayGateway:
    """
    Thin wrapper over the Razorpay REST API.
    Every call has a bounded timeout; failures surface as GatewayError / GatewayTimeout.
    """

    def __init__(self, key_id: str, key_secret: str, webhook_secret: str = "",
                 base_url: str = "https://api.razorpay.com/v1", timeout: float = 10.0,
                 session: requests.Session | None = None):
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def is_enabled(self) -> bool:
        return bool(self.key_id and self.key_secret)

    def _request(self, method: str, path: str, **kwargs) -> dict:
        if not self.is_enabled:
            raise GatewayError("Payment gateway is not configured")

        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(
                method, url, auth=(self.key_id, self.key_secret), timeout=self.timeout, **kwargs
            )
        except requests.exceptions.Timeout as exc:
            logger.warning("Razorpay %s %s timed out after %ss", method, path, self.timeout)
            raise GatewayTimeout(f"Payment gateway timed out: {method} {path}") from exc
        except requests.exceptions.RequestException as exc:
            logger.error("Razorpay %s %s failed: %s", method, path, exc)
            raise GatewayError(f"Payment gateway unreachable: {exc}") from exc

        if not response.ok:
            description = response.reason
            try:
                description = response.json().get("error", {}).get("description") or description
            except ValueError:
                pass
            logger.error("Razorpay %s %s returned %s: %s", method, path, response.status_code, description)
            raise GatewayError(f"Razorpay API error: {description}")
        return response.json()

    def create_order(self, amount: int, currency: str, receipt: str, notes: dict | None = None) -> dict:
        """Creates a remote order; amount is in the smallest currency unit."""
        payload = {"amount": amount, "currency": currency, "receipt": receipt, "notes": notes or {}}
        return self._request("POST", "/orders", json=payload)

    def fetch_payment(self, payment_id: str) -> dict:
        return self._request("GET", f"/payments/{payment_id}")

    def create_refund(self, payment_id: str, amount: int | None = None) -> dict:
        """Refunds a captured payment, fully unless an amount (minor units) is given."""
        body = {"amount": amount} if amount else {}
        return self._request("POST", f"/payments/{payment_id}/refund", json=body)

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        """Checkout callbacks sign "<order_id>|<payment_id>" with the key secret."""
        if not self.key_secret or not signature:
            return False
        expected = hmac_sha256_hex(self.key_secret, f"{order_id}|{payment_id}".encode("utf-8"))
        return hmac.compare_digest(expected, signature)

    def verify_webhook_signature(self, body: bytes, signature: str) -> bool:
        """Webhooks sign the raw request body with the webhook secret."""
        if not self.webhook_secret or not signature:
            return False
        return hmac.compare_digest(hmac_sha256_hex(self.webhook_secret, body), signature)

    def client_config(self) -> dict:
        """Public checkout parameters. Never includes the key secret."""
        return {"key_id": self.key_id}
