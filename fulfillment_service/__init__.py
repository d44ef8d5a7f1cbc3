"""Order and fulfillment service: checkout, payments, shipping and invoices."""

__version__ = "0.3.0"
