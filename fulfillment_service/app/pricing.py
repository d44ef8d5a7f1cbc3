from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Tuple

CENT = Decimal("0.01")
DEFAULT_TAX_RATE = Decimal("0.10")


def to_money(value) -> Decimal:
    """Round a value to cents, half-up. Every stored amount goes through here."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    shipping_fee: Decimal
    tax_amount: Decimal
    total_amount: Decimal


def calculate_totals(
    lines: Iterable[Tuple[Decimal, int]],
    shipping_base_price,
    tax_rate=DEFAULT_TAX_RATE,
) -> Totals:
    """
    Computes order totals from (unit price, quantity) pairs.
    - Shipping fee is the shipping method's base price.
    - Tax is charged on the subtotal only.
    - The total is summed from the rounded parts so the stored columns always add up.
    """
    subtotal = to_money(sum((Decimal(str(price)) * qty for price, qty in lines), Decimal("0")))
    shipping_fee = to_money(shipping_base_price)
    tax_amount = to_money(subtotal * Decimal(str(tax_rate)))
    if subtotal < 0 or shipping_fee < 0 or tax_amount < 0:
        raise ValueError("Order amounts must be non-negative")
    return Totals(
        subtotal=subtotal,
        shipping_fee=shipping_fee,
        tax_amount=tax_amount,
        total_amount=subtotal + shipping_fee + tax_amount,
    )


def to_minor_units(amount) -> int:
    """Converts an amount to the gateway's smallest currency unit (paise/cents)."""
    return int((to_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))
