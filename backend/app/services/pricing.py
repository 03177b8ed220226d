from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_EVEN, ROUND_HALF_UP, ROUND_UP
from typing import Any, Literal

from app.core.config import settings


MONEY_QUANT = Decimal("0.01")
ZERO = Decimal("0.00")

MoneyRounding = Literal["half_up", "half_even", "up", "down"]


_ROUNDING_MAP: dict[str, str] = {
    "half_up": ROUND_HALF_UP,
    "half_even": ROUND_HALF_EVEN,
    "up": ROUND_UP,
    "down": ROUND_DOWN,
}


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if value is None:
        return ZERO
    # str() first so floats do not leak binary noise into the amount.
    return Decimal(str(value))


def quantize_money(value: Any, *, rounding: MoneyRounding = "half_up") -> Decimal:
    mode = _ROUNDING_MAP.get(str(rounding), ROUND_HALF_UP)
    return to_decimal(value).quantize(MONEY_QUANT, rounding=mode)


def to_minor_units(value: Any) -> int:
    """Convert a major-unit amount (rupees) into integer minor units (paise)."""
    return int((quantize_money(value) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def percent_of(amount: Decimal, rate_percent: Any) -> Decimal:
    return quantize_money(to_decimal(amount) * to_decimal(rate_percent) / Decimal("100"))


def line_total(unit_price: Any, quantity: int) -> Decimal:
    return quantize_money(to_decimal(unit_price) * int(quantity))


@dataclass(frozen=True)
class PaymentBreakdown:
    items_total: Decimal
    discount: Decimal
    subtotal: Decimal
    tax: Decimal
    service_charge: Decimal
    total_amount: Decimal

    @property
    def amount_minor(self) -> int:
        return to_minor_units(self.total_amount)


def compute_payment_breakdown(
    items_total: Any,
    *,
    discount: Any = ZERO,
    tax_rate_percent: Any | None = None,
    service_charge_percent: Any | None = None,
) -> PaymentBreakdown:
    items_q = quantize_money(items_total)
    discount_q = quantize_money(discount) if to_decimal(discount) > 0 else ZERO
    subtotal = items_q - discount_q
    if subtotal < 0:
        subtotal = ZERO
    tax_rate = settings.tax_rate_percent if tax_rate_percent is None else tax_rate_percent
    service_rate = settings.service_charge_percent if service_charge_percent is None else service_charge_percent
    tax = percent_of(subtotal, tax_rate)
    service_charge = percent_of(subtotal, service_rate)
    return PaymentBreakdown(
        items_total=items_q,
        discount=discount_q,
        subtotal=subtotal,
        tax=tax,
        service_charge=service_charge,
        total_amount=quantize_money(subtotal + tax + service_charge),
    )
