from decimal import Decimal

from app.services import pricing


def test_quantize_money_rounding_modes() -> None:
    assert pricing.quantize_money(Decimal("1.005"), rounding="half_up") == Decimal("1.01")
    assert pricing.quantize_money(Decimal("1.005"), rounding="half_even") == Decimal("1.00")
    assert pricing.quantize_money(Decimal("1.015"), rounding="half_even") == Decimal("1.02")
    assert pricing.quantize_money(Decimal("1.001"), rounding="up") == Decimal("1.01")
    assert pricing.quantize_money(Decimal("1.009"), rounding="down") == Decimal("1.00")
    assert pricing.quantize_money(0.1 + 0.2) == Decimal("0.30")


def test_minor_units_and_line_totals() -> None:
    assert pricing.to_minor_units(Decimal("288.00")) == 28800
    assert pricing.to_minor_units("19.999") == 2000
    assert pricing.line_total(Decimal("80.00"), 3) == Decimal("240.00")


def test_breakdown_applies_tax_and_service_charge_after_discount() -> None:
    breakdown = pricing.compute_payment_breakdown(
        Decimal("1200.00"), discount=Decimal("100.00"), tax_rate_percent=18, service_charge_percent=2
    )
    assert breakdown.items_total == Decimal("1200.00")
    assert breakdown.subtotal == Decimal("1100.00")
    assert breakdown.tax == Decimal("198.00")
    assert breakdown.service_charge == Decimal("22.00")
    assert breakdown.total_amount == Decimal("1320.00")
    assert breakdown.amount_minor == 132000


def test_breakdown_never_goes_negative() -> None:
    breakdown = pricing.compute_payment_breakdown(
        Decimal("50.00"), discount=Decimal("80.00"), tax_rate_percent=18, service_charge_percent=2
    )
    assert breakdown.subtotal == Decimal("0.00")
    assert breakdown.total_amount == Decimal("0.00")
