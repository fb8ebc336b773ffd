"""
Tiered, discount-adjusted billing.

  usage    = max(0, current - previous)
  subtotal = min(usage, threshold) * unit_rate
           + max(0, usage - threshold) * upper_rate
           + service_fee
  discount = round(subtotal * pct / 100)   (percentage)
           | min(amount, subtotal)          (fixed)
  final    = max(0, subtotal - discount), rounded half-up to whole currency units

compute_bill() is pure; a preview and the later commit/report call with the
same inputs produce the same BillingResult.
"""

import logging
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

import engine_config as cfg
from engine_config import TariffProfile
from local_store import LocalStore
from models import BillingResult, Discount, Reading, UsageCalculation, month_key

logger = logging.getLogger("meter-sync.billing")


def _whole(amount: Decimal) -> int:
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_usage(current: float, previous: Optional[float]) -> float:
    """Units consumed since the previous reading, never negative."""
    if previous is None:
        return 0.0
    return max(0.0, float(current) - float(previous))


def compute_bill(
    customer_id: str,
    usage: float,
    billing_month: str,
    tariff: TariffProfile = cfg.TARIFF,
    discount: Optional[Discount] = None,
) -> BillingResult:
    usage_d = Decimal(str(max(0.0, float(usage))))
    threshold = Decimal(tariff.tier_threshold)

    unit_usage = min(usage_d, threshold)
    upper_usage = max(Decimal(0), usage_d - threshold)

    unit_charge = unit_usage * Decimal(str(tariff.unit_rate))
    upper_charge = upper_usage * Decimal(str(tariff.upper_rate))
    service_fee = Decimal(str(tariff.service_fee))
    subtotal = _whole(unit_charge + upper_charge + service_fee)

    discount_amount = 0
    applied = None
    if discount is not None and discount.is_active:
        if discount.percentage:
            pct = Decimal(str(discount.percentage))
            discount_amount = _whole(Decimal(subtotal) * pct / Decimal(100))
            applied = discount
        elif discount.amount:
            discount_amount = min(_whole(Decimal(str(discount.amount))), subtotal)
            applied = discount
    discount_amount = min(discount_amount, subtotal)

    return BillingResult(
        customer_id=customer_id,
        usage=float(usage_d),
        billing_month=billing_month,
        unit_usage=float(unit_usage),
        upper_usage=float(upper_usage),
        unit_charge=_whole(unit_charge),
        upper_charge=_whole(upper_charge),
        service_fee=_whole(service_fee),
        subtotal=subtotal,
        discount=applied,
        discount_amount=discount_amount,
        final_amount=max(0, subtotal - discount_amount),
        currency=tariff.currency,
    )


class BillingCalculator:
    """Binds the tariff and discount lookup to compute_bill()."""

    def __init__(self, store: Optional[LocalStore] = None, tariff: TariffProfile = cfg.TARIFF):
        self.store = store
        self.tariff = tariff

    def find_discount(self, customer_id: str, billing_month: str,
                      discounts: Optional[Iterable[Discount]] = None) -> Optional[Discount]:
        """Most recently created active discount for the customer-month."""
        if discounts is None:
            if self.store is None:
                return None
            return self.store.get_active_discount(customer_id, billing_month)
        candidates = [
            d for d in discounts
            if d.customer_id == customer_id and d.month == billing_month and d.is_active
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda d: (d.created_at is not None, d.created_at))

    def calculate_billing(self, customer_id: str, usage: float, billing_date: date,
                          discounts: Optional[Iterable[Discount]] = None) -> BillingResult:
        billing_month = month_key(billing_date)
        discount = self.find_discount(customer_id, billing_month, discounts)
        return compute_bill(customer_id, usage, billing_month, self.tariff, discount)

    def calculate_usage_for(self, reading: Reading,
                            previous: Optional[Reading]) -> UsageCalculation:
        raw = None if previous is None else reading.value - previous.value
        return UsageCalculation(
            customer_id=reading.customer_id,
            current_reading=reading,
            previous_reading=previous,
            usage=calculate_usage(reading.value, previous.value if previous else None),
            clamped=raw is not None and raw < 0,
        )
