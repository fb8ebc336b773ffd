from datetime import date, datetime, timezone

import pytest

from billing import BillingCalculator, calculate_usage, compute_bill
from engine_config import DEMO, IDR
from models import Discount, Reading


def test_usage_floor_at_zero():
    assert calculate_usage(115, 100) == 15
    assert calculate_usage(90, 100) == 0
    assert calculate_usage(50, None) == 0


def test_two_tier_bill_with_service_fee():
    # 10 x 150 + 5 x 200 + 500
    bill = compute_bill("C001", 15, "2024-12", DEMO)
    assert bill.unit_usage == 10
    assert bill.upper_usage == 5
    assert bill.unit_charge == 1500
    assert bill.upper_charge == 1000
    assert bill.service_fee == 500
    assert bill.subtotal == 3000
    assert bill.final_amount == 3000
    assert bill.discount is None


def test_usage_within_first_tier():
    bill = compute_bill("C001", 7, "2024-12", IDR)
    assert bill.upper_usage == 0
    assert bill.final_amount == 7 * 1500 + 5000


def test_zero_usage_pays_service_fee_only():
    assert compute_bill("C001", 0, "2024-12", IDR).final_amount == 5000


def test_percentage_discount_rounds_half_up():
    d = Discount(customer_id="C001", percentage=12.5, reason="Community event", month="2024-12")
    bill = compute_bill("C001", 15, "2024-12", DEMO, d)
    # 3000 * 12.5% = 375
    assert bill.discount_amount == 375
    assert bill.final_amount == 2625

    d = Discount(customer_id="C001", percentage=33.35, reason="Community event", month="2024-12")
    bill = compute_bill("C001", 1, "2024-12", DEMO, d)
    # 650 * 33.35% = 216.775 -> 217
    assert bill.discount_amount == 217
    assert bill.final_amount == 433


def test_fixed_discount_never_goes_negative():
    d = Discount(customer_id="C001", amount=10_000, reason="Pipe repair", month="2024-12")
    bill = compute_bill("C001", 15, "2024-12", DEMO, d)
    assert bill.discount_amount == 3000
    assert bill.final_amount == 0


def test_inactive_discount_ignored():
    d = Discount(customer_id="C001", amount=1000, reason="Pipe repair", month="2024-12", is_active=False)
    assert compute_bill("C001", 15, "2024-12", DEMO, d).final_amount == 3000


def test_fractional_usage():
    bill = compute_bill("C001", 10.5, "2024-12", DEMO)
    assert bill.upper_usage == pytest.approx(0.5)
    assert bill.final_amount == 1500 + 100 + 500


def test_identical_inputs_identical_result():
    d = Discount(customer_id="C001", percentage=7, reason="Community event", month="2024-12")
    first = compute_bill("C001", 23.7, "2024-12", IDR, d)
    second = compute_bill("C001", 23.7, "2024-12", IDR, d)
    assert first == second
    assert first.model_dump_json() == second.model_dump_json()


def test_calculator_uses_active_discount_from_store(store, ctx):
    store.add_discount(Discount(customer_id="C001", amount=700, reason="Pipe repair", month="2024-12"), ctx)
    calc = BillingCalculator(store, DEMO)
    assert calc.calculate_billing("C001", 15, date(2024, 12, 1)).final_amount == 2300
    assert calc.calculate_billing("C001", 15, date(2024, 11, 1)).final_amount == 3000
    assert calc.calculate_billing("C002", 15, date(2024, 12, 1)).final_amount == 3000


def test_calculator_picks_latest_supplied_discount():
    older = Discount(id="a", customer_id="C001", amount=100, reason="Old reason", month="2024-12",
                     created_at=datetime(2024, 12, 1, tzinfo=timezone.utc))
    newer = Discount(id="b", customer_id="C001", percentage=10, reason="New reason", month="2024-12",
                     created_at=datetime(2024, 12, 5, tzinfo=timezone.utc))
    calc = BillingCalculator(None, DEMO)
    bill = calc.calculate_billing("C001", 15, date(2024, 12, 20), discounts=[older, newer])
    assert bill.discount.id == "b"
    assert bill.final_amount == 2700


def test_usage_for_reading_pair():
    calc = BillingCalculator(None, DEMO)
    prev = Reading(id="p", customer_id="C001", value=100, date=date(2024, 11, 1))
    cur = Reading(id="c", customer_id="C001", value=115, date=date(2024, 12, 1))
    usage = calc.calculate_usage_for(cur, prev)
    assert usage.usage == 15
    assert usage.clamped is False

    backwards = calc.calculate_usage_for(cur.model_copy(update={"value": 90}), prev)
    assert backwards.usage == 0
    assert backwards.clamped is True
