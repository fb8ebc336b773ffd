from datetime import date

import pytest

from billing import BillingCalculator
from engine_config import DEMO
from meter_service import ReadingService, SubmissionRejected
from models import Discount
from validation import ValidationEngine


@pytest.fixture
def service(store):
    return ReadingService(store, ValidationEngine(store), BillingCalculator(store, DEMO))


def test_submit_stores_and_bills(service, store, seed, ctx):
    seed("C001", [100], start_year=2024, start_month=11)

    outcome = service.submit_reading("C001", 115, date(2024, 12, 1), ctx)

    assert outcome.status == "stored"
    assert outcome.preview.usage == 15
    assert outcome.preview.previous_value == 100
    assert outcome.preview.billing.final_amount == 3000
    reading = store.get_reading(outcome.reading_id)
    assert reading.synced is False
    assert [e.entity_id for e in store.get_pending_entries()] == [outcome.reading_id]


def test_preview_matches_commit(service, store, seed, ctx):
    seed("C001", [100], start_year=2024, start_month=11)
    store.add_discount(Discount(customer_id="C001", percentage=15, reason="Community event",
                                month="2024-12"), ctx)

    preview = service.preview_reading("C001", 123.4, date(2024, 12, 1), ctx)
    outcome = service.submit_reading("C001", 123.4, date(2024, 12, 1), ctx)

    assert outcome.preview.billing == preview.billing
    assert store.get_readings()[-1].value == 123.4


def test_decrease_leaves_no_trace(service, store, seed, ctx):
    seed("C001", [100], start_year=2024, start_month=11)
    readings_before = len(store.get_readings())

    with pytest.raises(SubmissionRejected) as exc:
        service.submit_reading("C001", 90, date(2024, 12, 1), ctx)

    assert [e.code for e in exc.value.validation.errors] == ["READING_DECREASED"]
    assert len(store.get_readings()) == readings_before
    assert store.get_sync_queue() == []


def test_second_reading_same_month_rejected(service, store, ctx):
    service.submit_reading("C002", 50, date(2024, 12, 1), ctx)
    with pytest.raises(SubmissionRejected) as exc:
        service.submit_reading("C002", 60, date(2024, 12, 20), ctx)
    assert "READING_DUPLICATE_MONTH" in [e.code for e in exc.value.validation.errors]
    assert len(store.get_customer_readings("C002")) == 1


def test_anomaly_needs_confirmation(service, store, seed, ctx):
    seed("C001", [100, 110, 120, 130, 140, 150], start_year=2024, start_month=6)

    pending = service.submit_reading("C001", 175, date(2024, 12, 1), ctx)
    assert pending.status == "needs_confirmation"
    assert pending.reading_id is None
    assert pending.preview.validation.errors == []
    assert [w.code for w in pending.preview.validation.warnings] == ["READING_USAGE_ANOMALY"]
    assert store.get_sync_queue() == []

    confirmed = service.submit_reading("C001", 175, date(2024, 12, 1), ctx, confirm_warnings=True)
    assert confirmed.status == "stored"
    assert len(store.get_sync_queue()) == 1


def test_batch_goes_through_validation(service, store, ctx):
    rows = [
        {"customer_id": "C001", "value": "100", "date": "2024-11-01"},
        {"customer_id": "C001", "value": "90", "date": "2024-12-01"},
        {"customer_id": "C002", "value": "abc", "date": "2024-12-01"},
        {"customer_id": "C003", "value": "40", "date": "01/12/2024"},
        {"customer_id": "C404", "value": "40", "date": "2024-12-01"},
        {"customer_id": "C003", "value": "40", "date": "2024-12-01"},
    ]
    outcomes = service.submit_batch(rows, ctx)

    assert [o.status for o in outcomes] == ["stored", "rejected", "rejected", "rejected", "error", "stored"]
    assert outcomes[1].codes == ["READING_DECREASED"]
    assert outcomes[2].codes == ["READING_INVALID"]
    assert outcomes[3].codes == ["READING_DATE_INVALID"]
    assert len(store.get_sync_queue()) == 2


def test_add_discount_validates(service, store, ctx):
    did = service.add_discount(Discount(customer_id="C001", amount=2000, reason="Pipe repair",
                                        month="2024-12"), ctx)
    assert store.get_discount(did).amount == 2000

    with pytest.raises(SubmissionRejected):
        service.add_discount(Discount(customer_id="C001", percentage=10, amount=100,
                                      reason="Pipe repair", month="2025-01"), ctx)


def test_update_discount_validates_edited_record(service, store, ctx):
    did = service.add_discount(Discount(customer_id="C001", amount=5000, reason="Pipe repair",
                                        month="2024-12"), ctx)
    store.remove_sync_item(store.get_pending_entries()[0].id)

    with pytest.raises(SubmissionRejected) as exc:
        service.update_discount(did, {"percentage": 10}, ctx)
    assert "DISCOUNT_MULTIPLE_TYPES" in exc.value.validation.codes()
    stored = store.get_discount(did)
    assert (stored.percentage, stored.amount) == (0, 5000)
    assert store.get_pending_entries() == []

    # Switching type is fine when the other value is cleared; its own month is not a duplicate
    assert service.update_discount(did, {"percentage": 10, "amount": 0}, ctx) is True
    stored = store.get_discount(did)
    assert (stored.percentage, stored.amount) == (10, 0)
    assert [e.entity_id for e in store.get_pending_entries()] == [did]


def test_update_unknown_discount(service, ctx):
    assert service.update_discount("nope", {"reason": "Community event"}, ctx) is False
