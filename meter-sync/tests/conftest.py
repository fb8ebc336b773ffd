import sys
import pathlib
from datetime import date, datetime, timezone

import pytest

# Service modules import each other by bare name
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from engine_config import DEMO, RetryPolicy
from local_store import LocalStore
from models import Customer, Discount, ExecutionContext, Reading
from remote_backend import BackendRejected, BackendUnavailable, RemoteBackend
from sync_coordinator import SyncScheduler


class FakeBackend(RemoteBackend):
    """In-memory backend with the same replay / last-writer-wins rules as the service."""

    def __init__(self):
        self.online = True
        self.customers = []
        self.readings = {}          # remote id -> Reading
        self.discounts = {}         # remote id -> Discount
        self.refs = {}              # client_ref -> remote id
        self.push_log = []          # client_refs in transmit order
        self.failures = {}          # client_ref -> remaining forced failures
        self.reject = set()         # client_refs answered with 422
        self.lost_acks = set()      # client_refs stored once but answered with a timeout
        self._next_id = 1

    def _check(self):
        if not self.online:
            raise BackendUnavailable("backend offline")

    def _new_id(self) -> str:
        rid = str(self._next_id)
        self._next_id += 1
        return rid

    def ping(self) -> bool:
        return self.online

    def fetch_customers(self):
        self._check()
        return list(self.customers)

    def fetch_readings(self, since=None, customer_ids=None):
        self._check()
        rows = list(self.readings.values())
        if since is not None:
            rows = [r for r in rows if r.date >= since]
        if customer_ids:
            rows = [r for r in rows if r.customer_id in customer_ids]
        return rows

    def fetch_discounts(self):
        self._check()
        return list(self.discounts.values())

    def _maybe_fail(self, client_ref: str):
        self._check()
        self.push_log.append(client_ref)
        if client_ref in self.reject:
            raise BackendRejected(422, "rejected for test")
        if self.failures.get(client_ref, 0) > 0:
            self.failures[client_ref] -= 1
            raise BackendUnavailable(f"forced failure for {client_ref}")

    def push_reading(self, reading: Reading) -> str:
        self._maybe_fail(reading.id)
        if reading.id in self.refs:
            return self.refs[reading.id]
        existing = next((
            rid for rid, r in self.readings.items()
            if r.customer_id == reading.customer_id and r.month == reading.month
        ), None)
        rid = existing or self._new_id()
        self.readings[rid] = reading.model_copy(update={
            "id": f"remote-{rid}", "remote_id": rid, "synced": True,
        })
        self.refs[reading.id] = rid
        if reading.id in self.lost_acks:
            self.lost_acks.discard(reading.id)
            raise BackendUnavailable(f"response for {reading.id} lost")
        return rid

    def push_discount(self, discount: Discount) -> str:
        self._maybe_fail(discount.id)
        rid = self.refs.get(discount.id) or self._new_id()
        self.discounts[rid] = discount.model_copy(update={
            "id": f"remote-{rid}", "remote_id": rid, "synced": True,
        })
        self.refs[discount.id] = rid
        return rid

    def seed_reading(self, customer_id: str, value: float, d: date) -> Reading:
        rid = self._new_id()
        r = Reading(id=f"remote-{rid}", customer_id=customer_id, value=value, date=d,
                    created_at=datetime(d.year, d.month, d.day, tzinfo=timezone.utc),
                    synced=True, remote_id=rid)
        self.readings[rid] = r
        return r

    def insert_count(self) -> int:
        return len(self.readings)


class ManualScheduler(SyncScheduler):
    """Scheduler driven by the test: flip connectivity and fire ticks by hand."""

    def __init__(self, online: bool = False):
        self.online = online
        self.started = False
        self._conn_cbs = []
        self._tick_cbs = []

    def on_connectivity_change(self, callback):
        self._conn_cbs.append(callback)

    def on_tick(self, callback):
        self._tick_cbs.append(callback)

    def start(self):
        self.started = True

    def stop(self):
        self.started = False

    def is_online(self) -> bool:
        return self.online

    def set_online(self, online: bool):
        changed = online != self.online
        self.online = online
        if changed and self.started:
            for cb in list(self._conn_cbs):
                cb(online)

    def tick(self):
        if self.started:
            for cb in list(self._tick_cbs):
                cb()


CUSTOMERS = [
    Customer(id="C001", name="Budi Santoso", group="RT01", phone="0812000001"),
    Customer(id="C002", name="Siti Aminah", group="RT01", phone="0812000002"),
    Customer(id="C003", name="Agus Wijaya", group="RT02", phone="0812000003"),
]


@pytest.fixture
def ctx():
    return ExecutionContext(actor="tester", now=datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(tmp_path):
    s = LocalStore(str(tmp_path / "meter_local.db"))
    s.save_customers(CUSTOMERS)
    return s


@pytest.fixture
def backend():
    b = FakeBackend()
    b.customers = list(CUSTOMERS)
    return b


@pytest.fixture
def scheduler():
    return ManualScheduler(online=False)


@pytest.fixture
def fast_policy():
    return RetryPolicy(max_attempts=3, base_delay=1.0, multiplier=2.0, max_delay=5.0)


@pytest.fixture
def demo_tariff():
    return DEMO


def _seed_history(store, customer_id, values, start_year=2024, start_month=1, day=1):
    """Store consecutive monthly readings and mark them synced; returns their ids."""
    ids = []
    for i, v in enumerate(values):
        index = start_year * 12 + (start_month - 1) + i
        d = date(index // 12, index % 12 + 1, day)
        rid = store.add_reading(customer_id, v, d)
        store.update_reading(rid, {"synced": True, "remote_id": f"seed-{rid}"})
        ids.append(rid)
    for entry in store.get_sync_queue():
        if entry.entity_id in ids:
            store.remove_sync_item(entry.id)
    return ids


@pytest.fixture
def seed(store):
    def _seed(customer_id, values, **kwargs):
        return _seed_history(store, customer_id, values, **kwargs)
    return _seed
