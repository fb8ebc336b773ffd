import threading
from datetime import date

import pytest

from models import Discount, QueueStatus
from sync_coordinator import SyncCoordinator, months_back


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def coordinator(store, backend, fast_policy, sleeps):
    return SyncCoordinator(store, backend, fast_policy, sleep=sleeps.append, refresh_after_sync=False)


def _queue_three(store, ctx):
    return [
        store.add_reading("C001", 115, date(2024, 12, 1), ctx),
        store.add_reading("C002", 220, date(2024, 12, 1), ctx),
        store.add_reading("C003", 40, date(2024, 12, 2), ctx),
    ]


def test_drains_queue_fifo(coordinator, store, backend, ctx):
    ids = _queue_three(store, ctx)
    result = coordinator.sync(ctx)

    assert result.success is True
    assert result.synced == 3
    assert backend.push_log == ids
    assert store.get_sync_queue() == []
    for rid in ids:
        reading = store.get_reading(rid)
        assert reading.synced is True
        assert reading.remote_id == backend.refs[rid]
    assert store.get_last_sync_time() == ctx.now.isoformat()


def test_failing_entry_retries_and_stays_pending(coordinator, store, backend, ctx, sleeps):
    ids = _queue_three(store, ctx)
    backend.failures[ids[1]] = 10

    result = coordinator.sync(ctx)

    assert result.success is False
    assert result.synced == 2
    assert result.failed == 1
    assert backend.push_log == [ids[0], ids[1], ids[1], ids[1], ids[2]]
    assert sleeps == [1.0, 2.0]

    queue = store.get_sync_queue()
    assert [e.entity_id for e in queue] == [ids[1]]
    assert queue[0].status == QueueStatus.pending
    assert queue[0].attempts == 3
    assert store.get_reading(ids[1]).synced is False
    assert store.get_reading(ids[0]).synced is True
    assert store.get_reading(ids[2]).synced is True
    assert store.get_last_sync_time() is None

    # Next cycle picks it up once the backend recovers
    backend.failures.clear()
    again = coordinator.sync(ctx)
    assert again.synced == 1
    assert store.get_sync_queue() == []


def test_recovers_within_attempt_ceiling(coordinator, store, backend, ctx, sleeps):
    rid = store.add_reading("C001", 115, date(2024, 12, 1), ctx)
    backend.failures[rid] = 2
    result = coordinator.sync(ctx)
    assert result.synced == 1
    assert sleeps == [1.0, 2.0]


def test_backoff_is_capped(store, backend, ctx, sleeps):
    from engine_config import RetryPolicy
    policy = RetryPolicy(max_attempts=5, base_delay=1.0, multiplier=2.0, max_delay=5.0)
    coordinator = SyncCoordinator(store, backend, policy, sleep=sleeps.append, refresh_after_sync=False)
    rid = store.add_reading("C001", 115, date(2024, 12, 1), ctx)
    backend.failures[rid] = 99
    coordinator.sync(ctx)
    assert sleeps == [1.0, 2.0, 4.0, 5.0]


def test_rejection_is_not_retried_in_same_cycle(coordinator, store, backend, ctx, sleeps):
    rid = store.add_reading("C001", 115, date(2024, 12, 1), ctx)
    backend.reject.add(rid)
    result = coordinator.sync(ctx)
    assert result.failed == 1
    assert backend.push_log == [rid]
    assert sleeps == []
    assert len(store.get_pending_entries()) == 1


def test_repeated_sync_never_reinserts(coordinator, store, backend, ctx):
    _queue_three(store, ctx)
    coordinator.sync(ctx)
    coordinator.sync(ctx)
    coordinator.sync(ctx)
    assert backend.insert_count() == 3
    assert len(backend.push_log) == 3


def test_crash_after_remote_ack_is_not_resent(store, backend, fast_policy, ctx):
    rid = store.add_reading("C001", 115, date(2024, 12, 1), ctx)
    entry = store.get_pending_entries()[0]

    # Simulate: transmitted, flag flipped, process died before the queue entry was removed
    store.mark_in_flight(entry.id)
    remote_id = backend.push_reading(store.get_reading(rid))
    store.update_reading(rid, {"synced": True, "remote_id": remote_id})

    restarted = SyncCoordinator(store, backend, fast_policy, sleep=lambda s: None,
                                refresh_after_sync=False)
    result = restarted.sync(ctx)

    assert result.skipped == 1
    assert result.synced == 0
    assert backend.push_log == [rid]
    assert store.get_sync_queue() == []


def test_crash_before_flag_flip_replays_idempotently(store, backend, fast_policy, ctx):
    rid = store.add_reading("C001", 115, date(2024, 12, 1), ctx)
    backend.push_reading(store.get_reading(rid))

    coordinator = SyncCoordinator(store, backend, fast_policy, sleep=lambda s: None,
                                  refresh_after_sync=False)
    coordinator.sync(ctx)

    assert backend.insert_count() == 1
    assert store.get_reading(rid).remote_id == backend.refs[rid]


def test_offline_sync_is_noop(coordinator, store, backend, ctx):
    _queue_three(store, ctx)
    backend.online = False
    result = coordinator.sync(ctx)
    assert result.success is False
    assert result.synced == 0
    assert len(store.get_pending_entries()) == 3
    assert all(e.attempts == 0 for e in store.get_sync_queue())


def test_concurrent_trigger_is_noop(store, backend, fast_policy, ctx):
    release = threading.Event()
    entered = threading.Event()
    original = backend.push_reading

    def slow_push(reading):
        entered.set()
        release.wait(5)
        return original(reading)

    backend.push_reading = slow_push
    coordinator = SyncCoordinator(store, backend, fast_policy, sleep=lambda s: None,
                                  refresh_after_sync=False)
    store.add_reading("C001", 115, date(2024, 12, 1), ctx)

    results = []
    worker = threading.Thread(target=lambda: results.append(coordinator.sync(ctx)))
    worker.start()
    assert entered.wait(5)

    assert coordinator.get_sync_status().sync_in_progress is True
    second = coordinator.sync(ctx)
    assert second.success is False
    assert second.errors == ["Sync already in progress"]

    release.set()
    worker.join(5)
    assert results[0].synced == 1
    assert coordinator.get_sync_status().sync_in_progress is False


def test_offline_to_online_triggers_sync(store, backend, fast_policy, scheduler, ctx):
    coordinator = SyncCoordinator(store, backend, fast_policy, scheduler=scheduler,
                                  sleep=lambda s: None, refresh_after_sync=False)
    ids = _queue_three(store, ctx)
    coordinator.start_auto_sync()
    assert scheduler.started is True

    # Offline ticks do nothing
    scheduler.tick()
    assert backend.push_log == []

    scheduler.set_online(True)
    assert backend.push_log == ids
    assert store.get_sync_queue() == []

    coordinator.stop_auto_sync()
    assert scheduler.started is False


def test_tick_syncs_only_with_pending_items(store, backend, fast_policy, scheduler, ctx):
    scheduler.online = True
    coordinator = SyncCoordinator(store, backend, fast_policy, scheduler=scheduler,
                                  sleep=lambda s: None, refresh_after_sync=False)
    results = []
    coordinator.on_sync_complete(results.append)
    coordinator.start_auto_sync()

    scheduler.tick()
    assert results == []

    store.add_reading("C001", 115, date(2024, 12, 1), ctx)
    scheduler.tick()
    assert len(results) == 1
    assert results[0].synced == 1


def test_sync_callbacks(coordinator, store, ctx):
    seen = []
    coordinator.on_sync_complete(seen.append)
    store.add_reading("C001", 115, date(2024, 12, 1), ctx)
    coordinator.sync(ctx)
    coordinator.remove_sync_callback(seen.append)
    coordinator.sync(ctx)
    assert len(seen) == 1


def test_discount_edit_is_resent(coordinator, store, backend, ctx):
    did = store.add_discount(Discount(customer_id="C001", percentage=10, reason="Community event",
                                      month="2024-12"), ctx)
    coordinator.sync(ctx)
    remote_id = store.get_discount(did).remote_id
    assert backend.discounts[remote_id].percentage == 10

    store.update_discount(did, {"percentage": 20}, ctx)
    coordinator.sync(ctx)
    assert store.get_discount(did).synced is True
    assert store.get_discount(did).remote_id == remote_id
    assert backend.discounts[remote_id].percentage == 20
    assert len(backend.discounts) == 1


def test_refresh_after_sync_downloads_snapshot(store, backend, fast_policy, ctx):
    backend.seed_reading("C003", 30, date(2024, 11, 1))
    backend.seed_reading("C003", 10, date(2020, 1, 1))
    coordinator = SyncCoordinator(store, backend, fast_policy, sleep=lambda s: None)
    coordinator.sync(ctx)

    values = [r.value for r in store.get_customer_readings("C003")]
    assert values == [30]


def test_refresh_failure_is_only_logged(store, backend, fast_policy, ctx):
    def broken():
        from remote_backend import BackendUnavailable
        raise BackendUnavailable("boom")

    backend.fetch_customers = broken
    coordinator = SyncCoordinator(store, backend, fast_policy, sleep=lambda s: None)
    store.add_reading("C001", 115, date(2024, 12, 1), ctx)
    result = coordinator.sync(ctx)
    assert result.success is True


def test_status_reports_exhausted_entries(coordinator, store, backend, ctx):
    rid = store.add_reading("C001", 115, date(2024, 12, 1), ctx)
    backend.failures[rid] = 99
    coordinator.sync(ctx)

    status = coordinator.get_sync_status()
    assert status.is_online is True
    assert status.pending_items == 1
    assert status.exhausted_items == 1
    assert status.sync_in_progress is False
    assert status.auto_sync_running is False


def test_restart_recovers_in_flight_entries(store, backend, fast_policy, ctx):
    store.add_reading("C001", 115, date(2024, 12, 1), ctx)
    store.mark_in_flight(store.get_pending_entries()[0].id)
    SyncCoordinator(store, backend, fast_policy, refresh_after_sync=False)
    assert len(store.get_pending_entries()) == 1


def test_months_back():
    assert months_back(date(2025, 1, 15), 3) == date(2024, 10, 1)
    assert months_back(date(2024, 12, 31), 12) == date(2023, 12, 1)


def test_lost_acknowledgement_converges(store, backend, ctx):
    from engine_config import RetryPolicy
    policy = RetryPolicy(max_attempts=1)
    coordinator = SyncCoordinator(store, backend, policy, sleep=lambda s: None)
    rid = store.add_reading("C001", 115, date(2024, 12, 1), ctx)
    backend.lost_acks.add(rid)

    first = coordinator.sync(ctx)
    assert first.failed == 1
    # The committed backend row must not appear next to the pending local reading
    assert [(r.id, r.synced) for r in store.get_customer_readings("C001")] == [(rid, False)]

    second = coordinator.sync(ctx)
    assert second.success is True
    assert second.synced == 1
    assert backend.insert_count() == 1
    remote_id = backend.refs[rid]
    assert [(r.id, r.synced, r.remote_id) for r in store.get_customer_readings("C001")] == [
        (rid, True, remote_id),
    ]
    assert store.get_sync_queue() == []


def test_local_store_failure_releases_entry(coordinator, store, backend, ctx, monkeypatch):
    from local_store import LocalStoreError

    def broken(reading_id, remote_id):
        raise LocalStoreError("disk full")

    rid = store.add_reading("C001", 115, date(2024, 12, 1), ctx)
    monkeypatch.setattr(store, "mark_reading_synced", broken)

    result = coordinator.sync(ctx)

    assert result.failed == 1
    assert "disk full" in result.errors[0]
    queue = store.get_sync_queue()
    assert [(e.entity_id, e.status) for e in queue] == [(rid, QueueStatus.pending)]


def test_status_uses_last_probe(coordinator, store, backend, ctx):
    def no_network():
        raise AssertionError("status must not probe the backend")

    assert coordinator.sync(ctx).success is True
    backend.ping = no_network
    assert coordinator.get_sync_status().is_online is True

    fresh = SyncCoordinator(store, backend, refresh_after_sync=False)
    assert fresh.get_sync_status().is_online is False
