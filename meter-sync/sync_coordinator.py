"""
Drains the local sync queue into the remote backend.

Per queue entry:  pending -> in_flight -> (synced, entry removed)
                                       -> pending (retry next cycle)

  - The entity's synced flag is re-read from disk before every transmit
    attempt; an already-synced entity is dropped from the queue untransmitted.
  - On acknowledgement the entity is marked synced (with its remote id)
    before the queue entry is removed.
  - Failures back off per the RetryPolicy; after max_attempts the entry is
    released to pending and retried on the next connectivity event or tick.
  - One sync() at a time: a trigger while a sync is running is a no-op.

Scheduling comes from a SyncScheduler (connectivity changes + periodic tick).
ThreadedScheduler implements it with a daemon thread and a reachability probe.
"""

import logging
import threading
import time
from datetime import date, datetime, timezone
from typing import Callable, Dict, List, Optional

import engine_config as cfg
from engine_config import RetryPolicy
from local_store import LocalStore, LocalStoreError
from models import EntityType, ExecutionContext, SyncQueueEntry, SyncResult, SyncStatus
from remote_backend import BackendRejected, RemoteBackend, TransmissionError

logger = logging.getLogger("meter-sync.sync")


def months_back(d: date, months: int) -> date:
    """First day of the month *months* before d's month."""
    index = d.year * 12 + (d.month - 1) - months
    return date(index // 12, index % 12 + 1, 1)


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------

class SyncScheduler:
    """Connectivity events and a periodic tick."""

    def on_connectivity_change(self, callback: Callable[[bool], None]):
        raise NotImplementedError

    def on_tick(self, callback: Callable[[], None]):
        raise NotImplementedError

    def start(self):
        raise NotImplementedError

    def stop(self):
        raise NotImplementedError

    def is_online(self) -> bool:
        raise NotImplementedError


class ThreadedScheduler(SyncScheduler):
    """Polls a reachability probe on a daemon thread.

    Fires connectivity callbacks when the probe result flips and tick
    callbacks every *interval* seconds.
    """

    def __init__(self, probe: Callable[[], bool],
                 interval: float = cfg.SYNC_INTERVAL_SECONDS,
                 probe_interval: float = 15.0):
        self.probe = probe
        self.interval = interval
        self.probe_interval = min(probe_interval, interval)
        self._connectivity_callbacks: List[Callable[[bool], None]] = []
        self._tick_callbacks: List[Callable[[], None]] = []
        self._online = False
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def on_connectivity_change(self, callback):
        self._connectivity_callbacks.append(callback)

    def on_tick(self, callback):
        self._tick_callbacks.append(callback)

    def is_online(self) -> bool:
        return self._online

    def _check(self):
        try:
            online = bool(self.probe())
        except Exception as e:
            logger.warning("Connectivity probe failed: %s", e)
            online = False
        if online != self._online:
            self._online = online
            logger.info("Connectivity changed: %s", "online" if online else "offline")
            for cb in list(self._connectivity_callbacks):
                self._fire(cb, online)

    @staticmethod
    def _fire(cb, *args):
        try:
            cb(*args)
        except Exception:
            logger.exception("Scheduler callback %r failed", cb)

    def _run(self):
        last_tick = time.monotonic()
        self._check()
        while not self._stop.wait(self.probe_interval):
            self._check()
            if time.monotonic() - last_tick >= self.interval:
                last_tick = time.monotonic()
                for cb in list(self._tick_callbacks):
                    self._fire(cb)

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=self.probe_interval + 1)
            self._thread = None


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------

class SyncCoordinator:

    def __init__(
        self,
        store: LocalStore,
        backend: RemoteBackend,
        policy: RetryPolicy = cfg.RETRY_POLICY,
        scheduler: Optional[SyncScheduler] = None,
        sleep: Callable[[float], None] = time.sleep,
        history_months: int = cfg.SYNC_HISTORY_MONTHS,
        refresh_after_sync: bool = True,
    ):
        self.store = store
        self.backend = backend
        self.policy = policy
        self.scheduler = scheduler
        self.history_months = history_months
        self.refresh_after_sync = refresh_after_sync
        self._sleep = sleep
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[SyncResult], None]] = []
        self._subscribed = False
        self._auto_sync = False
        self._last_online = False

        # A previous process may have died mid-transmit
        self.store.reset_in_flight()

    # -----------------------------------------------------------------------
    # Listeners
    # -----------------------------------------------------------------------

    def on_sync_complete(self, callback: Callable[[SyncResult], None]):
        self._callbacks.append(callback)

    def remove_sync_callback(self, callback: Callable[[SyncResult], None]):
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _notify(self, result: SyncResult):
        for cb in list(self._callbacks):
            try:
                cb(result)
            except Exception:
                logger.exception("Sync listener %r failed", cb)

    # -----------------------------------------------------------------------
    # Sync
    # -----------------------------------------------------------------------

    def is_online(self) -> bool:
        if self.scheduler is not None:
            online = self.scheduler.is_online()
        else:
            online = self.backend.ping()
        self._last_online = online
        return online

    def sync(self, ctx: Optional[ExecutionContext] = None) -> SyncResult:
        """Drain every pending queue entry once, FIFO."""
        if not self._lock.acquire(blocking=False):
            logger.info("Sync already in progress, trigger ignored")
            return SyncResult(success=False, errors=["Sync already in progress"])
        try:
            return self._sync_locked(ctx or ExecutionContext())
        finally:
            self._lock.release()

    def _sync_locked(self, ctx: ExecutionContext) -> SyncResult:
        started = datetime.now(timezone.utc)
        if not self.is_online():
            logger.info("Device offline, sync skipped")
            return SyncResult(success=False, errors=["Device is offline"],
                              started_at=started, finished_at=started)

        result = SyncResult(started_at=started)
        entries = self.store.get_pending_entries()
        logger.info("Sync started: %d pending entries", len(entries))

        for entry in entries:
            outcome = self._process_entry(entry)
            if outcome == "synced":
                result.synced += 1
            elif outcome == "skipped":
                result.skipped += 1
            else:
                result.failed += 1
                result.errors.append(f"{entry.entity_type.value} {entry.entity_id}: {outcome}")

        result.success = result.failed == 0
        result.finished_at = datetime.now(timezone.utc)
        if result.success:
            self.store.set_last_sync_time(ctx.now.isoformat())

        if self.refresh_after_sync:
            try:
                self.refresh_from_remote(ctx)
            except TransmissionError as e:
                logger.warning("Refresh from backend failed, keeping local snapshot: %s", e)

        logger.info("Sync finished: synced=%d skipped=%d failed=%d",
                    result.synced, result.skipped, result.failed)
        self._notify(result)
        return result

    def _process_entry(self, entry: SyncQueueEntry) -> str:
        """Returns 'synced', 'skipped', or the last error message."""
        self.store.mark_in_flight(entry.id)
        try:
            return self._attempt_entry(entry)
        except LocalStoreError as e:
            logger.error("Entry %s hit a local store failure, releasing: %s", entry.id, e)
            self.store.release_entry(entry.id)
            return f"local store failure: {e}"

    def _attempt_entry(self, entry: SyncQueueEntry) -> str:
        last_error = ""
        for attempt in range(1, self.policy.max_attempts + 1):
            if self.store.is_entity_synced(entry):
                logger.info("Entry %s already synced, dropping", entry.id)
                self.store.remove_sync_item(entry.id)
                return "skipped"
            try:
                remote_id = self._transmit(entry)
            except BackendRejected as e:
                last_error = str(e)
                self.store.record_attempt(entry.id, last_error)
                logger.warning("Entry %s rejected by backend: %s", entry.id, e)
                break
            except TransmissionError as e:
                last_error = str(e)
                self.store.record_attempt(entry.id, last_error)
                if attempt < self.policy.max_attempts:
                    wait = self.policy.delay(attempt)
                    logger.warning("Entry %s attempt %d/%d failed: %s (retrying in %.1fs)",
                                   entry.id, attempt, self.policy.max_attempts, e, wait)
                    self._sleep(wait)
                continue

            self._mark_synced(entry, remote_id)
            self.store.remove_sync_item(entry.id)
            return "synced"

        logger.warning("Entry %s left pending after %d attempts: %s",
                       entry.id, self.policy.max_attempts, last_error)
        self.store.release_entry(entry.id)
        return last_error or "transmission failed"

    def _transmit(self, entry: SyncQueueEntry) -> str:
        if entry.entity_type == EntityType.reading:
            reading = self.store.get_reading(entry.entity_id)
            return self.backend.push_reading(reading)
        discount = self.store.get_discount(entry.entity_id)
        return self.backend.push_discount(discount)

    def _mark_synced(self, entry: SyncQueueEntry, remote_id: str):
        if entry.entity_type == EntityType.reading:
            self.store.mark_reading_synced(entry.entity_id, remote_id)
        else:
            self.store.mark_discount_synced(entry.entity_id, remote_id)

    # -----------------------------------------------------------------------
    # Snapshot refresh
    # -----------------------------------------------------------------------

    def refresh_from_remote(self, ctx: Optional[ExecutionContext] = None) -> Dict[str, int]:
        """Download customers, recent readings and discounts into the local store."""
        ctx = ctx or ExecutionContext()
        since = months_back(ctx.today(), self.history_months)
        customers = self.backend.fetch_customers()
        readings = self.backend.fetch_readings(since=since)
        discounts = self.backend.fetch_discounts()
        counts = {
            "customers": self.store.save_customers(customers),
            "readings": self.store.merge_remote_readings(readings),
            "discounts": self.store.merge_remote_discounts(discounts),
        }
        logger.info("Local snapshot refreshed: %s", counts)
        return counts

    # -----------------------------------------------------------------------
    # Automatic sync
    # -----------------------------------------------------------------------

    def _handle_connectivity(self, online: bool):
        if online:
            logger.info("Back online, starting sync")
            self.sync()

    def _handle_tick(self):
        if not self.scheduler.is_online():
            return
        if self.store.get_pending_entries():
            self.sync()

    def start_auto_sync(self):
        if self.scheduler is None:
            raise RuntimeError("Auto-sync needs a scheduler")
        if self._auto_sync:
            return
        if not self._subscribed:
            self.scheduler.on_connectivity_change(self._handle_connectivity)
            self.scheduler.on_tick(self._handle_tick)
            self._subscribed = True
        self.scheduler.start()
        self._auto_sync = True
        logger.info("Auto-sync started")

    def stop_auto_sync(self):
        if not self._auto_sync:
            return
        self.scheduler.stop()
        self._auto_sync = False
        logger.info("Auto-sync stopped")

    # -----------------------------------------------------------------------
    # Status
    # -----------------------------------------------------------------------

    def get_sync_status(self) -> SyncStatus:
        """Snapshot of queue and connectivity; never touches the network.

        Without a scheduler, connectivity is the result of the last probe.
        """
        if self.scheduler is not None:
            online = self.scheduler.is_online()
        else:
            online = self._last_online
        return SyncStatus(
            is_online=online,
            sync_in_progress=self._lock.locked(),
            pending_items=len(self.store.get_sync_queue()),
            exhausted_items=self.store.count_exhausted(self.policy.max_attempts),
            last_sync=self.store.get_last_sync_time(),
            auto_sync_running=self._auto_sync,
        )
