"""
Device-side command line for the meter sync engine.

Usage:
    python3 sync_cli.py status                       # queue + connectivity
    python3 sync_cli.py sync                         # drain the queue now
    python3 sync_cli.py refresh                      # download customers/readings/discounts
    python3 sync_cli.py submit C001 115 --date 2024-12-01 [--yes]
    python3 sync_cli.py import readings.csv          # customer_id,value,date rows
    python3 sync_cli.py report 2024 12               # monthly group totals
    python3 sync_cli.py watch                        # auto-sync until Ctrl-C

Output is JSON on stdout; logs go to stderr.
"""

import argparse
import csv
import json
import logging
import sys
import time
from datetime import date

import engine_config as cfg
from billing import BillingCalculator
from local_store import LocalStore, LocalStoreError
from meter_service import ReadingService, SubmissionRejected
from models import ExecutionContext, ValidationIssue, ValidationResult
from pipeline import BatchPipeline
from remote_backend import HttpBackend, TransmissionError
from sync_coordinator import SyncCoordinator, ThreadedScheduler
from validation import ValidationEngine

log = logging.getLogger("meter-sync.cli")


def _emit(payload):
    if hasattr(payload, "model_dump"):
        payload = payload.model_dump(mode="json")
    elif isinstance(payload, list):
        payload = [p.model_dump(mode="json") if hasattr(p, "model_dump") else p for p in payload]
    json.dump(payload, sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")


def _build(args):
    store = LocalStore(args.db)
    backend = HttpBackend(args.backend)
    validator = ValidationEngine(store)
    calculator = BillingCalculator(store, cfg.get_tariff(args.tariff))
    return store, backend, validator, calculator


def cmd_status(args) -> int:
    store, backend, _, _ = _build(args)
    coordinator = SyncCoordinator(store, backend)
    coordinator.is_online()
    _emit({
        "sync": coordinator.get_sync_status().model_dump(mode="json"),
        "storage": store.get_storage_stats(),
    })
    return 0


def cmd_sync(args) -> int:
    store, backend, _, _ = _build(args)
    result = SyncCoordinator(store, backend).sync(ExecutionContext(actor=args.actor))
    _emit(result)
    return 0 if result.success else 1


def cmd_refresh(args) -> int:
    store, backend, _, _ = _build(args)
    try:
        counts = SyncCoordinator(store, backend).refresh_from_remote(ExecutionContext(actor=args.actor))
    except TransmissionError as e:
        log.error("Refresh failed: %s", e)
        return 1
    _emit(counts)
    return 0


def cmd_submit(args) -> int:
    store, _, validator, calculator = _build(args)
    service = ReadingService(store, validator, calculator)
    try:
        reading_date = date.fromisoformat(args.date) if args.date else date.today()
    except ValueError:
        invalid = ValidationResult(errors=[ValidationIssue(
            code="READING_DATE_INVALID", message=f"Invalid date '{args.date}'",
        )])
        _emit({"status": "rejected", "validation": invalid.model_dump(mode="json")})
        return 2
    try:
        outcome = service.submit_reading(
            args.customer_id, args.value, reading_date,
            ExecutionContext(actor=args.actor), confirm_warnings=args.yes,
        )
    except SubmissionRejected as e:
        _emit({"status": "rejected", "validation": e.validation.model_dump(mode="json")})
        return 2
    _emit(outcome)
    return 0 if outcome.status == "stored" else 3


def cmd_import(args) -> int:
    store, _, validator, calculator = _build(args)
    service = ReadingService(store, validator, calculator)
    with open(args.csv_path, newline="", encoding="utf-8") as f:
        rows = list(csv.DictReader(f))
    outcomes = service.submit_batch(rows, ExecutionContext(actor=args.actor))
    _emit(outcomes)
    return 0 if all(o.status == "stored" for o in outcomes) else 1


def cmd_report(args) -> int:
    store, backend, validator, calculator = _build(args)
    pipeline = BatchPipeline(store, backend, validator, calculator)
    report = pipeline.generate_monthly_report(args.year, args.month, ExecutionContext(actor=args.actor))
    if not args.records:
        report.records = []
    _emit(report)
    return 0


def cmd_watch(args) -> int:
    store, backend, _, _ = _build(args)
    scheduler = ThreadedScheduler(backend.ping, interval=args.interval)
    coordinator = SyncCoordinator(store, backend, scheduler=scheduler)
    coordinator.on_sync_complete(
        lambda r: log.info("Sync complete: synced=%d failed=%d", r.synced, r.failed)
    )
    coordinator.start_auto_sync()
    log.info("Watching (interval %ss), Ctrl-C to stop", args.interval)
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        coordinator.stop_auto_sync()
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Offline-first meter reading sync")
    parser.add_argument("--db", default=cfg.LOCAL_DB_PATH, help="Local SQLite store path")
    parser.add_argument("--backend", default=cfg.BACKEND_URL, help="Backend base URL")
    parser.add_argument("--tariff", default=None, help="Tariff profile code (default: TARIFF_PROFILE)")
    parser.add_argument("--actor", default="field-agent", help="Identity recorded on submissions")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show sync status and storage counts").set_defaults(func=cmd_status)
    sub.add_parser("sync", help="Drain the sync queue").set_defaults(func=cmd_sync)
    sub.add_parser("refresh", help="Download the backend snapshot").set_defaults(func=cmd_refresh)

    p = sub.add_parser("submit", help="Submit one reading")
    p.add_argument("customer_id")
    p.add_argument("value")
    p.add_argument("--date", help="Reading date YYYY-MM-DD (default: today)")
    p.add_argument("--yes", action="store_true", help="Confirm warnings")
    p.set_defaults(func=cmd_submit)

    p = sub.add_parser("import", help="Bulk-import readings from CSV")
    p.add_argument("csv_path")
    p.set_defaults(func=cmd_import)

    p = sub.add_parser("report", help="Monthly report by group")
    p.add_argument("year", type=int)
    p.add_argument("month", type=int)
    p.add_argument("--records", action="store_true", help="Include per-reading records")
    p.set_defaults(func=cmd_report)

    p = sub.add_parser("watch", help="Run auto-sync until interrupted")
    p.add_argument("--interval", type=float, default=cfg.SYNC_INTERVAL_SECONDS,
                   help=f"Tick interval in seconds (default {cfg.SYNC_INTERVAL_SECONDS})")
    p.set_defaults(func=cmd_watch)

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )

    try:
        return args.func(args)
    except LocalStoreError as e:
        log.error("Local store error: %s", e)
        return 4


if __name__ == "__main__":
    sys.exit(main())
