"""
Batch transformation: validation + billing over every customer's readings.

Source data comes from the backend when it answers, else from the local
store; the result records which one was used. A reading that fails
validation is reported in ``errors`` and the run continues.
"""

import calendar
import logging
import time
from collections import defaultdict
from datetime import date
from typing import Dict, List, Optional, Tuple

import engine_config as cfg
from billing import BillingCalculator
from local_store import LocalStore
from models import (
    Customer,
    Discount,
    ExecutionContext,
    GroupTotals,
    MonthlyReport,
    PipelineFilters,
    PipelineMetrics,
    PipelineResult,
    ProcessedRecord,
    Reading,
    ReadingContext,
    RecordError,
)
from remote_backend import RemoteBackend, TransmissionError
from validation import ValidationEngine

logger = logging.getLogger("meter-sync.pipeline")

UNKNOWN_GROUP = "Unknown"


class BatchPipeline:

    def __init__(self, store: LocalStore, backend: Optional[RemoteBackend],
                 validator: ValidationEngine, calculator: BillingCalculator):
        self.store = store
        self.backend = backend
        self.validator = validator
        self.calculator = calculator

    # -----------------------------------------------------------------------
    # Loading
    # -----------------------------------------------------------------------

    def _load(self, filters: PipelineFilters) -> Tuple[List[Customer], List[Reading], List[Discount], str]:
        if self.backend is not None:
            try:
                if self.backend.ping():
                    customers = self.backend.fetch_customers()
                    readings = self.backend.fetch_readings(customer_ids=filters.customer_ids or None)
                    discounts = self.backend.fetch_discounts()
                    return customers, readings, discounts, "remote"
                logger.info("Backend unreachable, using local data")
            except TransmissionError as e:
                logger.warning("Backend fetch failed, using local data: %s", e)
        return (
            self.store.get_customers(),
            self.store.get_readings(),
            self.store.get_discounts(),
            "local",
        )

    @staticmethod
    def _select_customers(customers: List[Customer], readings: List[Reading],
                          filters: PipelineFilters) -> Dict[str, Customer]:
        by_id = {c.id: c for c in customers}
        # Readings for customers missing from the snapshot still get processed
        for r in readings:
            if r.customer_id not in by_id:
                by_id[r.customer_id] = Customer(
                    id=r.customer_id, name=r.customer_name or r.customer_id, group=r.customer_group,
                )
        selected = {}
        for cid, c in by_id.items():
            if filters.customer_ids and cid not in filters.customer_ids:
                continue
            if filters.groups and (c.group or UNKNOWN_GROUP) not in filters.groups:
                continue
            selected[cid] = c
        return selected

    # -----------------------------------------------------------------------
    # Processing
    # -----------------------------------------------------------------------

    def _in_window(self, d: date, filters: PipelineFilters) -> bool:
        if filters.start_date and d < filters.start_date:
            return False
        if filters.end_date and d > filters.end_date:
            return False
        return True

    def _process(self, customers: Dict[str, Customer], readings: List[Reading],
                 discounts: List[Discount], filters: PipelineFilters,
                 ctx: ExecutionContext) -> Tuple[List[ProcessedRecord], List[RecordError]]:
        by_customer: Dict[str, List[Reading]] = defaultdict(list)
        for r in readings:
            if r.customer_id in customers:
                by_customer[r.customer_id].append(r)

        records: List[ProcessedRecord] = []
        errors: List[RecordError] = []

        for cid, rows in by_customer.items():
            customer = customers[cid]
            rows.sort(key=lambda r: r.date)
            last_valid: Optional[Reading] = None

            for i, reading in enumerate(rows):
                try:
                    result = self.validator.validate_reading(reading.value, ReadingContext(
                        customer_id=cid,
                        reading_date=reading.date,
                        previous_reading=last_valid,
                        history=rows[:i],
                        now=ctx.now,
                    ))
                    if not result.is_valid:
                        if self._in_window(reading.date, filters):
                            errors.append(RecordError(
                                customer_id=cid,
                                reading_id=reading.id,
                                codes=[e.code for e in result.errors],
                                message="; ".join(e.message for e in result.errors),
                            ))
                        continue

                    previous = last_valid
                    last_valid = reading
                    if not self._in_window(reading.date, filters):
                        continue

                    usage = self.calculator.calculate_usage_for(reading, previous)
                    if filters.min_usage is not None and usage.usage < filters.min_usage:
                        continue
                    if filters.max_usage is not None and usage.usage > filters.max_usage:
                        continue

                    warnings = [w.code for w in result.warnings]
                    if previous is None:
                        warnings.append("NO_PREVIOUS_READING")
                    billing = self.calculator.calculate_billing(
                        cid, usage.usage, reading.date, discounts=discounts,
                    )
                    records.append(ProcessedRecord(
                        customer=customer,
                        current_reading=reading,
                        previous_reading=previous,
                        usage=usage,
                        billing=billing,
                        warnings=warnings,
                        processed_at=ctx.now,
                    ))
                except Exception as e:
                    logger.exception("Failed to process reading %s for %s", reading.id, cid)
                    errors.append(RecordError(
                        customer_id=cid,
                        reading_id=reading.id,
                        codes=["PROCESSING_ERROR"],
                        message=str(e),
                    ))

        records.sort(key=lambda rec: (rec.customer.group, rec.customer.name, rec.current_reading.date))
        return records, errors

    @staticmethod
    def _metrics(records: List[ProcessedRecord], errors: List[RecordError],
                 started: float) -> PipelineMetrics:
        total_usage = sum(r.usage.usage for r in records)
        return PipelineMetrics(
            total_customers=len({r.customer.id for r in records}),
            total_readings=len(records),
            total_usage=total_usage,
            total_billing=sum(r.billing.final_amount for r in records),
            total_discounts=sum(r.billing.discount_amount for r in records),
            average_usage=total_usage / len(records) if records else 0,
            error_count=len(errors),
            processing_time_ms=(time.perf_counter() - started) * 1000,
        )

    def transform(self, filters: Optional[PipelineFilters] = None,
                  ctx: Optional[ExecutionContext] = None) -> PipelineResult:
        filters = filters or PipelineFilters()
        ctx = ctx or ExecutionContext()
        started = time.perf_counter()

        customers, readings, discounts, source = self._load(filters)
        selected = self._select_customers(customers, readings, filters)
        records, errors = self._process(selected, readings, discounts, filters, ctx)

        metrics = self._metrics(records, errors, started)
        logger.info("Pipeline (%s): %d records, %d errors in %.0f ms",
                    source, metrics.total_readings, metrics.error_count, metrics.processing_time_ms)
        return PipelineResult(records=records, metrics=metrics, errors=errors, source=source)

    # -----------------------------------------------------------------------
    # Monthly report
    # -----------------------------------------------------------------------

    def generate_monthly_report(self, year: int, month: int,
                                ctx: Optional[ExecutionContext] = None) -> MonthlyReport:
        if not 1 <= month <= 12:
            raise ValueError(f"Month must be 1-12, got {month}")
        ctx = ctx or ExecutionContext()
        filters = PipelineFilters(
            start_date=date(year, month, 1),
            end_date=date(year, month, calendar.monthrange(year, month)[1]),
        )
        customers, readings, discounts, source = self._load(filters)
        selected = self._select_customers(customers, readings, filters)
        records, errors = self._process(selected, readings, discounts, filters, ctx)

        known: Dict[str, List[Customer]] = defaultdict(list)
        for c in selected.values():
            known[c.group or UNKNOWN_GROUP].append(c)
        by_group: Dict[str, List[ProcessedRecord]] = defaultdict(list)
        for rec in records:
            by_group[rec.customer.group or UNKNOWN_GROUP].append(rec)

        groups = []
        for name in sorted(set(known) | set(by_group)):
            recs = by_group.get(name, [])
            read_ids = {r.customer.id for r in recs}
            members = known.get(name, [])
            total_billed = sum(r.billing.final_amount for r in recs)
            groups.append(GroupTotals(
                group=name,
                customer_count=len(read_ids),
                known_customers=len(members),
                total_usage=sum(r.usage.usage for r in recs),
                total_billed=total_billed,
                total_discounts=sum(r.billing.discount_amount for r in recs),
                average_bill=total_billed / len(read_ids) if read_ids else 0,
                incomplete=len(read_ids) < len(members),
                missing_readings=sorted(c.name for c in members if c.id not in read_ids),
            ))

        total_customers = sum(g.customer_count for g in groups)
        total_billed = sum(g.total_billed for g in groups)
        return MonthlyReport(
            year=year,
            month=month,
            groups=groups,
            total_customers=total_customers,
            total_usage=sum(g.total_usage for g in groups),
            total_billed=total_billed,
            total_discounts=sum(g.total_discounts for g in groups),
            average_bill_per_customer=total_billed / total_customers if total_customers else 0,
            records=records,
            errors=errors,
            source=source,
        )

    # -----------------------------------------------------------------------
    # Integrity
    # -----------------------------------------------------------------------

    @staticmethod
    def validate_data_integrity(records: List[ProcessedRecord]) -> dict:
        """Sanity checks over processed records before they are exported."""
        issues: List[str] = []
        warnings: List[str] = []
        seen: Dict[Tuple[str, str], int] = {}

        for i, rec in enumerate(records):
            if not rec.customer.id:
                issues.append(f"Entry {i}: missing customer id")
            if not rec.current_reading.id:
                issues.append(f"Entry {i}: missing reading id")
            if rec.usage.usage < 0:
                issues.append(f"Entry {i}: negative usage ({rec.usage.usage:g})")
            if rec.billing.final_amount < 0:
                issues.append(f"Entry {i}: negative billing amount ({rec.billing.final_amount})")
            key = (rec.customer.id, rec.current_reading.month)
            if key in seen:
                issues.append(
                    f"Entry {i}: second reading for {rec.customer.id} in {key[1]} (see entry {seen[key]})"
                )
            else:
                seen[key] = i

            if rec.usage.usage > cfg.VERY_HIGH_USAGE:
                warnings.append(f"Entry {i}: high usage ({rec.usage.usage:g}) for {rec.customer.name}")
            if rec.billing.discount_amount > rec.billing.subtotal:
                warnings.append(f"Entry {i}: discount exceeds subtotal for {rec.customer.name}")

        return {"is_valid": not issues, "issues": issues, "warnings": warnings}
