"""
Submission entry point for readings and discounts.

Interactive entry and bulk import both come through here, so every reading
passes the ValidationEngine before it reaches the local store:

  preview_reading()  validate + bill, no writes
  submit_reading()   validate, then persist + enqueue (warnings need confirmation)
  submit_batch()     submit_reading() per row, warnings auto-confirmed
  add_discount()     validate, then persist + enqueue
  update_discount()  validate the edited record, then persist + re-enqueue
"""

import logging
from datetime import date
from typing import Iterable, List, Optional

from pydantic import BaseModel

from billing import BillingCalculator, calculate_usage
from local_store import LocalStore, MissingCustomerError
from models import (
    BillingResult,
    Discount,
    ExecutionContext,
    ReadingContext,
    ValidationResult,
)
from validation import ValidationEngine

logger = logging.getLogger("meter-sync.service")


class SubmissionRejected(Exception):
    """Validation produced errors; nothing was stored."""

    def __init__(self, validation: ValidationResult):
        super().__init__("; ".join(e.message for e in validation.errors))
        self.validation = validation


class ReadingPreview(BaseModel):
    customer_id: str
    value: float
    reading_date: date
    validation: ValidationResult
    previous_value: Optional[float] = None
    usage: Optional[float] = None
    billing: Optional[BillingResult] = None


class SubmissionOutcome(BaseModel):
    status: str                          # "stored" | "needs_confirmation"
    reading_id: Optional[str] = None
    preview: ReadingPreview


class BatchRowOutcome(BaseModel):
    row: int
    customer_id: str
    status: str                          # "stored" | "rejected" | "error"
    reading_id: Optional[str] = None
    codes: List[str] = []
    message: str = ""


class ReadingService:

    def __init__(self, store: LocalStore, validator: ValidationEngine,
                 calculator: BillingCalculator):
        self.store = store
        self.validator = validator
        self.calculator = calculator

    def preview_reading(self, customer_id: str, value, reading_date: Optional[date],
                        ctx: Optional[ExecutionContext] = None) -> ReadingPreview:
        ctx = ctx or ExecutionContext()
        validation = self.validator.validate_reading(value, ReadingContext(
            customer_id=customer_id,
            reading_date=reading_date,
            now=ctx.now,
        ))
        if not validation.is_valid:
            return ReadingPreview(
                customer_id=customer_id,
                value=value if isinstance(value, (int, float)) and not isinstance(value, bool) else 0,
                reading_date=reading_date or ctx.today(),
                validation=validation,
            )

        number = float(value)
        previous = self.store.get_previous_reading(customer_id, reading_date)
        previous_value = previous.value if previous else None
        usage = calculate_usage(number, previous_value)
        billing = self.calculator.calculate_billing(customer_id, usage, reading_date)
        return ReadingPreview(
            customer_id=customer_id,
            value=number,
            reading_date=reading_date,
            validation=validation,
            previous_value=previous_value,
            usage=usage,
            billing=billing,
        )

    def submit_reading(self, customer_id: str, value, reading_date: Optional[date],
                       ctx: Optional[ExecutionContext] = None,
                       confirm_warnings: bool = False) -> SubmissionOutcome:
        """Validate and store one reading.

        Raises SubmissionRejected when validation reports errors. Warnings
        (usage anomaly, zero usage) return status ``needs_confirmation``
        until the caller resubmits with ``confirm_warnings=True``.
        """
        ctx = ctx or ExecutionContext()
        preview = self.preview_reading(customer_id, value, reading_date, ctx)
        if not preview.validation.is_valid:
            raise SubmissionRejected(preview.validation)
        if preview.validation.warnings and not confirm_warnings:
            return SubmissionOutcome(status="needs_confirmation", preview=preview)

        reading_id = self.store.add_reading(customer_id, preview.value, reading_date, ctx)
        # Same inputs as the preview
        committed = self.calculator.calculate_billing(customer_id, preview.usage, reading_date)
        preview.billing = committed
        logger.info("Reading %s submitted by %s: usage=%s final=%s",
                    reading_id, ctx.actor, preview.usage, committed.final_amount)
        return SubmissionOutcome(status="stored", reading_id=reading_id, preview=preview)

    def submit_batch(self, rows: Iterable[dict],
                     ctx: Optional[ExecutionContext] = None) -> List[BatchRowOutcome]:
        """Bulk import: each (customer_id, value, date) row goes through submit_reading()."""
        ctx = ctx or ExecutionContext()
        outcomes = []
        for i, row in enumerate(rows, start=1):
            customer_id = str(row.get("customer_id") or "").strip()
            raw_date = row.get("date")
            try:
                reading_date = raw_date if isinstance(raw_date, date) else (
                    date.fromisoformat(str(raw_date).strip()) if raw_date else None
                )
            except ValueError:
                outcomes.append(BatchRowOutcome(
                    row=i, customer_id=customer_id, status="rejected",
                    codes=["READING_DATE_INVALID"], message=f"Invalid date '{raw_date}'",
                ))
                continue
            try:
                outcome = self.submit_reading(customer_id, row.get("value"), reading_date, ctx,
                                              confirm_warnings=True)
            except SubmissionRejected as e:
                outcomes.append(BatchRowOutcome(
                    row=i, customer_id=customer_id, status="rejected",
                    codes=[x.code for x in e.validation.errors], message=str(e),
                ))
                continue
            except MissingCustomerError as e:
                outcomes.append(BatchRowOutcome(
                    row=i, customer_id=customer_id, status="error", message=str(e),
                ))
                continue
            outcomes.append(BatchRowOutcome(
                row=i, customer_id=customer_id, status="stored", reading_id=outcome.reading_id,
                codes=[w.code for w in outcome.preview.validation.warnings],
            ))
        stored = sum(1 for o in outcomes if o.status == "stored")
        logger.info("Batch import: %d/%d rows stored", stored, len(outcomes))
        return outcomes

    def add_discount(self, discount: Discount,
                     ctx: Optional[ExecutionContext] = None) -> str:
        ctx = ctx or ExecutionContext()
        validation = self.validator.validate_discount(discount)
        if not validation.is_valid:
            raise SubmissionRejected(validation)
        return self.store.add_discount(discount, ctx)

    def update_discount(self, discount_id: str, patch: dict,
                        ctx: Optional[ExecutionContext] = None) -> bool:
        """Validate the edited discount as a whole, then persist and re-queue it.

        Returns False when the discount does not exist.
        """
        current = self.store.get_discount(discount_id)
        if current is None:
            return False
        edited = current.model_copy(update=patch)
        validation = self.validator.validate_discount(edited)
        if not validation.is_valid:
            raise SubmissionRejected(validation)
        return self.store.update_discount(discount_id, patch, ctx)
