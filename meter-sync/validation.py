"""
Business-rule evaluation for meter readings and discounts.

Readings:
  - input checks: numeric, non-negative, within the gauge range, dated, not in the future
  - monotonicity: a reading never goes below the one before it (or above the one after it)
  - monthly uniqueness: one reading per customer per calendar month
  - anomaly: usage above ANOMALY_MULTIPLIER x the rolling average is a warning, not an error

Discounts:
  - exactly one of percentage / amount is non-zero
  - percentage in [0, 100], amount within the ceiling
  - reason and YYYY-MM month present
  - at most one active discount per customer-month

Results are values (ValidationResult); nothing here raises on bad input.
"""

import logging
import math
import re
from datetime import date, datetime, timezone
from typing import Iterable, List, Optional

import engine_config as cfg
from local_store import LocalStore
from models import (
    Discount,
    Reading,
    ReadingContext,
    Severity,
    ValidationIssue,
    ValidationResult,
    month_key,
)

logger = logging.getLogger("meter-sync.validation")

_MONTH_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


def _coerce_number(value) -> Optional[float]:
    """Float for numeric input (including numeric strings), else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def rolling_average_usage(history: Iterable[Reading], before_date: date,
                          window: int = cfg.ANOMALY_WINDOW) -> Optional[float]:
    """Average usage over up to *window* intervals preceding *before_date*.

    Intervals are differences between consecutive readings; negative
    intervals (meter replacements, bad data) are ignored. Returns None when
    fewer than one usable interval exists.
    """
    prior = sorted((r for r in history if r.date < before_date), key=lambda r: r.date)
    prior = prior[-(window + 1):]
    intervals = [
        b.value - a.value
        for a, b in zip(prior, prior[1:])
        if b.value - a.value >= 0
    ]
    if not intervals:
        return None
    return sum(intervals) / len(intervals)


class ValidationEngine:

    def __init__(
        self,
        store: Optional[LocalStore] = None,
        max_reading: float = cfg.MAX_READING,
        anomaly_multiplier: float = cfg.ANOMALY_MULTIPLIER,
        anomaly_window: int = cfg.ANOMALY_WINDOW,
        very_high_usage: float = cfg.VERY_HIGH_USAGE,
    ):
        self.store = store
        self.max_reading = max_reading
        self.anomaly_multiplier = anomaly_multiplier
        self.anomaly_window = anomaly_window
        self.very_high_usage = very_high_usage

    # -----------------------------------------------------------------------
    # Readings
    # -----------------------------------------------------------------------

    def _history(self, context: ReadingContext) -> List[Reading]:
        """Readings for the context customer, ascending by date."""
        if context.history is not None:
            rows = [r for r in context.history if r.customer_id == context.customer_id]
        elif self.store is not None:
            rows = self.store.get_customer_readings(context.customer_id)
        else:
            rows = []
        if context.exclude_reading_id:
            rows = [r for r in rows if r.id != context.exclude_reading_id]
        return sorted(rows, key=lambda r: r.date)

    def validate_reading(self, value, context: ReadingContext) -> ValidationResult:
        errors: List[ValidationIssue] = []
        warnings: List[ValidationIssue] = []

        number = _coerce_number(value)
        if number is None:
            errors.append(ValidationIssue(
                code="READING_INVALID", message="Reading must be a valid number",
            ))
        elif number < cfg.MIN_READING:
            errors.append(ValidationIssue(
                code="READING_NEGATIVE", message="Reading cannot be negative",
            ))
        elif number > self.max_reading:
            errors.append(ValidationIssue(
                code="READING_OUT_OF_RANGE",
                message=f"Reading exceeds the maximum of {self.max_reading:,.0f}",
            ))

        if not context.customer_id:
            errors.append(ValidationIssue(
                code="CUSTOMER_ID_REQUIRED", message="Customer is required",
            ))
        if context.reading_date is None:
            errors.append(ValidationIssue(
                code="READING_DATE_REQUIRED", message="Reading date is required",
            ))
        else:
            now = context.now or datetime.now(timezone.utc)
            if context.reading_date > now.date():
                errors.append(ValidationIssue(
                    code="READING_DATE_IN_FUTURE",
                    message=f"Reading date {context.reading_date} is in the future",
                ))

        # Rules below need a well-formed reading
        if errors:
            return ValidationResult(errors=errors, warnings=warnings)

        reading_date = context.reading_date
        history = self._history(context)

        duplicate = next(
            (r for r in history if r.month == month_key(reading_date)), None,
        )
        if duplicate is not None:
            errors.append(ValidationIssue(
                code="READING_DUPLICATE_MONTH",
                message=(
                    f"A reading already exists for {month_key(reading_date)} "
                    f"(value {duplicate.value:g} on {duplicate.date})"
                ),
                conflicting_id=duplicate.id,
            ))

        previous = context.previous_reading
        if previous is None:
            earlier = [r for r in history if r.date < reading_date]
            previous = earlier[-1] if earlier else None

        usage = None
        if previous is not None:
            if number < previous.value:
                errors.append(ValidationIssue(
                    code="READING_DECREASED",
                    message=(
                        f"Reading cannot decrease: {number:g} is below the previous "
                        f"reading {previous.value:g} on {previous.date}"
                    ),
                    conflicting_id=previous.id,
                ))
            else:
                usage = number - previous.value

        following = next((r for r in history if r.date > reading_date), None)
        if following is not None and number > following.value:
            errors.append(ValidationIssue(
                code="READING_DECREASED",
                message=(
                    f"Reading {number:g} is above the later reading "
                    f"{following.value:g} on {following.date}"
                ),
                conflicting_id=following.id,
            ))

        if usage is not None:
            if usage == 0:
                warnings.append(ValidationIssue(
                    code="READING_ZERO_USAGE",
                    message="No usage since the previous reading",
                    severity=Severity.warning,
                ))
            if usage > self.very_high_usage:
                warnings.append(ValidationIssue(
                    code="READING_VERY_HIGH_USAGE",
                    message=f"Very high usage: {usage:g} units",
                    severity=Severity.warning,
                ))
            average = rolling_average_usage(history, reading_date, self.anomaly_window)
            if average is not None and average > 0 and usage > self.anomaly_multiplier * average:
                warnings.append(ValidationIssue(
                    code="READING_USAGE_ANOMALY",
                    message=(
                        f"Usage {usage:g} is more than {self.anomaly_multiplier:g}x "
                        f"the recent average of {average:.1f}"
                    ),
                    severity=Severity.warning,
                ))

        if errors:
            logger.info("Reading for %s on %s rejected: %s",
                        context.customer_id, reading_date, [e.code for e in errors])
        return ValidationResult(errors=errors, warnings=warnings)

    # -----------------------------------------------------------------------
    # Discounts
    # -----------------------------------------------------------------------

    def validate_discount(self, discount: Discount,
                          existing: Optional[List[Discount]] = None) -> ValidationResult:
        """Check a discount before it is stored.

        *existing* is the customer's known discounts; when omitted they are
        read from the local store.
        """
        errors: List[ValidationIssue] = []

        percentage = _coerce_number(discount.percentage)
        amount = _coerce_number(discount.amount)
        has_percentage = bool(percentage)
        has_amount = bool(amount)

        if not has_percentage and not has_amount:
            errors.append(ValidationIssue(
                code="DISCOUNT_VALUE_REQUIRED",
                message="Either a percentage or a fixed amount is required",
            ))
        if has_percentage and has_amount:
            errors.append(ValidationIssue(
                code="DISCOUNT_MULTIPLE_TYPES",
                message="Choose either a percentage or a fixed amount, not both",
            ))
        if percentage is not None and (percentage < 0 or percentage > cfg.MAX_DISCOUNT_PERCENTAGE):
            errors.append(ValidationIssue(
                code="DISCOUNT_PERCENTAGE_OUT_OF_RANGE",
                message=f"Percentage must be between 0 and {cfg.MAX_DISCOUNT_PERCENTAGE}",
            ))
        if amount is not None and amount < 0:
            errors.append(ValidationIssue(
                code="DISCOUNT_AMOUNT_NEGATIVE", message="Amount cannot be negative",
            ))
        if amount is not None and amount > cfg.MAX_DISCOUNT_AMOUNT:
            errors.append(ValidationIssue(
                code="DISCOUNT_AMOUNT_TOO_LARGE",
                message=f"Amount cannot exceed {cfg.MAX_DISCOUNT_AMOUNT:,}",
            ))

        if not discount.customer_id:
            errors.append(ValidationIssue(
                code="CUSTOMER_ID_REQUIRED", message="Customer is required",
            ))

        reason = (discount.reason or "").strip()
        if not reason:
            errors.append(ValidationIssue(
                code="DISCOUNT_REASON_REQUIRED", message="Reason is required",
            ))
        elif len(reason) < cfg.MIN_REASON_LENGTH:
            errors.append(ValidationIssue(
                code="DISCOUNT_REASON_TOO_SHORT",
                message=f"Reason must be at least {cfg.MIN_REASON_LENGTH} characters",
            ))

        if not _MONTH_RE.match(discount.month or ""):
            errors.append(ValidationIssue(
                code="DISCOUNT_MONTH_INVALID", message="Month must be in YYYY-MM format",
            ))

        if discount.is_active and discount.customer_id and discount.month:
            if existing is None:
                existing = self.store.get_customer_discounts(discount.customer_id) if self.store else []
            clash = next((
                d for d in existing
                if d.customer_id == discount.customer_id
                and d.month == discount.month
                and d.is_active
                and d.id != discount.id
            ), None)
            if clash is not None:
                errors.append(ValidationIssue(
                    code="DISCOUNT_DUPLICATE_MONTH",
                    message=f"Customer already has an active discount for {discount.month}",
                    conflicting_id=clash.id,
                ))

        return ValidationResult(errors=errors)
