"""
Pydantic models shared by the device engine and the backend service.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def month_key(d: date) -> str:
    """Billing month of a date as YYYY-MM."""
    return f"{d.year:04d}-{d.month:02d}"


# ---------------------------------------------------------------------------
# Execution context
# ---------------------------------------------------------------------------

class ExecutionContext(BaseModel):
    """Who is acting and what time it is, passed into every engine call."""
    actor: str = "system"
    now: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def today(self) -> date:
        return self.now.date()


# ---------------------------------------------------------------------------
# Domain records
# ---------------------------------------------------------------------------

class Customer(BaseModel):
    id: str
    name: str
    group: str = ""     # administrative group tag (RT)
    phone: str = ""


class Reading(BaseModel):
    id: str
    customer_id: str
    value: float
    date: date
    created_at: Optional[datetime] = None
    synced: bool = False
    remote_id: Optional[str] = None
    customer_name: str = ""
    customer_group: str = ""

    @property
    def month(self) -> str:
        return month_key(self.date)


class Discount(BaseModel):
    id: Optional[str] = None
    customer_id: str = ""
    percentage: float = 0
    amount: float = 0
    reason: str = ""
    month: str = ""     # YYYY-MM
    is_active: bool = True
    created_by: str = ""
    created_at: Optional[datetime] = None
    synced: bool = False
    remote_id: Optional[str] = None


class EntityType(str, Enum):
    reading = "reading"
    discount = "discount"


class QueueStatus(str, Enum):
    pending = "pending"
    in_flight = "in_flight"


class SyncQueueEntry(BaseModel):
    id: str
    seq: int
    entity_type: EntityType
    entity_id: str
    payload: Dict[str, Any] = {}
    status: QueueStatus = QueueStatus.pending
    attempts: int = 0
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class Severity(str, Enum):
    error = "error"
    warning = "warning"


class ValidationIssue(BaseModel):
    code: str
    message: str
    severity: Severity = Severity.error
    conflicting_id: Optional[str] = None


class ValidationResult(BaseModel):
    errors: List[ValidationIssue] = []
    warnings: List[ValidationIssue] = []

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def codes(self) -> List[str]:
        return [i.code for i in self.errors + self.warnings]

    def messages(self) -> List[str]:
        return [i.message for i in self.errors + self.warnings]


class ReadingContext(BaseModel):
    """Inputs for validating one reading.

    ``history`` is the customer's known readings when the caller already has
    them (e.g. fetched from the backend); otherwise the local store is used.
    """
    customer_id: str = ""
    reading_date: Optional[date] = None
    previous_reading: Optional[Reading] = None
    history: Optional[List[Reading]] = None
    exclude_reading_id: Optional[str] = None
    now: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Usage and billing (derived, never persisted)
# ---------------------------------------------------------------------------

class UsageCalculation(BaseModel):
    customer_id: str
    current_reading: Reading
    previous_reading: Optional[Reading] = None
    usage: float = 0
    clamped: bool = False


class BillingResult(BaseModel):
    customer_id: str
    usage: float
    billing_month: str
    unit_usage: float
    upper_usage: float
    unit_charge: int
    upper_charge: int
    service_fee: int
    subtotal: int
    discount: Optional[Discount] = None
    discount_amount: int = 0
    final_amount: int
    currency: str = "IDR"


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------

class SyncResult(BaseModel):
    success: bool = True
    synced: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = []
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class SyncStatus(BaseModel):
    is_online: bool
    sync_in_progress: bool
    pending_items: int
    exhausted_items: int
    last_sync: Optional[str] = None
    auto_sync_running: bool = False


# ---------------------------------------------------------------------------
# Batch pipeline
# ---------------------------------------------------------------------------

class PipelineFilters(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    customer_ids: List[str] = []
    groups: List[str] = []
    min_usage: Optional[float] = None
    max_usage: Optional[float] = None


class ProcessedRecord(BaseModel):
    customer: Customer
    current_reading: Reading
    previous_reading: Optional[Reading] = None
    usage: UsageCalculation
    billing: BillingResult
    warnings: List[str] = []
    processed_at: datetime


class RecordError(BaseModel):
    customer_id: str
    reading_id: Optional[str] = None
    codes: List[str] = []
    message: str


class PipelineMetrics(BaseModel):
    total_customers: int = 0
    total_readings: int = 0
    total_usage: float = 0
    total_billing: int = 0
    total_discounts: int = 0
    average_usage: float = 0
    error_count: int = 0
    processing_time_ms: float = 0


class PipelineResult(BaseModel):
    records: List[ProcessedRecord] = []
    metrics: PipelineMetrics
    errors: List[RecordError] = []
    source: str = "local"


class GroupTotals(BaseModel):
    group: str
    customer_count: int = 0
    known_customers: int = 0
    total_usage: float = 0
    total_billed: int = 0
    total_discounts: int = 0
    average_bill: float = 0
    incomplete: bool = False
    missing_readings: List[str] = []


class MonthlyReport(BaseModel):
    year: int
    month: int
    groups: List[GroupTotals] = []
    total_customers: int = 0
    total_usage: float = 0
    total_billed: int = 0
    total_discounts: int = 0
    average_bill_per_customer: float = 0
    records: List[ProcessedRecord] = []
    errors: List[RecordError] = []
    source: str = "local"


# ---------------------------------------------------------------------------
# Backend service payloads
# ---------------------------------------------------------------------------

class ReadingIn(BaseModel):
    client_ref: str = Field(..., min_length=1, description="Device-local reading id")
    customer_id: str = Field(..., min_length=1)
    value: float = Field(..., ge=0)
    date: date


class DiscountIn(BaseModel):
    client_ref: str = Field(..., min_length=1, description="Device-local discount id")
    customer_id: str = Field(..., min_length=1)
    percentage: float = Field(0, ge=0, le=100)
    amount: float = Field(0, ge=0)
    reason: str = Field(..., min_length=1)
    month: str = Field(..., pattern=r"^\d{4}-\d{2}$")
    is_active: bool = True
    created_by: str = "admin"
    created_at: Optional[datetime] = None


class RemoteAck(BaseModel):
    id: str
    client_ref: str
    replayed: bool = False
