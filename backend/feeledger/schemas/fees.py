# feeledger/schemas/fees.py

from pydantic import Field, field_validator
from typing import Optional, List, Union
from uuid import UUID
from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from feeledger.schemas.common import LedgerModel


# ── Frequencies ──────────────────────────────────────────────
# Fee structures speak lower-case ("monthly"), invoices speak
# title-case ("Monthly"). normalize_frequency() is the ONLY place
# the two vocabularies meet.
class FeeFrequency(str, Enum):
    monthly   = "monthly"
    quarterly = "quarterly"
    annual    = "annual"
    one_time  = "one-time"


class ItemFrequency(str, Enum):
    monthly   = "Monthly"
    quarterly = "Quarterly"
    one_time  = "One-time"
    annual    = "Annual"


_FREQUENCY_ALIASES = {
    "monthly":   ItemFrequency.monthly,
    "month":     ItemFrequency.monthly,
    "quarterly": ItemFrequency.quarterly,
    "quarter":   ItemFrequency.quarterly,
    "annual":    ItemFrequency.annual,
    "annually":  ItemFrequency.annual,
    "yearly":    ItemFrequency.annual,
    "one-time":  ItemFrequency.one_time,
    "one_time":  ItemFrequency.one_time,
    "onetime":   ItemFrequency.one_time,
    "one time":  ItemFrequency.one_time,
}


def normalize_frequency(value: Union[str, Enum, None]) -> ItemFrequency:
    """
    Map any spelling of a frequency onto the invoice vocabulary.
    None defaults to Monthly, the fee-structure default.
    Raises ValueError for anything unrecognised.
    """
    if value is None:
        return ItemFrequency.monthly
    raw = value.value if isinstance(value, Enum) else str(value)
    key = raw.strip().lower()
    if key not in _FREQUENCY_ALIASES:
        raise ValueError(f"Unknown fee frequency '{raw}'")
    return _FREQUENCY_ALIASES[key]


_STRUCTURE_FREQUENCY = {
    ItemFrequency.monthly:   FeeFrequency.monthly,
    ItemFrequency.quarterly: FeeFrequency.quarterly,
    ItemFrequency.annual:    FeeFrequency.annual,
    ItemFrequency.one_time:  FeeFrequency.one_time,
}


class InvoiceStatus(str, Enum):
    pending   = "Pending"
    partial   = "Partial"
    paid      = "Paid"
    overdue   = "Overdue"        # never stored, evaluated on read
    cancelled = "Cancelled"


class LateFeeType(str, Enum):
    fixed      = "fixed"
    percentage = "percentage"


# ── Fee Structures ───────────────────────────────────────────
class FeeHead(LedgerModel):
    name: str = Field(min_length=1, examples=["Tuition Fee", "Transport"])
    amount: Decimal = Field(ge=0, decimal_places=2)
    frequency: FeeFrequency = FeeFrequency.monthly
    is_compulsory: bool = True
    due_day: int = Field(default=5, ge=1, le=31)
    description: Optional[str] = None

    @field_validator("frequency", mode="before")
    @classmethod
    def _canonical_frequency(cls, v):
        return _STRUCTURE_FREQUENCY[normalize_frequency(v)]


class LateFeeConfig(LedgerModel):
    enabled: bool = False
    type: LateFeeType = LateFeeType.fixed
    amount: Decimal = Field(default=Decimal("0"), ge=0)
    grace_period_days: int = Field(default=0, ge=0)


class FeeStructureCreate(LedgerModel):
    class_id: UUID
    section_id: Optional[UUID] = None       # None → applies to every section
    session_id: UUID
    name: Optional[str] = None
    fee_heads: List[FeeHead] = Field(min_length=1)
    late_fee_config: LateFeeConfig = Field(default_factory=LateFeeConfig)
    is_active: bool = True
    # totalAmount is never accepted from the caller.


class FeeStructureUpdate(LedgerModel):
    name: Optional[str] = None
    section_id: Optional[UUID] = None
    fee_heads: Optional[List[FeeHead]] = Field(default=None, min_length=1)
    late_fee_config: Optional[LateFeeConfig] = None
    is_active: Optional[bool] = None


class FeeStructureResponse(LedgerModel):
    id: UUID
    school_id: UUID
    class_id: UUID
    section_id: Optional[UUID] = None
    session_id: UUID
    name: Optional[str] = None
    fee_heads: List[FeeHead] = []
    total_amount: Decimal
    late_fee_config: Optional[LateFeeConfig] = None
    is_active: bool
    created_by: Optional[UUID] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ── Invoices ─────────────────────────────────────────────────
class InvoiceItem(LedgerModel):
    """Snapshot of a fee head at generation time. Never a live reference."""
    fee_head_name: str = Field(min_length=1)
    amount: Decimal = Field(ge=0)
    frequency: ItemFrequency = ItemFrequency.monthly

    @field_validator("frequency", mode="before")
    @classmethod
    def _normalize(cls, v):
        return normalize_frequency(v)


class BillingPeriod(LedgerModel):
    month: Optional[int] = Field(default=None, ge=1, le=12)
    quarter: Optional[int] = Field(default=None, ge=1, le=4)
    year: Optional[int] = None
    display_text: str


class GenerateInvoiceRequest(LedgerModel):
    """Either explicit items or a fee structure to snapshot."""
    student_id: UUID
    session_id: UUID
    due_date: date
    items: Optional[List[InvoiceItem]] = None
    fee_structure_id: Optional[UUID] = None
    include_optional_fees: bool = True
    remarks: Optional[str] = None


class BulkGenerateRequest(LedgerModel):
    # Class id OR class display name, see resolve_class_students().
    class_id: str = Field(min_length=1)
    section_id: Optional[UUID] = None
    session_id: UUID
    due_date: date
    items: Optional[List[InvoiceItem]] = None
    fee_structure_id: Optional[UUID] = None
    include_optional_fees: bool = True
    remarks: Optional[str] = None


class BulkGenerateError(LedgerModel):
    student_id: UUID
    student_name: Optional[str] = None
    code: str
    error: str


class BulkGenerateResponse(LedgerModel):
    """Partial failure is a normal outcome, not an exception."""
    class_id: str
    class_name: Optional[str] = None
    total_students: int
    generated: int
    failed: int
    invoice_ids: List[UUID] = []
    errors: List[BulkGenerateError] = []
    message: str


class InvoiceUpdate(LedgerModel):
    items: Optional[List[InvoiceItem]] = Field(default=None, min_length=1)
    due_date: Optional[date] = None
    remarks: Optional[str] = None


class LateFeeRequest(LedgerModel):
    # Omit to derive the amount from the fee structure's lateFeeConfig.
    amount: Optional[Decimal] = Field(default=None, gt=0)


class CancelInvoiceRequest(LedgerModel):
    reason: str = Field(min_length=3, max_length=500)


class InvoiceResponse(LedgerModel):
    id: UUID
    school_id: UUID
    invoice_number: str
    student_id: UUID
    class_id: Optional[UUID] = None
    section_id: Optional[UUID] = None
    session_id: UUID
    fee_structure_id: Optional[UUID] = None
    items: List[InvoiceItem] = []
    total_amount: Decimal
    paid_amount: Decimal
    balance_amount: Decimal
    late_fee_amount: Decimal = Decimal("0")
    late_fee_applied_at: Optional[datetime] = None
    status: InvoiceStatus
    due_date: date
    issued_date: Optional[datetime] = None
    billing_period: Optional[BillingPeriod] = None
    remarks: Optional[str] = None
    cancel_reason: Optional[str] = None
    carried_from_session_id: Optional[UUID] = None
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
