# feeledger/schemas/payments.py

from pydantic import ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Optional, List
from uuid import UUID
from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from feeledger.schemas.common import LedgerModel
from feeledger.schemas.fees import InvoiceItem, InvoiceResponse


class PaymentMethod(str, Enum):
    cash          = "Cash"
    bank_transfer = "Bank Transfer"
    upi           = "UPI"
    cheque        = "Cheque"
    card          = "Card"
    online        = "Online"


class TransactionDetails(LedgerModel):
    transaction_id: Optional[str] = None
    bank_name: Optional[str] = None
    cheque_number: Optional[str] = None
    cheque_date: Optional[date] = None
    upi_id: Optional[str] = None
    reference_number: Optional[str] = None


# ── Collection ───────────────────────────────────────────────
class CollectPaymentRequest(LedgerModel):
    invoice_id: UUID
    amount: Decimal = Field(gt=0)
    payment_method: PaymentMethod = PaymentMethod.cash
    payment_date: Optional[datetime] = None
    transaction_details: Optional[TransactionDetails] = None
    remarks: Optional[str] = None
    # None → follow settings.AUTO_CONFIRM_PAYMENTS
    confirm: Optional[bool] = None


class ReversePaymentRequest(LedgerModel):
    reason: str = Field(min_length=3, max_length=500)


class PaymentUpdate(LedgerModel):
    """
    The only editable fields of a payment, and only until it is
    confirmed. Anything else sent here is rejected by the service
    (extra keys are kept so the guard can name them).
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    remarks: Optional[str] = None
    transaction_details: Optional[TransactionDetails] = None
    payment_date: Optional[datetime] = None
    payment_method: Optional[PaymentMethod] = None


class PaymentResponse(LedgerModel):
    id: UUID
    school_id: UUID
    receipt_number: str
    invoice_id: UUID
    student_id: UUID
    amount: Decimal                     # negative for a reversal record
    payment_method: PaymentMethod
    payment_date: datetime
    transaction_details: Optional[TransactionDetails] = None
    remarks: Optional[str] = None
    is_confirmed: bool
    confirmed_at: Optional[datetime] = None
    confirmed_by: Optional[UUID] = None
    is_reversed: bool = False
    reversed_at: Optional[datetime] = None
    reversed_by: Optional[UUID] = None
    reversal_reason: Optional[str] = None
    reversal_payment_id: Optional[UUID] = None
    reverses_payment_id: Optional[UUID] = None
    collected_by: Optional[UUID] = None
    created_at: Optional[datetime] = None


class PaymentResult(LedgerModel):
    """Payment plus the invoice as it stands after the write."""
    payment: PaymentResponse
    invoice: InvoiceResponse


class ReversalResult(LedgerModel):
    original: PaymentResponse
    reversal: PaymentResponse
    invoice: InvoiceResponse


# ── Receipt snapshot for export / notification collaborators ─
class SchoolBranding(LedgerModel):
    id: UUID
    name: str = ""
    address: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    logo_url: Optional[str] = None


class ReceiptStudent(LedgerModel):
    id: UUID
    name: str = ""
    admission_number: Optional[str] = None
    class_name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


class ReceiptBundle(LedgerModel):
    school: SchoolBranding
    student: ReceiptStudent
    invoice: InvoiceResponse
    payment: PaymentResponse
    items: List[InvoiceItem] = []
    paid_before: Decimal
    outstanding_after: Decimal
