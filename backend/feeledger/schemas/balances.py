# feeledger/schemas/balances.py

from typing import Optional
from uuid import UUID
from datetime import date, datetime
from decimal import Decimal

from feeledger.schemas.common import LedgerModel


class StudentBalanceResponse(LedgerModel):
    """Derived cache. Rebuilt from invoices on every change, never patched."""
    student_id: UUID
    session_id: UUID
    total_invoiced: Decimal = Decimal("0")
    total_paid: Decimal = Decimal("0")
    total_balance: Decimal = Decimal("0")
    last_payment_date: Optional[datetime] = None
    last_payment_amount: Optional[Decimal] = None
    updated_at: Optional[datetime] = None


class CarryForwardRequest(LedgerModel):
    student_id: UUID
    from_session_id: UUID
    to_session_id: UUID
    due_date: date

