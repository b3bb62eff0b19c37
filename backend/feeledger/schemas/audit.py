# feeledger/schemas/audit.py

from pydantic import BaseModel
from typing import Optional, Any
from uuid import UUID
from datetime import datetime
from enum import Enum

from feeledger.schemas.common import LedgerModel


class AuditAction(str, Enum):
    fee_structure_created     = "FEE_STRUCTURE_CREATED"
    fee_structure_updated     = "FEE_STRUCTURE_UPDATED"
    fee_structure_deactivated = "FEE_STRUCTURE_DEACTIVATED"
    fee_structure_deleted     = "FEE_STRUCTURE_DELETED"
    invoice_generated         = "INVOICE_GENERATED"
    invoice_bulk_generated    = "INVOICE_BULK_GENERATED"
    invoice_updated           = "INVOICE_UPDATED"
    invoice_cancelled         = "INVOICE_CANCELLED"
    late_fee_applied          = "LATE_FEE_APPLIED"
    payment_collected         = "PAYMENT_COLLECTED"
    payment_updated           = "PAYMENT_UPDATED"
    payment_confirmed         = "PAYMENT_CONFIRMED"
    payment_reversed          = "PAYMENT_REVERSED"
    balance_updated           = "BALANCE_UPDATED"
    balance_carry_forward     = "BALANCE_CARRY_FORWARD"


class EntityType(str, Enum):
    fee_structure   = "FeeStructure"
    invoice         = "FeeInvoice"
    payment         = "Payment"
    student_balance = "StudentBalance"


class EntityRef(BaseModel):
    """
    What an audit entry is about. Build it with the constructors
    below so the kind and the id always travel together:
        EntityRef.invoice(inv["id"])
    entity_id is None only for batch actions (bulk generation).
    """
    entity_type: EntityType
    entity_id: Optional[UUID] = None

    @classmethod
    def fee_structure(cls, structure_id) -> "EntityRef":
        return cls(entity_type=EntityType.fee_structure, entity_id=structure_id)

    @classmethod
    def invoice(cls, invoice_id) -> "EntityRef":
        return cls(entity_type=EntityType.invoice, entity_id=invoice_id)

    @classmethod
    def invoice_batch(cls) -> "EntityRef":
        return cls(entity_type=EntityType.invoice, entity_id=None)

    @classmethod
    def payment(cls, payment_id) -> "EntityRef":
        return cls(entity_type=EntityType.payment, entity_id=payment_id)

    @classmethod
    def student_balance(cls, balance_id) -> "EntityRef":
        return cls(entity_type=EntityType.student_balance, entity_id=balance_id)


class AuditLogResponse(LedgerModel):
    id: UUID
    school_id: UUID
    action: AuditAction
    entity_type: EntityType
    entity_id: Optional[UUID] = None
    user_id: Optional[UUID] = None
    user_name: Optional[str] = None
    user_role: Optional[str] = None
    details: dict[str, Any] = {}
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime
