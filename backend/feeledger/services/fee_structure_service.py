# feeledger/services/fee_structure_service.py
#
# Fee structures are the price list a class is billed from.
# totalAmount is derived from feeHeads on every save; whatever
# the caller sends for it is ignored. Structures that have billed
# anyone are never hard-deleted; deactivate them instead so old
# invoice snapshots still point at something meaningful.

from typing import Optional
from decimal import Decimal
from datetime import datetime, timezone
import logging

from feeledger.core.database import SchoolDB
from feeledger.core.errors import LedgerConflict, NotFoundError, ValidationFailed
from feeledger.core.security import CurrentUser, RequestMeta
from feeledger.schemas.audit import AuditAction, EntityRef
from feeledger.schemas.fees import (
    FeeHead, FeeStructureCreate, FeeStructureUpdate,
)
from feeledger.services.audit_service import log_action

logger = logging.getLogger(__name__)


def fee_heads_total(fee_heads: list) -> Decimal:
    total = Decimal("0")
    for head in fee_heads:
        amount = head.amount if isinstance(head, FeeHead) else head.get("amount", 0)
        total += Decimal(str(amount or 0))
    return total


def _heads_payload(fee_heads: list[FeeHead]) -> list[dict]:
    return [
        {
            "name":          h.name.strip(),
            "amount":        float(h.amount),
            "frequency":     h.frequency.value,
            "is_compulsory": h.is_compulsory,
            "due_day":       h.due_day,
            "description":   h.description,
        }
        for h in fee_heads
    ]


def _late_fee_payload(config) -> dict:
    return {
        "enabled":           config.enabled,
        "type":              config.type.value,
        "amount":            float(config.amount),
        "grace_period_days": config.grace_period_days,
    }


def _ensure_no_active_duplicate(
    db: SchoolDB,
    class_id: str,
    section_id: Optional[str],
    session_id: str,
    exclude_id: Optional[str] = None,
) -> None:
    query = (
        db.select("fee_structures", "id, section_id")
        .eq("class_id", class_id)
        .eq("session_id", session_id)
        .eq("is_active", True)
    )
    for row in db.fetch(query, "fee_structures"):
        if row["id"] == exclude_id:
            continue
        if (row.get("section_id") or None) == (section_id or None):
            raise LedgerConflict(
                "duplicate_fee_structure",
                "An active fee structure already exists for this class/section "
                "in this session. Edit or deactivate it instead.",
            )


async def create_fee_structure(
    user: CurrentUser,
    data: FeeStructureCreate,
    meta: Optional[RequestMeta] = None,
) -> dict:
    school_id = str(user.school_id)
    db = SchoolDB(school_id)

    class_id   = str(data.class_id)
    section_id = str(data.section_id) if data.section_id else None
    session_id = str(data.session_id)

    if data.is_active:
        _ensure_no_active_duplicate(db, class_id, section_id, session_id)

    total = fee_heads_total(data.fee_heads)
    fs = db.insert("fee_structures", {
        "class_id":        class_id,
        "section_id":      section_id,
        "session_id":      session_id,
        "name":            data.name,
        "fee_heads":       _heads_payload(data.fee_heads),
        "total_amount":    float(total),
        "late_fee_config": _late_fee_payload(data.late_fee_config),
        "is_active":       data.is_active,
        "created_by":      str(user.user_id),
    })

    logger.info(f"Fee structure {fs.get('id')} created for class {class_id}: total {total}")
    await log_action(
        school_id=school_id, action=AuditAction.fee_structure_created,
        entity=EntityRef.fee_structure(fs["id"]), user=user, meta=meta,
        details={"class_id": class_id, "section_id": section_id,
                 "session_id": session_id, "total_amount": total,
                 "fee_heads": len(data.fee_heads)},
    )
    return fs


async def update_fee_structure(
    user: CurrentUser,
    structure_id: str,
    data: FeeStructureUpdate,
    meta: Optional[RequestMeta] = None,
) -> dict:
    school_id = str(user.school_id)
    db = SchoolDB(school_id)
    current = db.require_one("fee_structures", structure_id, "fee_structure_not_found", "Fee structure")

    changes = data.model_dump(exclude_unset=True)
    if not changes:
        raise ValidationFailed("no_fields_to_update", "No fields to update")

    payload: dict = {}
    if "name" in changes:
        payload["name"] = data.name
    if "section_id" in changes:
        payload["section_id"] = str(data.section_id) if data.section_id else None
    if data.fee_heads is not None:
        payload["fee_heads"] = _heads_payload(data.fee_heads)
    if data.late_fee_config is not None:
        payload["late_fee_config"] = _late_fee_payload(data.late_fee_config)
    if data.is_active is not None:
        payload["is_active"] = data.is_active

    becomes_active = payload.get("is_active", current["is_active"])
    if becomes_active:
        _ensure_no_active_duplicate(
            db,
            current["class_id"],
            payload.get("section_id", current.get("section_id")),
            current["session_id"],
            exclude_id=current["id"],
        )

    # Derived on every save, from whichever heads will be stored.
    heads = payload.get("fee_heads", current.get("fee_heads") or [])
    payload["total_amount"] = float(fee_heads_total(heads))
    payload["updated_at"] = datetime.now(timezone.utc).isoformat()

    updated = db.update("fee_structures", payload, record_id=structure_id)

    deactivated = current["is_active"] and payload.get("is_active") is False
    action = AuditAction.fee_structure_deactivated if deactivated else AuditAction.fee_structure_updated
    await log_action(
        school_id=school_id, action=action,
        entity=EntityRef.fee_structure(structure_id), user=user, meta=meta,
        details={"fields_changed": sorted(changes.keys()),
                 "previous_total": current.get("total_amount"),
                 "total_amount": payload["total_amount"]},
    )
    return updated


async def deactivate_fee_structure(
    user: CurrentUser,
    structure_id: str,
    meta: Optional[RequestMeta] = None,
) -> dict:
    """The deletion path generation flows see: inactive structures can't bill."""
    school_id = str(user.school_id)
    db = SchoolDB(school_id)
    current = db.require_one("fee_structures", structure_id, "fee_structure_not_found", "Fee structure")
    if not current["is_active"]:
        return current

    updated = db.update("fee_structures", {
        "is_active":  False,
        "updated_at": datetime.now(timezone.utc).isoformat(),
    }, record_id=structure_id)

    await log_action(
        school_id=school_id, action=AuditAction.fee_structure_deactivated,
        entity=EntityRef.fee_structure(structure_id), user=user, meta=meta,
        details={"class_id": current["class_id"], "session_id": current["session_id"]},
    )
    return updated


async def delete_fee_structure(
    user: CurrentUser,
    structure_id: str,
    meta: Optional[RequestMeta] = None,
) -> None:
    """Hard delete, only while no invoice was ever generated from it."""
    school_id = str(user.school_id)
    db = SchoolDB(school_id)
    current = db.require_one("fee_structures", structure_id, "fee_structure_not_found", "Fee structure")

    invoice_count = db.count("invoices", fee_structure_id=structure_id)
    if invoice_count > 0:
        raise LedgerConflict(
            "fee_structure_in_use",
            f"Cannot delete fee structure. {invoice_count} invoice(s) have been "
            "generated using this structure. Deactivate it instead.",
        )

    if not db.delete_if("fee_structures", structure_id):
        raise NotFoundError("fee_structure_not_found", "Fee structure not found")

    await log_action(
        school_id=school_id, action=AuditAction.fee_structure_deleted,
        entity=EntityRef.fee_structure(structure_id), user=user, meta=meta,
        details={"class_id": current["class_id"], "session_id": current["session_id"],
                 "total_amount": current.get("total_amount")},
    )


async def get_fee_structure(school_id: str, structure_id: str) -> dict:
    db = SchoolDB(school_id)
    return db.require_one("fee_structures", structure_id, "fee_structure_not_found", "Fee structure")


async def list_fee_structures(
    school_id: str,
    class_id: Optional[str] = None,
    session_id: Optional[str] = None,
    active_only: bool = True,
) -> list[dict]:
    db = SchoolDB(school_id)
    query = db.select("fee_structures")
    if active_only:
        query = query.eq("is_active", True)
    if class_id:
        query = query.eq("class_id", class_id)
    if session_id:
        query = query.eq("session_id", session_id)
    return db.fetch(query.order("created_at", desc=True), "fee_structures")
