# feeledger/services/invoice_service.py
#
# The invoice is the centre of the ledger. Invariant, always:
#     balance_amount == max(0, total_amount - paid_amount)
#
# Stored status moves Pending → Partial → Paid as money comes in
# and back again when a payment is reversed. Overdue is never
# stored: readers compute it from due_date (effective_status).
# Cancelled is reached only through cancel_invoice().
#
# Every write to an invoice goes through _write_invoice(), a
# compare-and-set on invoices.version. Two concurrent payments
# against the same invoice therefore serialize: the loser re-reads
# and re-validates against the winner's balance.

from typing import Callable, Optional
from uuid import UUID
from decimal import Decimal
from datetime import datetime, timezone, date, timedelta
from collections import Counter
from zoneinfo import ZoneInfo
import calendar
import logging
import re

from feeledger.core.config import settings
from feeledger.core.database import SchoolDB
from feeledger.core.errors import (
    LedgerConflict, LedgerError, NotFoundError, ValidationFailed,
)
from feeledger.core.security import CurrentUser, RequestMeta
from feeledger.schemas.audit import AuditAction, EntityRef
from feeledger.schemas.balances import CarryForwardRequest
from feeledger.schemas.fees import (
    BulkGenerateError, BulkGenerateRequest, BulkGenerateResponse,
    GenerateInvoiceRequest, InvoiceItem, InvoiceStatus, InvoiceUpdate,
    ItemFrequency, LateFeeType, normalize_frequency,
)
from feeledger.services.audit_service import log_action
from feeledger.services.balance_service import refresh_after_write, update_balance
from feeledger.utils.numbering import generate_invoice_number

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


# ── Money & status helpers ───────────────────────────────────

def money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(CENT)


def today() -> date:
    return datetime.now(ZoneInfo(settings.TIMEZONE)).date()


def _as_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def derive_status(paid: Decimal, balance: Decimal, current: str) -> InvoiceStatus:
    if current == InvoiceStatus.cancelled.value:
        return InvoiceStatus.cancelled
    if balance == 0 and paid > 0:
        return InvoiceStatus.paid
    if paid > 0:
        return InvoiceStatus.partial
    return InvoiceStatus.pending


def money_fields(total: Decimal, paid: Decimal, current_status: str) -> dict:
    """The only place balance and status are derived from total/paid."""
    balance = max(Decimal("0"), total - paid)
    return {
        "total_amount":   float(total),
        "paid_amount":    float(paid),
        "balance_amount": float(balance),
        "status":         derive_status(paid, balance, current_status).value,
    }


def effective_status(invoice: dict, on: Optional[date] = None) -> str:
    """Stored status, except unpaid-and-past-due reads as Overdue."""
    stored = invoice["status"]
    if stored in (InvoiceStatus.pending.value, InvoiceStatus.partial.value):
        if money(invoice["balance_amount"]) > 0 and _as_date(invoice["due_date"]) < (on or today()):
            return InvoiceStatus.overdue.value
    return stored


def present_invoice(invoice: dict, on: Optional[date] = None) -> dict:
    return {**invoice, "status": effective_status(invoice, on)}


# ── Billing period ───────────────────────────────────────────
_QUARTER_MONTHS = {1: "Jan-Mar", 2: "Apr-Jun", 3: "Jul-Sep", 4: "Oct-Dec"}


def billing_period_for(due: date, items: list[dict]) -> dict:
    """Receipt-facing period text, keyed on the most common item frequency."""
    freqs = [normalize_frequency(i.get("frequency")) for i in items]
    dominant = Counter(freqs).most_common(1)[0][0] if freqs else ItemFrequency.one_time
    month, year = due.month, due.year

    if dominant == ItemFrequency.monthly:
        return {"month": month, "year": year,
                "display_text": f"{calendar.month_name[month]} {year}"}
    if dominant == ItemFrequency.quarterly:
        quarter = (month - 1) // 3 + 1
        return {"quarter": quarter, "year": year,
                "display_text": f"Q{quarter} {year} ({_QUARTER_MONTHS[quarter]})"}
    if dominant == ItemFrequency.annual:
        return {"year": year, "display_text": f"Academic Year {year}-{year + 1}"}
    return {"display_text": "One-time Payment"}


# ── Items ────────────────────────────────────────────────────

def _items_payload(items: list[InvoiceItem]) -> list[dict]:
    return [
        {
            "fee_head_name": i.fee_head_name.strip(),
            "amount":        float(money(i.amount)),
            "frequency":     i.frequency.value,
        }
        for i in items
    ]


def items_from_structure(structure: dict, include_optional: bool = True) -> list[dict]:
    """Snapshot a structure's fee heads. Later edits to the structure don't reach this copy."""
    items = []
    for head in structure.get("fee_heads") or []:
        if not head.get("is_compulsory", True) and not include_optional:
            continue
        items.append({
            "fee_head_name": head["name"],
            "amount":        float(money(head["amount"])),
            "frequency":     normalize_frequency(head.get("frequency")).value,
        })
    return items


def items_total(items: list[dict]) -> Decimal:
    return sum((money(i["amount"]) for i in items), Decimal("0"))


def _resolve_items(
    db: SchoolDB,
    items: Optional[list[InvoiceItem]],
    fee_structure_id: Optional[UUID],
    include_optional: bool,
) -> tuple[list[dict], Optional[dict]]:
    structure = None
    if fee_structure_id:
        structure = db.require_one(
            "fee_structures", str(fee_structure_id), "fee_structure_not_found", "Fee structure",
        )
        if not structure.get("is_active", False):
            raise ValidationFailed(
                "fee_structure_inactive",
                "This fee structure is deactivated and cannot be used to bill.",
                field="feeStructureId",
            )

    if items:
        resolved = _items_payload(items)
    elif structure:
        resolved = items_from_structure(structure, include_optional)
    else:
        resolved = []

    if not resolved:
        raise ValidationFailed(
            "no_invoice_items",
            "At least one fee item is required (send items or a feeStructureId).",
            field="items",
        )
    return resolved, structure


# ── Student / class directory ────────────────────────────────

def load_student(db: SchoolDB, student_id: str) -> dict:
    student = db.select_one("users", str(student_id))
    if not student or student.get("role") != "student":
        raise NotFoundError("student_not_found", "Student not found")
    return student


def _check_billable(student: dict) -> None:
    if not student.get("class_id"):
        raise ValidationFailed(
            "student_class_unresolved",
            "Student has no class assigned; fix the student record first.",
            field="classId",
        )


def _looks_like_uuid(value: str) -> bool:
    try:
        UUID(str(value))
        return True
    except ValueError:
        return False


def resolve_class(db: SchoolDB, class_ref: str) -> dict:
    cls = db.select_one("classes", class_ref) if _looks_like_uuid(class_ref) else None
    if not cls:
        rows = db.fetch(db.select("classes").eq("name", class_ref).limit(1), "classes")
        cls = rows[0] if rows else None
    if not cls:
        raise NotFoundError("class_not_found", f"Class '{class_ref}' not found")
    return cls


def resolve_class_students(db: SchoolDB, cls: dict, section_id: Optional[str] = None) -> list[dict]:
    """
    Students of a class, matched three ways and unioned:
      class_id == class.id, class_name == class.name, or a number
      embedded in class_name equal to class.grade.
    Legacy records only carry "Grade 5 - B" style names, hence the
    grade match. It can over-match; see DESIGN.md.
    """
    students = db.fetch(
        db.select("users").eq("role", "student").eq("is_active", True),
        "users",
    )
    name  = (cls.get("name") or "").strip().lower()
    grade = str(cls["grade"]).strip() if cls.get("grade") not in (None, "") else None

    matched = []
    for s in students:
        class_name = (s.get("class_name") or "").strip().lower()
        by_id    = s.get("class_id") == cls["id"]
        by_name  = bool(name) and class_name == name
        by_grade = grade is not None and grade in re.findall(r"\d+", class_name)
        if not (by_id or by_name or by_grade):
            continue
        if section_id and s.get("section_id") != str(section_id):
            continue
        matched.append(s)
    return matched


# ── Core write paths ─────────────────────────────────────────

def _write_invoice(
    db: SchoolDB,
    invoice_id: str,
    mutate: Callable[[dict], dict],
) -> tuple[dict, dict]:
    """
    Read → validate/mutate → compare-and-set on version.
    `mutate` raises a LedgerError to reject; it sees fresh state on
    every attempt, so a rejected write never changes anything.
    Returns (before, after).
    """
    for attempt in range(1, settings.LEDGER_WRITE_ATTEMPTS + 1):
        current = db.require_one("invoices", invoice_id, "invoice_not_found", "Invoice")
        payload = mutate(current)
        payload["version"] = int(current.get("version") or 0) + 1
        payload["updated_at"] = _now_iso()
        updated = db.update_if("invoices", payload, invoice_id, version=current.get("version") or 0)
        if updated:
            return current, updated
        logger.warning(f"Invoice {invoice_id} changed underneath us (attempt {attempt})")

    raise LedgerConflict(
        "concurrent_modification",
        "The invoice is being updated by someone else. Please retry.",
    )


def record_payment(db: SchoolDB, invoice_id: str, amount: Decimal) -> tuple[dict, dict]:
    """
    Apply a signed amount to paid_amount. Positive = collection
    (must not exceed the balance), negative = reversal.
    Called by the payment service only.
    """
    amount = money(amount)

    def mutate(cur: dict) -> dict:
        if cur["status"] == InvoiceStatus.cancelled.value:
            raise LedgerConflict("invoice_cancelled", "Invoice is cancelled")
        total = money(cur["total_amount"])
        paid  = money(cur["paid_amount"])
        balance = max(Decimal("0"), total - paid)
        if amount > 0 and amount > balance:
            raise LedgerConflict(
                "payment_exceeds_balance",
                f"Payment of {amount} exceeds the outstanding balance of {balance}.",
                field="amount", balance=float(balance),
            )
        new_paid = paid + amount
        if new_paid < 0:
            raise LedgerConflict(
                "paid_amount_negative",
                "This reversal would take the invoice's paid amount below zero.",
            )
        return money_fields(total, new_paid, cur["status"])

    return _write_invoice(db, str(invoice_id), mutate)


async def _create_invoice(
    db: SchoolDB,
    user: CurrentUser,
    student: dict,
    session_id: str,
    items: list[dict],
    due: date,
    fee_structure_id: Optional[str] = None,
    remarks: Optional[str] = None,
    carried_from_session_id: Optional[str] = None,
) -> dict:
    _check_billable(student)
    # Number first: if the counter store is down nothing gets written.
    invoice_number = generate_invoice_number(db)
    total = items_total(items)

    invoice = db.insert("invoices", {
        "invoice_number":          invoice_number,
        "student_id":              student["id"],
        "class_id":                student.get("class_id"),
        "section_id":              student.get("section_id"),
        "session_id":              str(session_id),
        "fee_structure_id":        fee_structure_id,
        "items":                   items,
        **money_fields(total, Decimal("0"), InvoiceStatus.pending.value),
        "status":                  InvoiceStatus.pending.value,
        "late_fee_amount":         0,
        "due_date":                due.isoformat(),
        "issued_date":             _now_iso(),
        "billing_period":          billing_period_for(due, items),
        "remarks":                 remarks,
        "carried_from_session_id": carried_from_session_id,
        "generated_by":            str(user.user_id),
        "version":                 0,
    })
    logger.info(f"Invoice {invoice_number} generated for student {student['id']}: {total}")
    await refresh_after_write(db.school_id, student["id"], str(session_id))
    return invoice


# ── Generation ───────────────────────────────────────────────

async def generate_invoice(
    user: CurrentUser,
    data: GenerateInvoiceRequest,
    meta: Optional[RequestMeta] = None,
) -> dict:
    school_id = str(user.school_id)
    db = SchoolDB(school_id)

    student = load_student(db, str(data.student_id))
    items, structure = _resolve_items(db, data.items, data.fee_structure_id, data.include_optional_fees)

    invoice = await _create_invoice(
        db, user, student, str(data.session_id), items, data.due_date,
        fee_structure_id=str(data.fee_structure_id) if data.fee_structure_id else None,
        remarks=data.remarks,
    )
    await log_action(
        school_id=school_id, action=AuditAction.invoice_generated,
        entity=EntityRef.invoice(invoice["id"]), user=user, meta=meta,
        details={"student_id": student["id"], "student_name": student.get("name"),
                 "invoice_number": invoice["invoice_number"],
                 "total_amount": invoice["total_amount"],
                 "fee_structure_id": structure["id"] if structure else None},
    )
    return invoice


async def generate_bulk(
    user: CurrentUser,
    data: BulkGenerateRequest,
    meta: Optional[RequestMeta] = None,
) -> BulkGenerateResponse:
    """
    One invoice per student of a class/section. Each student stands
    alone: a failure is recorded in `errors` and the loop moves on.
    Nothing already generated is rolled back.
    """
    school_id = str(user.school_id)
    db = SchoolDB(school_id)

    cls = resolve_class(db, data.class_id)
    students = resolve_class_students(db, cls, str(data.section_id) if data.section_id else None)
    if not students:
        raise NotFoundError(
            "no_students_found", "No students found in the specified class/section",
        )
    if len(students) > settings.BULK_GENERATE_MAX_STUDENTS:
        raise ValidationFailed(
            "too_many_students",
            f"Bulk generation is limited to {settings.BULK_GENERATE_MAX_STUDENTS} students per call.",
        )

    items, structure = _resolve_items(db, data.items, data.fee_structure_id, data.include_optional_fees)
    fee_structure_id = str(data.fee_structure_id) if data.fee_structure_id else None

    invoice_ids: list[str] = []
    errors: list[BulkGenerateError] = []
    for student in students:
        try:
            invoice = await _create_invoice(
                db, user, student, str(data.session_id), [dict(i) for i in items],
                data.due_date, fee_structure_id=fee_structure_id, remarks=data.remarks,
            )
            invoice_ids.append(invoice["id"])
        except LedgerError as e:
            logger.warning(f"Bulk invoice skipped student {student['id']}: {e}")
            errors.append(BulkGenerateError(
                student_id=student["id"], student_name=student.get("name"),
                code=e.code, error=e.message,
            ))
        except Exception as e:
            logger.error(f"Bulk invoice failed for student {student['id']}: {e}", exc_info=True)
            errors.append(BulkGenerateError(
                student_id=student["id"], student_name=student.get("name"),
                code="internal_error", error=str(e),
            ))

    await log_action(
        school_id=school_id, action=AuditAction.invoice_bulk_generated,
        entity=EntityRef.invoice_batch(), user=user, meta=meta,
        details={"class_id": cls["id"], "class_name": cls.get("name"),
                 "section_id": str(data.section_id) if data.section_id else None,
                 "session_id": str(data.session_id),
                 "fee_structure_id": structure["id"] if structure else None,
                 "total_students": len(students),
                 "success_count": len(invoice_ids), "error_count": len(errors),
                 "invoice_ids": invoice_ids,
                 "errors": [e.model_dump(mode="json") for e in errors]},
    )

    return BulkGenerateResponse(
        class_id=cls["id"],
        class_name=cls.get("name"),
        total_students=len(students),
        generated=len(invoice_ids),
        failed=len(errors),
        invoice_ids=invoice_ids,
        errors=errors,
        message=(
            f"Generated {len(invoice_ids)} invoices."
            + (f" {len(errors)} failed." if errors else "")
        ),
    )


# ── Late fee ─────────────────────────────────────────────────

def _late_fee_from_config(db: SchoolDB, invoice: dict, on: date) -> Decimal:
    if not invoice.get("fee_structure_id"):
        raise ValidationFailed(
            "late_fee_not_applicable",
            "Invoice has no fee structure; send an explicit late fee amount.",
            field="amount",
        )
    structure = db.select_one("fee_structures", invoice["fee_structure_id"]) or {}
    config = structure.get("late_fee_config") or {}
    if not config.get("enabled"):
        raise ValidationFailed(
            "late_fee_not_applicable",
            "Late fees are not enabled for this fee structure.",
            field="amount",
        )
    grace_ends = _as_date(invoice["due_date"]) + timedelta(days=int(config.get("grace_period_days") or 0))
    if on <= grace_ends:
        raise ValidationFailed(
            "late_fee_not_applicable",
            f"The grace period runs until {grace_ends.isoformat()}.",
        )
    if config.get("type") == LateFeeType.percentage.value:
        base = money(invoice["total_amount"]) - money(invoice.get("late_fee_amount"))
        return (base * money(config.get("amount")) / 100).quantize(CENT)
    return money(config.get("amount"))


async def apply_late_fee(
    user: CurrentUser,
    invoice_id: str,
    amount: Optional[Decimal] = None,
    meta: Optional[RequestMeta] = None,
) -> dict:
    """
    Adds to late_fee_amount, total_amount and balance_amount.
    Refused on Paid and on Cancelled invoices.
    """
    school_id = str(user.school_id)
    db = SchoolDB(school_id)

    if amount is None:
        invoice = db.require_one("invoices", invoice_id, "invoice_not_found", "Invoice")
        amount = _late_fee_from_config(db, invoice, today())
    amount = money(amount)
    if amount <= 0:
        raise ValidationFailed("invalid_amount", "Late fee must be greater than zero", field="amount")

    def mutate(cur: dict) -> dict:
        if cur["status"] == InvoiceStatus.cancelled.value:
            raise LedgerConflict("invoice_cancelled", "Cannot apply late fee to a cancelled invoice")
        if cur["status"] == InvoiceStatus.paid.value:
            raise LedgerConflict("invoice_paid", "Cannot apply late fee to a paid invoice")
        total = money(cur["total_amount"]) + amount
        return {
            **money_fields(total, money(cur["paid_amount"]), cur["status"]),
            "late_fee_amount":     float(money(cur.get("late_fee_amount")) + amount),
            "late_fee_applied_at": _now_iso(),
        }

    _, updated = _write_invoice(db, invoice_id, mutate)

    await log_action(
        school_id=school_id, action=AuditAction.late_fee_applied,
        entity=EntityRef.invoice(invoice_id), user=user, meta=meta,
        details={"invoice_number": updated["invoice_number"], "late_fee_amount": amount,
                 "total_amount": updated["total_amount"]},
    )
    await refresh_after_write(school_id, updated["student_id"], updated["session_id"])
    return updated


# ── Edit / cancel / delete ───────────────────────────────────

async def update_invoice(
    user: CurrentUser,
    invoice_id: str,
    data: InvoiceUpdate,
    meta: Optional[RequestMeta] = None,
) -> dict:
    """Replace items and/or due date. Never below what is already paid."""
    school_id = str(user.school_id)
    db = SchoolDB(school_id)

    if data.items is None and data.due_date is None and data.remarks is None:
        raise ValidationFailed("no_fields_to_update", "No fields to update")
    new_items = _items_payload(data.items) if data.items is not None else None

    def mutate(cur: dict) -> dict:
        if cur["status"] == InvoiceStatus.cancelled.value:
            raise LedgerConflict("invoice_cancelled", "Cannot edit a cancelled invoice")
        items = new_items if new_items is not None else (cur.get("items") or [])
        late  = money(cur.get("late_fee_amount"))
        total = items_total(items) + late
        paid  = money(cur["paid_amount"])
        if total < paid:
            raise LedgerConflict(
                "invoice_below_paid_amount",
                f"New total {total} is below the {paid} already collected.",
            )
        due = data.due_date or _as_date(cur["due_date"])
        payload = {
            **money_fields(total, paid, cur["status"]),
            "items":          items,
            "due_date":       due.isoformat(),
            "billing_period": billing_period_for(due, items),
        }
        if data.remarks is not None:
            payload["remarks"] = data.remarks
        return payload

    before, updated = _write_invoice(db, invoice_id, mutate)

    await log_action(
        school_id=school_id, action=AuditAction.invoice_updated,
        entity=EntityRef.invoice(invoice_id), user=user, meta=meta,
        details={"invoice_number": updated["invoice_number"],
                 "previous_total": before["total_amount"], "total_amount": updated["total_amount"],
                 "previous_due_date": before["due_date"], "due_date": updated["due_date"]},
    )
    await refresh_after_write(school_id, updated["student_id"], updated["session_id"])
    return updated


def _ensure_unpaid(db: SchoolDB, invoice: dict) -> None:
    if money(invoice["paid_amount"]) != 0:
        raise LedgerConflict(
            "invoice_has_payments",
            "Invoice has payments against it. Reverse them first.",
        )
    if db.count("payments", invoice_id=invoice["id"]) > 0:
        raise LedgerConflict(
            "invoice_has_payment_history",
            "Invoice has payment history and must be kept. Cancel it instead.",
        )


async def cancel_invoice(
    user: CurrentUser,
    invoice_id: str,
    reason: str,
    meta: Optional[RequestMeta] = None,
) -> dict:
    school_id = str(user.school_id)
    db = SchoolDB(school_id)

    def mutate(cur: dict) -> dict:
        if cur["status"] == InvoiceStatus.cancelled.value:
            raise LedgerConflict("invoice_cancelled", "Invoice is already cancelled")
        if money(cur["paid_amount"]) != 0:
            raise LedgerConflict(
                "invoice_has_payments",
                "Invoice has payments against it. Reverse them first.",
            )
        return {
            "status":        InvoiceStatus.cancelled.value,
            "cancel_reason": reason,
            "cancelled_at":  _now_iso(),
            "cancelled_by":  str(user.user_id),
        }

    _, updated = _write_invoice(db, invoice_id, mutate)

    await log_action(
        school_id=school_id, action=AuditAction.invoice_cancelled,
        entity=EntityRef.invoice(invoice_id), user=user, meta=meta,
        details={"invoice_number": updated["invoice_number"], "reason": reason,
                 "total_amount": updated["total_amount"]},
    )
    await refresh_after_write(school_id, updated["student_id"], updated["session_id"])
    return updated


async def delete_invoice(
    user: CurrentUser,
    invoice_id: str,
    meta: Optional[RequestMeta] = None,
) -> None:
    school_id = str(user.school_id)
    db = SchoolDB(school_id)

    for _ in range(settings.LEDGER_WRITE_ATTEMPTS):
        invoice = db.require_one("invoices", invoice_id, "invoice_not_found", "Invoice")
        _ensure_unpaid(db, invoice)
        if db.delete_if("invoices", invoice_id, version=invoice.get("version") or 0):
            break
    else:
        raise LedgerConflict(
            "concurrent_modification",
            "The invoice is being updated by someone else. Please retry.",
        )

    logger.info(f"Invoice {invoice['invoice_number']} deleted")
    await log_action(
        school_id=school_id, action=AuditAction.invoice_cancelled,
        entity=EntityRef.invoice(invoice_id), user=user, meta=meta,
        details={"invoice_number": invoice["invoice_number"], "deleted": True,
                 "student_id": invoice["student_id"], "total_amount": invoice["total_amount"]},
    )
    await refresh_after_write(school_id, invoice["student_id"], invoice["session_id"])


# ── Reads ────────────────────────────────────────────────────

async def get_invoice(school_id: str, invoice_id: str) -> dict:
    db = SchoolDB(school_id)
    return present_invoice(db.require_one("invoices", invoice_id, "invoice_not_found", "Invoice"))


async def list_invoices(
    school_id: str,
    student_id: Optional[str] = None,
    status_filter: Optional[str] = None,
    session_id: Optional[str] = None,
    class_id: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> list[dict]:
    """Newest first, capped at 100 after filtering."""
    db = SchoolDB(school_id)
    query = db.select("invoices")
    if student_id:
        query = query.eq("student_id", student_id)
    if session_id:
        query = query.eq("session_id", session_id)
    if class_id:
        query = query.eq("class_id", class_id)
    if start_date:
        query = query.gte("issued_date", start_date.isoformat())
    if end_date:
        query = query.lte("issued_date", (end_date + timedelta(days=1)).isoformat())
    if status_filter == InvoiceStatus.overdue.value:
        # Mirrors effective_status.
        query = (
            query.in_("status", [InvoiceStatus.pending.value, InvoiceStatus.partial.value])
            .gt("balance_amount", 0)
            .lt("due_date", today().isoformat())
        )
    elif status_filter:
        query = query.eq("status", status_filter)

    rows = db.fetch(query.order("issued_date", desc=True).limit(100), "invoices")
    invoices = [present_invoice(r) for r in rows]
    if status_filter:
        invoices = [i for i in invoices if i["status"] == status_filter]
    return invoices


# ── Carry forward ────────────────────────────────────────────

async def carry_forward_balance(
    user: CurrentUser,
    data: CarryForwardRequest,
    meta: Optional[RequestMeta] = None,
) -> Optional[dict]:
    """
    Bill last session's outstanding balance into the new session as a
    one-time "Arrears" invoice. Returns None when nothing is owed.
    """
    school_id = str(user.school_id)
    db = SchoolDB(school_id)
    student = load_student(db, str(data.student_id))

    already = db.fetch(
        db.select("invoices", "id")
        .eq("student_id", student["id"])
        .eq("session_id", str(data.to_session_id))
        .eq("carried_from_session_id", str(data.from_session_id))
        .neq("status", InvoiceStatus.cancelled.value),
        "invoices",
    )
    if already:
        raise LedgerConflict(
            "balance_already_carried_forward",
            "This session's balance was already carried forward for this student.",
        )

    balance = await update_balance(school_id, student["id"], str(data.from_session_id))
    outstanding = money(balance.get("total_balance"))
    if outstanding <= 0:
        return None

    items = [{
        "fee_head_name": "Arrears (previous session)",
        "amount":        float(outstanding),
        "frequency":     ItemFrequency.one_time.value,
    }]
    invoice = await _create_invoice(
        db, user, student, str(data.to_session_id), items, data.due_date,
        remarks=f"Balance carried forward from session {data.from_session_id}",
        carried_from_session_id=str(data.from_session_id),
    )
    await log_action(
        school_id=school_id, action=AuditAction.balance_carry_forward,
        entity=EntityRef.student_balance(balance.get("id")), user=user, meta=meta,
        details={"student_id": student["id"], "from_session_id": str(data.from_session_id),
                 "to_session_id": str(data.to_session_id), "amount": outstanding,
                 "invoice_id": invoice["id"], "invoice_number": invoice["invoice_number"]},
    )
    return invoice
