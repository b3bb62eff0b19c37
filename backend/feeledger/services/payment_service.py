# feeledger/services/payment_service.py
#
# Payments are append-only money records. Once confirmed, a payment
# is never edited or deleted: mistakes are undone by reversal, which
# writes a second, negative payment and flips is_reversed on the
# original. Sum of a student's payments therefore always equals the
# paid_amount on their invoices.
#
# Write order for a collection (no multi-table transaction here):
#   1. draw receipt number     (a failure leaves only a sequence gap)
#   2. invoice compare-and-set (re-validates the balance)
#   3. insert payment          (on failure, step 2 is compensated)
#   4. audit, balance refresh, n8n notification (never raise)

from typing import Optional
from decimal import Decimal
from datetime import datetime, timezone
import logging

from feeledger.core.config import settings
from feeledger.core.database import SchoolDB
from feeledger.core.errors import LedgerConflict, ValidationFailed
from feeledger.core.security import CurrentUser, RequestMeta
from feeledger.schemas.audit import AuditAction, EntityRef
from feeledger.schemas.fees import InvoiceStatus
from feeledger.schemas.payments import CollectPaymentRequest, PaymentUpdate
from feeledger.services.audit_service import log_action
from feeledger.services.balance_service import refresh_after_write
from feeledger.services.invoice_service import money, present_invoice, record_payment
from feeledger.utils.notify import notify_payment, notify_reversal
from feeledger.utils.numbering import generate_receipt_number

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _undo_invoice_write(
    db: SchoolDB,
    user: CurrentUser,
    invoice_id: str,
    amount: Decimal,
    receipt_number: str,
    why: str,
    meta: Optional[RequestMeta] = None,
) -> None:
    """Give back `amount` to the invoice after a later step failed, and say so in the trail."""
    details = {"compensated": True, "reason": why,
               "receipt_number": receipt_number, "amount": -amount}
    try:
        record_payment(db, invoice_id, -amount)
        logger.warning(f"Invoice {invoice_id} compensated by {-amount} after {why}")
    except Exception as e:
        # The ledger is now inconsistent until someone fixes it by hand.
        logger.critical(
            f"LEDGER INCONSISTENT: invoice {invoice_id} could not be compensated "
            f"by {-amount} after {why}: {e}"
        )
        details.update(compensated=False, error=str(e))

    await log_action(
        school_id=db.school_id, action=AuditAction.invoice_updated,
        entity=EntityRef.invoice(invoice_id), user=user, meta=meta, details=details,
    )


# ── Collect ──────────────────────────────────────────────────

async def collect_payment(
    user: CurrentUser,
    data: CollectPaymentRequest,
    meta: Optional[RequestMeta] = None,
) -> dict:
    school_id = str(user.school_id)
    db = SchoolDB(school_id)
    invoice_id = str(data.invoice_id)
    amount = money(data.amount)

    if amount <= 0:
        raise ValidationFailed("invalid_amount", "Payment amount must be greater than zero", field="amount")

    invoice = db.require_one("invoices", invoice_id, "invoice_not_found", "Invoice")
    if invoice["status"] == InvoiceStatus.cancelled.value:
        raise LedgerConflict("invoice_cancelled", "Cannot collect payment for a cancelled invoice")
    if amount > money(invoice["balance_amount"]):
        raise LedgerConflict(
            "payment_exceeds_balance",
            f"Payment of {amount} exceeds the outstanding balance of {money(invoice['balance_amount'])}.",
            field="amount", balance=float(money(invoice["balance_amount"])),
        )

    receipt_number = generate_receipt_number(db)
    before, updated = record_payment(db, invoice_id, amount)

    confirmed = settings.AUTO_CONFIRM_PAYMENTS if data.confirm is None else data.confirm
    now = _now_iso()
    try:
        payment = db.insert("payments", {
            "receipt_number":      receipt_number,
            "invoice_id":          invoice_id,
            "student_id":          updated["student_id"],
            "amount":              float(amount),
            "payment_method":      data.payment_method.value,
            "payment_date":        data.payment_date.isoformat() if data.payment_date else now,
            "transaction_details": (
                data.transaction_details.model_dump(mode="json", exclude_none=True)
                if data.transaction_details else None
            ),
            "remarks":             data.remarks,
            "is_confirmed":        confirmed,
            "confirmed_at":        now if confirmed else None,
            "confirmed_by":        str(user.user_id) if confirmed else None,
            "is_reversed":         False,
            "collected_by":        str(user.user_id),
        })
    except Exception:
        await _undo_invoice_write(
            db, user, invoice_id, amount, receipt_number,
            f"failed insert of receipt {receipt_number}", meta,
        )
        raise

    logger.info(
        f"Payment {receipt_number} of {amount} collected on invoice "
        f"{updated['invoice_number']} (balance now {updated['balance_amount']})"
    )

    await log_action(
        school_id=school_id, action=AuditAction.payment_collected,
        entity=EntityRef.payment(payment["id"]), user=user, meta=meta,
        details={"receipt_number": receipt_number, "amount": amount,
                 "invoice_id": invoice_id, "invoice_number": updated["invoice_number"],
                 "payment_method": payment["payment_method"],
                 "previous_balance": before["balance_amount"],
                 "new_balance": updated["balance_amount"],
                 "is_confirmed": confirmed},
    )
    await refresh_after_write(school_id, updated["student_id"], updated["session_id"])
    await notify_payment(payment, updated)

    return {"payment": payment, "invoice": present_invoice(updated)}


# ── Confirm ──────────────────────────────────────────────────

async def confirm_payment(
    user: CurrentUser,
    payment_id: str,
    meta: Optional[RequestMeta] = None,
) -> dict:
    school_id = str(user.school_id)
    db = SchoolDB(school_id)

    confirmed = db.update_if("payments", {
        "is_confirmed": True,
        "confirmed_at": _now_iso(),
        "confirmed_by": str(user.user_id),
    }, payment_id, is_confirmed=False)

    if not confirmed:
        db.require_one("payments", payment_id, "payment_not_found", "Payment")
        raise LedgerConflict("payment_already_confirmed", "Payment is already confirmed")

    await log_action(
        school_id=school_id, action=AuditAction.payment_confirmed,
        entity=EntityRef.payment(payment_id), user=user, meta=meta,
        details={"receipt_number": confirmed["receipt_number"], "amount": confirmed["amount"]},
    )
    return confirmed


# ── Reverse ──────────────────────────────────────────────────

async def _release_claim(
    db: SchoolDB,
    user: CurrentUser,
    payment_id: str,
    why: str,
    meta: Optional[RequestMeta] = None,
) -> None:
    details = {"compensated": True, "reason": why, "reversal_claim_released": True}
    try:
        db.update("payments", {
            "is_reversed": False, "reversed_at": None,
            "reversed_by": None, "reversal_reason": None,
        }, payment_id)
    except Exception as e:
        logger.critical(f"LEDGER INCONSISTENT: could not release reversal claim on payment {payment_id}: {e}")
        details.update(compensated=False, reversal_claim_released=False, error=str(e))

    await log_action(
        school_id=db.school_id, action=AuditAction.payment_updated,
        entity=EntityRef.payment(payment_id), user=user, meta=meta, details=details,
    )


async def reverse_payment(
    user: CurrentUser,
    payment_id: str,
    reason: str,
    meta: Optional[RequestMeta] = None,
) -> dict:
    """
    Undo a confirmed payment. The original is claimed first
    (is_reversed false → true as a compare-and-set) so two admins
    reversing at once cannot both succeed.
    """
    school_id = str(user.school_id)
    db = SchoolDB(school_id)

    original = db.require_one("payments", payment_id, "payment_not_found", "Payment")
    if money(original["amount"]) < 0:
        raise LedgerConflict("payment_is_reversal", "A reversal record cannot itself be reversed")
    if not original.get("is_confirmed"):
        raise LedgerConflict("payment_not_confirmed", "Only confirmed payments can be reversed")
    if original.get("is_reversed"):
        raise LedgerConflict("payment_already_reversed", "Payment is already reversed")

    now = _now_iso()
    claimed = db.update_if("payments", {
        "is_reversed":     True,
        "reversed_at":     now,
        "reversed_by":     str(user.user_id),
        "reversal_reason": reason,
    }, payment_id, is_reversed=False)
    if not claimed:
        raise LedgerConflict("payment_already_reversed", "Payment is already reversed")

    amount = money(original["amount"])
    invoice_id = original["invoice_id"]
    try:
        receipt_number = generate_receipt_number(db)
        _, invoice = record_payment(db, invoice_id, -amount)
    except Exception as e:
        await _release_claim(db, user, payment_id, f"reversal aborted before any money moved: {e}", meta)
        raise

    try:
        reversal = db.insert("payments", {
            "receipt_number":      receipt_number,
            "invoice_id":          invoice_id,
            "student_id":          original["student_id"],
            "amount":              float(-amount),
            "payment_method":      original["payment_method"],
            "payment_date":        now,
            "remarks":             f"Reversal of {original['receipt_number']}: {reason}",
            "is_confirmed":        True,
            "confirmed_at":        now,
            "confirmed_by":        str(user.user_id),
            "is_reversed":         False,
            "reverses_payment_id": original["id"],
            "collected_by":        str(user.user_id),
        })
    except Exception:
        why = f"failed reversal insert for {original['receipt_number']}"
        await _undo_invoice_write(db, user, invoice_id, -amount, receipt_number, why, meta)
        await _release_claim(db, user, payment_id, why, meta)
        raise

    # Money has moved and the negative row exists; from here the reversal stands.
    link_pending = False
    try:
        original = db.update("payments", {"reversal_payment_id": reversal["id"]}, payment_id)
    except Exception as e:
        logger.critical(
            f"Payment {original['receipt_number']} reversed by {receipt_number} "
            f"but reversal_payment_id was not written: {e}"
        )
        original = claimed
        link_pending = True
    logger.info(f"Payment {original['receipt_number']} reversed by {receipt_number}: {reason}")

    await log_action(
        school_id=school_id, action=AuditAction.payment_reversed,
        entity=EntityRef.payment(payment_id), user=user, meta=meta,
        details={"receipt_number": original["receipt_number"],
                 "reversal_receipt_number": receipt_number,
                 "reversal_payment_id": reversal["id"],
                 "amount": amount, "reason": reason,
                 "invoice_id": invoice_id, "new_balance": invoice["balance_amount"],
                 "link_pending": link_pending},
    )
    await refresh_after_write(school_id, invoice["student_id"], invoice["session_id"])
    await notify_reversal(original, reversal, invoice)

    return {"original": original, "reversal": reversal, "invoice": present_invoice(invoice)}


# ── Edit (unconfirmed only) ──────────────────────────────────

async def update_payment(
    user: CurrentUser,
    payment_id: str,
    data: PaymentUpdate,
    meta: Optional[RequestMeta] = None,
) -> dict:
    """
    Remarks, transaction details, payment date and method may be
    corrected until the payment is confirmed. The amount and the
    invoice link never change: reverse and re-collect instead.
    """
    school_id = str(user.school_id)
    db = SchoolDB(school_id)

    payment = db.require_one("payments", payment_id, "payment_not_found", "Payment")
    if payment.get("is_confirmed"):
        raise LedgerConflict("payment_immutable", "Confirmed payments cannot be edited. Reverse instead.")

    not_editable = sorted((data.model_extra or {}).keys())
    if not_editable:
        raise ValidationFailed(
            "field_not_editable",
            f"These payment fields cannot be edited: {', '.join(not_editable)}",
            field=not_editable[0],
        )
    changes = data.model_dump(mode="json", exclude_unset=True)
    if not changes:
        raise ValidationFailed("no_fields_to_update", "No fields to update")
    for required in ("payment_date", "payment_method"):
        if required in changes and changes[required] is None:
            raise ValidationFailed("field_required", f"{required} cannot be cleared", field=required)

    updated = db.update_if("payments", dict(changes), payment_id, is_confirmed=False)
    if not updated:
        raise LedgerConflict("payment_immutable", "Payment was confirmed while you were editing it.")

    await log_action(
        school_id=school_id, action=AuditAction.payment_updated,
        entity=EntityRef.payment(payment_id), user=user, meta=meta,
        details={"receipt_number": updated["receipt_number"],
                 "changed": {k: {"from": payment.get(k), "to": v} for k, v in changes.items()}},
    )
    return updated


# ── Reads ────────────────────────────────────────────────────

async def get_payment(school_id: str, payment_id: str) -> dict:
    return SchoolDB(school_id).require_one("payments", payment_id, "payment_not_found", "Payment")


async def list_invoice_payments(school_id: str, invoice_id: str) -> list[dict]:
    db = SchoolDB(school_id)
    db.require_one("invoices", invoice_id, "invoice_not_found", "Invoice")
    return db.fetch(
        db.select("payments").eq("invoice_id", invoice_id).order("created_at"),
        "payments",
    )


async def list_student_payments(
    school_id: str,
    student_id: str,
    session_id: Optional[str] = None,
) -> list[dict]:
    db = SchoolDB(school_id)
    query = db.select("payments").eq("student_id", student_id)
    if session_id:
        invoice_ids = [
            i["id"] for i in db.fetch(
                db.select("invoices", "id").eq("student_id", student_id).eq("session_id", session_id),
                "invoices",
            )
        ]
        if not invoice_ids:
            return []
        query = query.in_("invoice_id", invoice_ids)
    return db.fetch(query.order("payment_date", desc=True).limit(100), "payments")


# ── Receipt data ─────────────────────────────────────────────

async def build_receipt(school_id: str, payment_id: str) -> dict:
    """
    Everything a receipt renderer (PDF, SMS, WhatsApp) needs, in one
    read-only bundle. Rendering itself happens elsewhere.
    """
    db = SchoolDB(school_id)
    payment = db.require_one("payments", payment_id, "payment_not_found", "Payment")
    invoice = db.require_one("invoices", payment["invoice_id"], "invoice_not_found", "Invoice")
    student = db.select_one("users", payment["student_id"]) or {"id": payment["student_id"]}

    schools = db.fetch(
        db.raw().table("schools")
        .select("id, name, address, phone, email, logo_url")
        .eq("id", school_id)
        .limit(1),
        "schools",
    )
    school = schools[0] if schools else {"id": school_id}

    earlier = db.fetch(
        db.select("payments", "amount")
        .eq("invoice_id", invoice["id"])
        .lt("created_at", payment["created_at"]),
        "payments",
    )
    paid_before = sum((money(p["amount"]) for p in earlier), Decimal("0"))
    outstanding_after = max(
        Decimal("0"),
        money(invoice["total_amount"]) - paid_before - money(payment["amount"]),
    )

    return {
        "school":            school,
        "student":           student,
        "invoice":           present_invoice(invoice),
        "payment":           payment,
        "items":             invoice.get("items") or [],
        "paid_before":       paid_before,
        "outstanding_after": outstanding_after,
    }
