# feeledger/services/balance_service.py
#
# StudentBalance is a cache. It is always rebuilt from the
# invoices, never nudged by +amount / -amount.

from typing import Optional
from decimal import Decimal
from datetime import datetime, timezone
import logging

from feeledger.core.config import settings
from feeledger.core.database import SchoolDB
from feeledger.core.security import CurrentUser, RequestMeta
from feeledger.schemas.audit import AuditAction, EntityRef
from feeledger.schemas.fees import InvoiceStatus
from feeledger.services.audit_service import log_action

logger = logging.getLogger(__name__)


def _money(value) -> Decimal:
    return Decimal(str(value or 0))


async def update_balance(school_id: str, student_id: str, session_id: str) -> dict:
    """
    Full recompute of one student's balance for one session, upserted
    into student_balances. Cancelled invoices do not count.
    Running it twice with nothing in between gives the same row.
    """
    db = SchoolDB(school_id)
    invoices = db.fetch(
        db.select("invoices", "id, total_amount, paid_amount, balance_amount, status")
        .eq("student_id", str(student_id))
        .eq("session_id", str(session_id))
        .neq("status", InvoiceStatus.cancelled.value),
        "invoices",
    )

    total_invoiced = sum((_money(i["total_amount"]) for i in invoices), Decimal("0"))
    total_paid     = sum((_money(i["paid_amount"]) for i in invoices), Decimal("0"))
    total_balance  = sum((_money(i["balance_amount"]) for i in invoices), Decimal("0"))

    last_payment = None
    invoice_ids = [i["id"] for i in invoices]
    if invoice_ids:
        rows = db.fetch(
            db.select("payments", "amount, payment_date")
            .in_("invoice_id", invoice_ids)
            .eq("is_reversed", False)
            .gt("amount", 0)
            .order("payment_date", desc=True)
            .limit(1),
            "payments",
        )
        last_payment = rows[0] if rows else None

    return db.upsert("student_balances", {
        "student_id":          str(student_id),
        "session_id":          str(session_id),
        "total_invoiced":      float(total_invoiced),
        "total_paid":          float(total_paid),
        "total_balance":       float(total_balance),
        "last_payment_date":   last_payment["payment_date"] if last_payment else None,
        "last_payment_amount": float(_money(last_payment["amount"])) if last_payment else None,
        "updated_at":          datetime.now(timezone.utc).isoformat(),
    }, on_conflict="school_id,student_id,session_id")


async def refresh_after_write(school_id: str, student_id: str, session_id: str) -> Optional[dict]:
    """
    Called after a committed invoice/payment write. A failure here is
    logged, not raised: the money write already happened and the next
    write (or POST /balances/.../recompute) rebuilds the cache anyway.
    """
    try:
        return await update_balance(school_id, student_id, session_id)
    except Exception as e:
        logger.error(
            f"Balance recompute failed for student {student_id}, "
            f"session {session_id}: {e}"
        )
        return None


async def recompute_balance(
    user: CurrentUser,
    student_id: str,
    session_id: str,
    meta: Optional[RequestMeta] = None,
) -> dict:
    """Explicit, audited recompute (admin "refresh balance" button)."""
    school_id = str(user.school_id)
    balance = await update_balance(school_id, student_id, session_id)
    await log_action(
        school_id=school_id, action=AuditAction.balance_updated,
        entity=EntityRef.student_balance(balance.get("id")),
        user=user, meta=meta,
        details={"student_id": student_id, "session_id": session_id,
                 "total_balance": balance.get("total_balance")},
    )
    return balance


async def get_balance(school_id: str, student_id: str, session_id: str) -> dict:
    db = SchoolDB(school_id)
    rows = db.fetch(
        db.select("student_balances")
        .eq("student_id", str(student_id))
        .eq("session_id", str(session_id))
        .limit(1),
        "student_balances",
    )
    if rows:
        return rows[0]
    # Never computed yet, so build it now.
    return await update_balance(school_id, student_id, session_id)


async def get_defaulters(
    school_id: str,
    session_id: str,
    min_balance: Optional[Decimal] = None,
    limit: Optional[int] = None,
) -> list[dict]:
    """Students owing money this session, largest balance first."""
    db = SchoolDB(school_id)
    query = db.select("student_balances").eq("session_id", str(session_id))
    if min_balance:
        query = query.gte("total_balance", float(min_balance))
    else:
        query = query.gt("total_balance", 0)
    return db.fetch(
        query.order("total_balance", desc=True)
        .limit(min(limit or settings.DEFAULTERS_LIMIT, settings.DEFAULTERS_LIMIT)),
        "student_balances",
    )
