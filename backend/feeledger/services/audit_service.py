# feeledger/services/audit_service.py
# Writes to fee_audit_logs. Called once after every ledger mutation.
# There is no update or delete here: the trail is append-only.

from typing import Optional, Any
from datetime import datetime, timezone
from decimal import Decimal
import logging

from feeledger.core.config import settings
from feeledger.core.database import SchoolDB
from feeledger.core.security import CurrentUser, RequestMeta
from feeledger.schemas.audit import AuditAction, EntityRef, EntityType

logger = logging.getLogger(__name__)


async def log_action(
    school_id: str,
    action: AuditAction,
    entity: EntityRef,
    user: Optional[CurrentUser] = None,
    details: Optional[dict[str, Any]] = None,
    meta: Optional[RequestMeta] = None,
) -> Optional[dict]:
    """
    Append one immutable audit entry. Never raises: the trail is
    diagnostic, the money movement it describes is already committed.
    Returns the stored row, or None if the write failed.
    """
    try:
        db = SchoolDB(school_id)
        return db.insert("fee_audit_logs", {
            "action":      action.value,
            "entity_type": entity.entity_type.value,
            "entity_id":   str(entity.entity_id) if entity.entity_id else None,
            "user_id":     str(user.user_id) if user else None,
            "user_name":   user.full_name if user else None,
            "user_role":   user.role if user else None,
            "details":     _jsonable(details or {}),
            "ip_address":  meta.ip_address if meta else None,
            "user_agent":  meta.user_agent if meta else None,
            "timestamp":   datetime.now(timezone.utc).isoformat(),
        })
    except Exception as e:
        # Log to system log but don't raise. Audit logging
        # must NEVER undo or mask a committed ledger write
        logger.error(f"Failed to write audit log [{action.value}]: {e}")
        return None


async def get_entity_audit_trail(
    school_id: str,
    entity_type: EntityType,
    entity_id: str,
) -> list[dict]:
    """Latest entries for one entity, newest first."""
    db = SchoolDB(school_id)
    return db.fetch(
        db.select("fee_audit_logs")
        .eq("entity_type", entity_type.value)
        .eq("entity_id", str(entity_id))
        .order("timestamp", desc=True)
        .limit(settings.AUDIT_TRAIL_LIMIT),
        "fee_audit_logs",
    )


async def get_user_activity(
    school_id: str,
    user_id: str,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    action: Optional[AuditAction] = None,
    limit: Optional[int] = None,
) -> list[dict]:
    """What one user did, newest first. Never more than AUDIT_TRAIL_LIMIT rows."""
    db = SchoolDB(school_id)
    query = db.select("fee_audit_logs").eq("user_id", str(user_id))
    if start_date:
        query = query.gte("timestamp", _utc(start_date).isoformat())
    if end_date:
        query = query.lte("timestamp", _utc(end_date).isoformat())
    if action:
        query = query.eq("action", action.value)

    cap = settings.AUDIT_TRAIL_LIMIT
    row_limit = min(limit, cap) if limit else cap
    return db.fetch(
        query.order("timestamp", desc=True).limit(row_limit),
        "fee_audit_logs",
    )


# ── Helpers ──────────────────────────────────────────────────

def _utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _jsonable(value: Any) -> Any:
    """details is a JSONB column: Decimals, UUIDs and dates go in as text/float."""
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return str(value)
