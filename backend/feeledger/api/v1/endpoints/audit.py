# feeledger/api/v1/endpoints/audit.py
#
# Read-only. Audit rows are written by the services as a side effect
# of each ledger change and are never edited through the API.

from datetime import datetime
from typing import Optional, List
from fastapi import APIRouter, Depends, Query

from feeledger.core.security import CurrentUser, require_roles
from feeledger.schemas.audit import AuditAction, AuditLogResponse, EntityType
from feeledger.schemas.common import APIResponse
from feeledger.services import audit_service

router = APIRouter(prefix="/audit", tags=["Audit Log"])


@router.get("/users/{user_id}", response_model=APIResponse[List[AuditLogResponse]])
async def user_activity(
    user_id: str,
    start_date: Optional[datetime] = Query(default=None, alias="startDate"),
    end_date: Optional[datetime] = Query(default=None, alias="endDate"),
    action: Optional[AuditAction] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    user: CurrentUser = Depends(require_roles("school_admin")),
):
    rows = await audit_service.get_user_activity(
        str(user.school_id), user_id,
        start_date=start_date, end_date=end_date, action=action, limit=limit,
    )
    return APIResponse(data=rows)


@router.get("/{entity_type}/{entity_id}", response_model=APIResponse[List[AuditLogResponse]])
async def entity_trail(
    entity_type: EntityType,
    entity_id: str,
    user: CurrentUser = Depends(require_roles("school_admin", "bursar")),
):
    """Newest first: who did what to this structure / invoice / payment."""
    rows = await audit_service.get_entity_audit_trail(str(user.school_id), entity_type, entity_id)
    return APIResponse(data=rows)
