# feeledger/api/v1/endpoints/fee_structures.py
#
# Fee structure catalog → school admin only for writes.
# Bursars can read structures (they pick one when billing).

from typing import Optional, List
from fastapi import APIRouter, Depends, Query

from feeledger.core.security import CurrentUser, RequestMeta, get_request_meta, require_roles
from feeledger.schemas.common import APIResponse
from feeledger.schemas.fees import FeeStructureCreate, FeeStructureResponse, FeeStructureUpdate
from feeledger.services import fee_structure_service

router = APIRouter(prefix="/fee-structures", tags=["Fee Structures"])

ADMIN  = require_roles("school_admin")
STAFF  = require_roles("school_admin", "bursar")


@router.post("", response_model=APIResponse[FeeStructureResponse], status_code=201)
async def create_fee_structure(
    body: FeeStructureCreate,
    user: CurrentUser = Depends(ADMIN),
    meta: RequestMeta = Depends(get_request_meta),
):
    structure = await fee_structure_service.create_fee_structure(user, body, meta)
    return APIResponse(
        data=structure,
        message=f"Fee structure created. Total: {structure['total_amount']:,.2f}",
    )


@router.get("", response_model=APIResponse[List[FeeStructureResponse]])
async def list_fee_structures(
    user: CurrentUser = Depends(STAFF),
    class_id: Optional[str] = Query(default=None, alias="classId"),
    session_id: Optional[str] = Query(default=None, alias="sessionId"),
    active_only: bool = Query(default=True, alias="activeOnly"),
):
    structures = await fee_structure_service.list_fee_structures(
        str(user.school_id), class_id=class_id, session_id=session_id, active_only=active_only,
    )
    return APIResponse(data=structures)


@router.get("/{structure_id}", response_model=APIResponse[FeeStructureResponse])
async def get_fee_structure(structure_id: str, user: CurrentUser = Depends(STAFF)):
    return APIResponse(data=await fee_structure_service.get_fee_structure(str(user.school_id), structure_id))


@router.patch("/{structure_id}", response_model=APIResponse[FeeStructureResponse])
async def update_fee_structure(
    structure_id: str,
    body: FeeStructureUpdate,
    user: CurrentUser = Depends(ADMIN),
    meta: RequestMeta = Depends(get_request_meta),
):
    """Existing invoices keep their own snapshot; only future billing sees the change."""
    structure = await fee_structure_service.update_fee_structure(user, structure_id, body, meta)
    return APIResponse(data=structure, message="Fee structure updated")


@router.post("/{structure_id}/deactivate", response_model=APIResponse[FeeStructureResponse])
async def deactivate_fee_structure(
    structure_id: str,
    user: CurrentUser = Depends(ADMIN),
    meta: RequestMeta = Depends(get_request_meta),
):
    structure = await fee_structure_service.deactivate_fee_structure(user, structure_id, meta)
    return APIResponse(data=structure, message="Fee structure deactivated")


@router.delete("/{structure_id}", response_model=APIResponse[dict])
async def delete_fee_structure(
    structure_id: str,
    user: CurrentUser = Depends(ADMIN),
    meta: RequestMeta = Depends(get_request_meta),
):
    await fee_structure_service.delete_fee_structure(user, structure_id, meta)
    return APIResponse(message="Fee structure deleted")
