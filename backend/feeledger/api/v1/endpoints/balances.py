# feeledger/api/v1/endpoints/balances.py

from decimal import Decimal
from typing import Optional, List
from fastapi import APIRouter, Depends, Query

from feeledger.core.security import CurrentUser, RequestMeta, get_request_meta, require_roles
from feeledger.schemas.balances import CarryForwardRequest, StudentBalanceResponse
from feeledger.schemas.common import APIResponse
from feeledger.schemas.fees import InvoiceResponse
from feeledger.services import balance_service, invoice_service

router = APIRouter(prefix="/balances", tags=["Balances"])

ADMIN = require_roles("school_admin")
STAFF = require_roles("school_admin", "bursar")


@router.get("/defaulters", response_model=APIResponse[List[StudentBalanceResponse]])
async def list_defaulters(
    session_id: str = Query(alias="sessionId"),
    min_balance: Optional[Decimal] = Query(default=None, alias="minBalance", gt=0),
    limit: Optional[int] = Query(default=None, ge=1),
    user: CurrentUser = Depends(STAFF),
):
    """Students with an outstanding balance this session, largest first."""
    rows = await balance_service.get_defaulters(str(user.school_id), session_id, min_balance, limit)
    return APIResponse(data=rows, message=f"{len(rows)} students with outstanding fees")


@router.post("/carry-forward", response_model=APIResponse[Optional[InvoiceResponse]])
async def carry_forward(
    body: CarryForwardRequest,
    user: CurrentUser = Depends(ADMIN),
    meta: RequestMeta = Depends(get_request_meta),
):
    invoice = await invoice_service.carry_forward_balance(user, body, meta)
    if invoice is None:
        return APIResponse(data=None, message="Nothing outstanding to carry forward")
    return APIResponse(data=invoice, message=f"Arrears invoice {invoice['invoice_number']} created")


@router.get("/{student_id}", response_model=APIResponse[StudentBalanceResponse])
async def get_balance(
    student_id: str,
    session_id: str = Query(alias="sessionId"),
    user: CurrentUser = Depends(STAFF),
):
    return APIResponse(data=await balance_service.get_balance(str(user.school_id), student_id, session_id))


@router.post("/{student_id}/recompute", response_model=APIResponse[StudentBalanceResponse])
async def recompute_balance(
    student_id: str,
    session_id: str = Query(alias="sessionId"),
    user: CurrentUser = Depends(ADMIN),
    meta: RequestMeta = Depends(get_request_meta),
):
    balance = await balance_service.recompute_balance(user, student_id, session_id, meta)
    return APIResponse(data=balance, message="Balance recomputed from invoices")
