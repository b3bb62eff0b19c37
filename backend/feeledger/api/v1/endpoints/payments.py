# feeledger/api/v1/endpoints/payments.py
#
# Payment ledger → school admin and bursar collect, only the admin
# reverses. There is no delete route: a confirmed payment is undone
# by POST /payments/{id}/reverse, which leaves both records in place.

from typing import Optional, List
from fastapi import APIRouter, Depends, Query

from feeledger.core.security import CurrentUser, RequestMeta, get_request_meta, require_roles
from feeledger.schemas.common import APIResponse
from feeledger.schemas.payments import (
    CollectPaymentRequest, PaymentResponse, PaymentResult, PaymentUpdate,
    ReceiptBundle, ReversalResult, ReversePaymentRequest,
)
from feeledger.services import payment_service

router = APIRouter(prefix="/payments", tags=["Payments"])

ADMIN = require_roles("school_admin")
STAFF = require_roles("school_admin", "bursar")


@router.post("/collect", response_model=APIResponse[PaymentResult], status_code=201)
async def collect_payment(
    body: CollectPaymentRequest,
    user: CurrentUser = Depends(STAFF),
    meta: RequestMeta = Depends(get_request_meta),
):
    """
    Records cash / transfer / cheque / UPI / card collections.
    Rejected with 409 payment_exceeds_balance when the amount is more
    than what is still owed on the invoice.
    """
    result = await payment_service.collect_payment(user, body, meta)
    return APIResponse(
        data=result,
        message=f"Payment recorded. Receipt: {result['payment']['receipt_number']}",
    )


@router.post("/{payment_id}/confirm", response_model=APIResponse[PaymentResponse])
async def confirm_payment(
    payment_id: str,
    user: CurrentUser = Depends(STAFF),
    meta: RequestMeta = Depends(get_request_meta),
):
    payment = await payment_service.confirm_payment(user, payment_id, meta)
    return APIResponse(data=payment, message="Payment confirmed")


@router.post("/{payment_id}/reverse", response_model=APIResponse[ReversalResult])
async def reverse_payment(
    payment_id: str,
    body: ReversePaymentRequest,
    user: CurrentUser = Depends(ADMIN),
    meta: RequestMeta = Depends(get_request_meta),
):
    result = await payment_service.reverse_payment(user, payment_id, body.reason, meta)
    return APIResponse(
        data=result,
        message=f"Payment reversed. Reversal receipt: {result['reversal']['receipt_number']}",
    )


@router.patch("/{payment_id}", response_model=APIResponse[PaymentResponse])
async def update_payment(
    payment_id: str,
    body: PaymentUpdate,
    user: CurrentUser = Depends(STAFF),
    meta: RequestMeta = Depends(get_request_meta),
):
    payment = await payment_service.update_payment(user, payment_id, body, meta)
    return APIResponse(data=payment, message="Payment updated")


@router.get("/student/{student_id}", response_model=APIResponse[List[PaymentResponse]])
async def list_student_payments(
    student_id: str,
    user: CurrentUser = Depends(STAFF),
    session_id: Optional[str] = Query(default=None, alias="sessionId"),
):
    payments = await payment_service.list_student_payments(str(user.school_id), student_id, session_id)
    return APIResponse(data=payments)


@router.get("/{payment_id}", response_model=APIResponse[PaymentResponse])
async def get_payment(payment_id: str, user: CurrentUser = Depends(STAFF)):
    return APIResponse(data=await payment_service.get_payment(str(user.school_id), payment_id))


@router.get("/{payment_id}/receipt", response_model=APIResponse[ReceiptBundle])
async def get_receipt(payment_id: str, user: CurrentUser = Depends(STAFF)):
    """Receipt data only. PDF / message rendering is done by the consumer."""
    return APIResponse(data=await payment_service.build_receipt(str(user.school_id), payment_id))
