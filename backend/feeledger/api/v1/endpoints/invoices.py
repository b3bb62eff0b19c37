# feeledger/api/v1/endpoints/invoices.py
#
# Invoice ledger. Generation, late fees, edits and cancellation are
# admin operations; bursars read invoices and collect against them
# (see payments.py).

from datetime import date
from typing import Optional, List
from fastapi import APIRouter, Depends, Query

from feeledger.core.security import CurrentUser, RequestMeta, get_request_meta, require_roles
from feeledger.schemas.common import APIResponse
from feeledger.schemas.fees import (
    BulkGenerateRequest, BulkGenerateResponse, CancelInvoiceRequest,
    GenerateInvoiceRequest, InvoiceResponse, InvoiceStatus, InvoiceUpdate,
    LateFeeRequest,
)
from feeledger.schemas.payments import PaymentResponse
from feeledger.services import invoice_service, payment_service

router = APIRouter(prefix="/invoices", tags=["Invoices"])

ADMIN = require_roles("school_admin")
STAFF = require_roles("school_admin", "bursar")


# ═══════════════════════════════════════════════════════════
# GENERATION
# ═══════════════════════════════════════════════════════════

@router.post("/generate", response_model=APIResponse[InvoiceResponse], status_code=201)
async def generate_invoice(
    body: GenerateInvoiceRequest,
    user: CurrentUser = Depends(ADMIN),
    meta: RequestMeta = Depends(get_request_meta),
):
    invoice = await invoice_service.generate_invoice(user, body, meta)
    return APIResponse(data=invoice, message=f"Invoice {invoice['invoice_number']} generated")


@router.post("/generate-bulk", response_model=APIResponse[BulkGenerateResponse])
async def generate_bulk(
    body: BulkGenerateRequest,
    user: CurrentUser = Depends(ADMIN),
    meta: RequestMeta = Depends(get_request_meta),
):
    """
    One invoice per student in the class (and section, if given).
    Returns 200 even when some students failed. Check `failed` and
    `errors`; the invoices that did generate are kept.
    """
    result = await invoice_service.generate_bulk(user, body, meta)
    return APIResponse(data=result, message=result.message)


# ═══════════════════════════════════════════════════════════
# READS
# ═══════════════════════════════════════════════════════════

@router.get("", response_model=APIResponse[List[InvoiceResponse]])
async def list_invoices(
    user: CurrentUser = Depends(STAFF),
    student_id: Optional[str] = Query(default=None, alias="studentId"),
    status: Optional[InvoiceStatus] = Query(default=None),
    session_id: Optional[str] = Query(default=None, alias="sessionId"),
    class_id: Optional[str] = Query(default=None, alias="classId"),
    start_date: Optional[date] = Query(default=None, alias="startDate"),
    end_date: Optional[date] = Query(default=None, alias="endDate"),
):
    invoices = await invoice_service.list_invoices(
        str(user.school_id),
        student_id=student_id,
        status_filter=status.value if status else None,
        session_id=session_id,
        class_id=class_id,
        start_date=start_date,
        end_date=end_date,
    )
    return APIResponse(data=invoices)


@router.get("/{invoice_id}", response_model=APIResponse[InvoiceResponse])
async def get_invoice(invoice_id: str, user: CurrentUser = Depends(STAFF)):
    return APIResponse(data=await invoice_service.get_invoice(str(user.school_id), invoice_id))


@router.get("/{invoice_id}/payments", response_model=APIResponse[List[PaymentResponse]])
async def list_invoice_payments(invoice_id: str, user: CurrentUser = Depends(STAFF)):
    payments = await payment_service.list_invoice_payments(str(user.school_id), invoice_id)
    return APIResponse(data=payments)


# ═══════════════════════════════════════════════════════════
# CHANGES
# ═══════════════════════════════════════════════════════════

@router.patch("/{invoice_id}", response_model=APIResponse[InvoiceResponse])
async def update_invoice(
    invoice_id: str,
    body: InvoiceUpdate,
    user: CurrentUser = Depends(ADMIN),
    meta: RequestMeta = Depends(get_request_meta),
):
    invoice = await invoice_service.update_invoice(user, invoice_id, body, meta)
    return APIResponse(data=invoice, message="Invoice updated")


@router.post("/{invoice_id}/late-fee", response_model=APIResponse[InvoiceResponse])
async def apply_late_fee(
    invoice_id: str,
    body: LateFeeRequest,
    user: CurrentUser = Depends(ADMIN),
    meta: RequestMeta = Depends(get_request_meta),
):
    invoice = await invoice_service.apply_late_fee(user, invoice_id, body.amount, meta)
    return APIResponse(data=invoice, message=f"Late fee applied. New balance: {invoice['balance_amount']:,.2f}")


@router.post("/{invoice_id}/cancel", response_model=APIResponse[InvoiceResponse])
async def cancel_invoice(
    invoice_id: str,
    body: CancelInvoiceRequest,
    user: CurrentUser = Depends(ADMIN),
    meta: RequestMeta = Depends(get_request_meta),
):
    invoice = await invoice_service.cancel_invoice(user, invoice_id, body.reason, meta)
    return APIResponse(data=invoice, message="Invoice cancelled")


@router.delete("/{invoice_id}", response_model=APIResponse[dict])
async def delete_invoice(
    invoice_id: str,
    user: CurrentUser = Depends(ADMIN),
    meta: RequestMeta = Depends(get_request_meta),
):
    await invoice_service.delete_invoice(user, invoice_id, meta)
    return APIResponse(message="Invoice deleted")
