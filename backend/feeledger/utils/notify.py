# feeledger/utils/notify.py
#
# The ledger does NOT send SMS / WhatsApp / email itself.
# It posts a small event to n8n, which looks up contact details
# and handles delivery. The ledger write is authoritative; a failed
# notification is logged and forgotten.

import httpx
import logging
from typing import Optional

from feeledger.core.config import settings

logger = logging.getLogger(__name__)


def _webhook_url(hook: str) -> str:
    return f"{settings.N8N_WEBHOOK_BASE_URL.rstrip('/')}/{hook.lstrip('/')}"


async def _post(hook: str, payload: dict, ref: str) -> bool:
    if not settings.NOTIFICATIONS_ENABLED:
        logger.debug(f"Notifications disabled, not posting {hook} for {ref}")
        return False
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.post(_webhook_url(hook), json=payload)
            if response.status_code not in (200, 201, 202):
                logger.warning(f"n8n webhook {hook} returned {response.status_code} for {ref}")
                return False
            return True
    except Exception as e:
        logger.error(f"Failed to notify n8n ({hook}) for {ref}: {e}")
        return False


async def notify_payment(
    payment: dict,
    invoice: dict,
    outstanding: Optional[float] = None,
) -> bool:
    """Payment collected. n8n sends the receipt message to the parent."""
    return await _post(settings.N8N_PAYMENT_SUCCESS_WEBHOOK, {
        "payment_id":     payment["id"],
        "school_id":      payment["school_id"],
        "student_id":     payment["student_id"],
        "invoice_number": invoice.get("invoice_number"),
        "receipt_number": payment["receipt_number"],
        "amount":         payment["amount"],
        "payment_method": payment["payment_method"],
        "outstanding":    invoice.get("balance_amount") if outstanding is None else outstanding,
    }, ref=f"payment {payment['id']}")


async def notify_reversal(original: dict, reversal: dict, invoice: dict) -> bool:
    return await _post(settings.N8N_PAYMENT_REVERSED_WEBHOOK, {
        "payment_id":       original["id"],
        "reversal_id":      reversal["id"],
        "school_id":        original["school_id"],
        "student_id":       original["student_id"],
        "receipt_number":   original["receipt_number"],
        "reversal_receipt": reversal["receipt_number"],
        "amount":           original["amount"],
        "reason":           original.get("reversal_reason"),
        "outstanding":      invoice.get("balance_amount"),
    }, ref=f"reversal of {original['id']}")
