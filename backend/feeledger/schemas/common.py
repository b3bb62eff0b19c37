# ============================================================
# feeledger/schemas/common.py
#
# Pydantic schemas define what data looks like going IN
# (request body) and coming OUT (response body). They are the
# API contract, not the database tables.
#
# Naming convention:
#   SomethingCreate   → body for POST requests (creating)
#   SomethingUpdate   → body for PATCH requests (editing)
#   SomethingResponse → what the API returns
#
# Wire format is camelCase (invoiceNumber, balanceAmount, ...)
# so existing consumers keep working. Python code and database
# rows stay snake_case; LedgerModel maps between the two.
# ============================================================

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from typing import Optional, Generic, TypeVar

T = TypeVar("T")


class LedgerModel(BaseModel):
    """Base for every ledger schema: camelCase out, either case in."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


# ── Standard API response wrapper ────────────────────────────
class APIResponse(BaseModel, Generic[T]):
    """
    Every endpoint returns this shape:
    {
        "success": true,
        "message": "Invoice generated",
        "data": { ... }
    }
    """
    success: bool = True
    message: str = "OK"
    data: Optional[T] = None


class ErrorResponse(BaseModel):
    """Returned when a ledger operation is rejected."""
    success: bool = False
    code: str
    message: str
    field: Optional[str] = None
