# ============================================================
# feeledger/core/errors.py
#
# Every rejected ledger operation raises one of these.
# They ARE HTTPExceptions, so a service can raise them and the
# endpoint does not need to translate anything. The `code` is
# stable and machine-readable; the UI switches on it to tell
# "payment exceeds balance" apart from "invoice not found".
#
#   NotFoundError     404  record missing or outside the tenant
#   ValidationFailed  422  malformed input
#   LedgerConflict    409  would break a ledger invariant
#   UpstreamError     503  storage / counter store unavailable
#   TenantScopeError  403  no tenant scope on the call
# ============================================================

from typing import Any, Optional

from fastapi import HTTPException, status


class LedgerError(HTTPException):
    status_code_default = status.HTTP_400_BAD_REQUEST

    def __init__(self, code: str, message: str, field: Optional[str] = None, **extra: Any):
        self.code = code
        self.message = message
        self.field = field
        self.extra = extra
        super().__init__(status_code=self.status_code_default, detail=message)

    def to_dict(self) -> dict:
        body = {"success": False, "code": self.code, "message": self.message}
        if self.field:
            body["field"] = self.field
        if self.extra:
            body["detail"] = self.extra
        return body

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class NotFoundError(LedgerError):
    status_code_default = status.HTTP_404_NOT_FOUND


class ValidationFailed(LedgerError):
    status_code_default = status.HTTP_422_UNPROCESSABLE_ENTITY


class LedgerConflict(LedgerError):
    status_code_default = status.HTTP_409_CONFLICT


class UpstreamError(LedgerError):
    status_code_default = status.HTTP_503_SERVICE_UNAVAILABLE


class TenantScopeError(LedgerError):
    status_code_default = status.HTTP_403_FORBIDDEN
