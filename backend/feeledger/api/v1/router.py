# feeledger/api/v1/router.py
# Registers all endpoint routers under /api/v1

from fastapi import APIRouter
from feeledger.api.v1.endpoints import (
    fee_structures,
    invoices,
    payments,
    balances,
    audit,
)

api_router = APIRouter()

api_router.include_router(fee_structures.router)
api_router.include_router(invoices.router)
api_router.include_router(payments.router)
api_router.include_router(balances.router)
api_router.include_router(audit.router)
