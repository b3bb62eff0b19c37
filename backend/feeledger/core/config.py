# ============================================================
# feeledger/core/config.py
#
# All configuration comes from environment variables (12-factor).
# Locally they live in .env, in production they are real env vars.
#
# Usage anywhere in the app:
#   from feeledger.core.config import settings
#   print(settings.SUPABASE_URL)
# ============================================================

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List
from pathlib import Path


class Settings(BaseSettings):
    """
    All settings come from environment variables.
    Pydantic automatically reads .env file when running locally.
    """

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[3] / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",          # Ignore extra vars in .env
    )

    # ── App Identity ─────────────────────────────────────────
    APP_NAME: str = "FeeLedger"
    APP_VERSION: str = "1.0.0"

    # Ledger tables live in their own schema, not 'public'.
    DB_SCHEMA: str = "feeledger"
    ENVIRONMENT: str = "development"        # development | production
    DEBUG: bool = False
    # Keep production logs at INFO and suppress verbose HTTP wire logs by default.
    HTTP_CLIENT_DEBUG_LOGS: bool = False

    # ── API Settings ─────────────────────────────────────────
    API_PREFIX: str = "/api/v1"
    ALLOWED_ORIGINS: List[str] = [
        "http://localhost:3000",            # React dev server
        "http://localhost:5173",            # Vite dev server
    ]

    # ── Supabase ─────────────────────────────────────────────
    SUPABASE_URL: str                       # e.g. https://xyz.supabase.co
    SUPABASE_SERVICE_KEY: str               # Service key, NEVER expose to frontend

    # ── JWT Authentication ────────────────────────────────────
    # Tokens are issued by the identity service; we only verify them.
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 8

    # ── Ledger ───────────────────────────────────────────────
    INVOICE_NUMBER_PREFIX: str = "INV"
    RECEIPT_NUMBER_PREFIX: str = "RCP"
    SEQUENCE_PAD_WIDTH: int = 5             # INV-2026-00042
    # True: counter collections are confirmed immediately.
    # False: payments stay editable until someone calls /confirm.
    AUTO_CONFIRM_PAYMENTS: bool = True
    AUDIT_TRAIL_LIMIT: int = 100
    # Compare-and-set attempts on an invoice before giving up with 409.
    LEDGER_WRITE_ATTEMPTS: int = 3
    # PostgREST has no multi-statement transactions, so writes are
    # sequential with compensating cleanup. Reported by /health.
    TRANSACTION_MODE: str = "sequential"
    BULK_GENERATE_MAX_STUDENTS: int = 1000
    DEFAULTERS_LIMIT: int = 1000

    # ── n8n Automation ───────────────────────────────────────
    NOTIFICATIONS_ENABLED: bool = True
    N8N_WEBHOOK_BASE_URL: str = "http://n8n:5678/webhook"
    N8N_PAYMENT_SUCCESS_WEBHOOK: str = "payment-success"
    N8N_PAYMENT_REVERSED_WEBHOOK: str = "payment-reversed"

    # ── Timezone ─────────────────────────────────────────────
    TIMEZONE: str = "Asia/Kolkata"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"


# Single instance, import this everywhere
settings = Settings()
