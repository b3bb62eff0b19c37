# ============================================================
# feeledger/core/database.py
#
# get_admin_client()  (SERVICE ROLE key)
# ├── Bypasses ALL RLS policies
# ├── Use for: tenant branding lookups, health check
# └── NEVER use directly for ledger data
#
# SchoolDB  (a typed wrapper, still uses service key internally)
# ├── Wraps every query with MANDATORY school_id filtering
# ├── Raises immediately if you forget school_id
# ├── Converts storage failures into UpstreamError (503)
# └── Use for: ALL ledger reads and writes
#
# CONCURRENCY
# ───────────
# PostgREST gives us single-statement atomicity only. Two tools:
#   update_if() / delete_if()  compare-and-set on extra columns
#                              (we use invoices.version and
#                              payments.is_reversed / is_confirmed)
#   rpc("next_ledger_sequence") atomic increment-and-read in Postgres
# See migrations/001_fee_ledger.sql.
# ============================================================

from functools import lru_cache
from typing import Any, Optional
import logging

from supabase import create_client, Client
from supabase.lib.client_options import SyncClientOptions

from feeledger.core.config import settings
from feeledger.core.errors import NotFoundError, TenantScopeError, UpstreamError

logger = logging.getLogger(__name__)


# ── Raw client ────────────────────────────────────────────────
@lru_cache(maxsize=1)
def get_admin_client() -> Client:
    options = SyncClientOptions(schema=settings.DB_SCHEMA)
    return create_client(
        settings.SUPABASE_URL,
        settings.SUPABASE_SERVICE_KEY,
        options=options,
    )


# ── School-scoped DB wrapper ──────────────────────────────────
class SchoolDB:
    """
    Safety wrapper around Supabase queries for school-level data.
    Every method requires school_id, so it cannot query across schools.
    """

    def __init__(self, school_id: Optional[str], client: Optional[Client] = None):
        if not school_id or school_id == "None":
            raise TenantScopeError(
                "tenant_scope_missing",
                "Ledger operations require a school (tenant) scope",
            )
        self.school_id = str(school_id)
        self._client: Client = client or get_admin_client()

    # ── Execution ─────────────────────────────────────────────
    def _run(self, query, table: str):
        try:
            return query.execute()
        except Exception as e:
            logger.error(f"Storage call on {table} failed: {e}")
            raise UpstreamError(
                "storage_unavailable",
                "The ledger store is unavailable. Please try again.",
            ) from e

    def fetch(self, query, table: str = "?") -> list[dict]:
        result = self._run(query, table)
        return result.data or []

    # ── Reads ─────────────────────────────────────────────────
    def select(self, table: str, columns: str = "*"):
        return (
            self._client
            .table(table)
            .select(columns)
            .eq("school_id", self.school_id)
        )

    def select_one(self, table: str, record_id: str, columns: str = "*") -> Optional[dict]:
        rows = self.fetch(
            self.select(table, columns).eq("id", str(record_id)).limit(1),
            table,
        )
        return rows[0] if rows else None

    def require_one(self, table: str, record_id: str, code: str, label: str) -> dict:
        data = self.select_one(table, record_id)
        if not data:
            raise NotFoundError(code, f"{label} not found")
        return data

    def count(self, table: str, **filters) -> int:
        query = self._client.table(table).select("id", count="exact").eq("school_id", self.school_id)
        for col, val in filters.items():
            query = query.eq(col, val)
        result = self._run(query, table)
        return result.count if result.count is not None else len(result.data or [])

    # ── Writes ────────────────────────────────────────────────
    def insert(self, table: str, payload: dict) -> dict:
        payload["school_id"] = self.school_id
        result = self._run(self._client.table(table).insert(payload), table)
        return result.data[0] if result.data else {}

    def update(self, table: str, payload: dict, record_id: str) -> dict:
        payload.pop("school_id", None)
        query = (
            self._client
            .table(table)
            .update(payload)
            .eq("id", str(record_id))
            .eq("school_id", self.school_id)
        )
        result = self._run(query, table)
        if not result.data:
            raise NotFoundError(f"{table}_not_found", f"Record not found or access denied in {table}")
        return result.data[0]

    def update_if(self, table: str, payload: dict, record_id: str, **expected) -> Optional[dict]:
        """
        Compare-and-set. Applies `payload` only if every column in
        `expected` still holds the given value. Returns the updated
        row, or None when another writer got there first.
        """
        payload.pop("school_id", None)
        query = (
            self._client
            .table(table)
            .update(payload)
            .eq("id", str(record_id))
            .eq("school_id", self.school_id)
        )
        for col, val in expected.items():
            query = query.eq(col, val)
        result = self._run(query, table)
        return result.data[0] if result.data else None

    def upsert(self, table: str, payload: dict, on_conflict: str) -> dict:
        payload["school_id"] = self.school_id
        result = self._run(
            self._client.table(table).upsert(payload, on_conflict=on_conflict),
            table,
        )
        return result.data[0] if result.data else {}

    def delete_if(self, table: str, record_id: str, **expected) -> bool:
        query = (
            self._client
            .table(table)
            .delete()
            .eq("id", str(record_id))
            .eq("school_id", self.school_id)
        )
        for col, val in expected.items():
            query = query.eq(col, val)
        result = self._run(query, table)
        return bool(result.data)

    def rpc(self, fn: str, params: dict) -> Any:
        result = self._run(self._client.rpc(fn, params), fn)
        return result.data

    def raw(self) -> Client:
        return self._client


# ── Health check ─────────────────────────────────────────────
async def check_db_connection() -> bool:
    try:
        get_admin_client().table("ledger_counters").select("scope_key").limit(1).execute()
        return True
    except Exception as e:
        logger.error(f"DB health check failed: {e}")
        return False
