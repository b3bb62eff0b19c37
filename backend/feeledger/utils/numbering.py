# feeledger/utils/numbering.py
# Human-readable ledger numbers: INV-2026-00042, RCP-2026-00007
#
# Sequences are per tenant per year and live in Postgres
# (ledger_counters + next_ledger_sequence()). The function does
# INSERT .. ON CONFLICT DO UPDATE SET value = value + 1 RETURNING
# value, so concurrent callers can never read the same number.
# There is no fallback: an invoice or payment is never written
# without a real number.

from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from feeledger.core.config import settings
from feeledger.core.database import SchoolDB
from feeledger.core.errors import UpstreamError


def next_sequence(db: SchoolDB, scope_key: str) -> int:
    """Atomic increment-and-read of the counter named `scope_key`."""
    try:
        value = db.rpc("next_ledger_sequence", {"p_scope_key": scope_key})
    except UpstreamError as e:
        raise UpstreamError(
            "sequence_unavailable",
            "Could not allocate a ledger number. Nothing was saved.",
        ) from e
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, dict):
        value = next(iter(value.values()), None)
    if value is None:
        raise UpstreamError(
            "sequence_unavailable",
            "Could not allocate a ledger number. Nothing was saved.",
        )
    return int(value)


def current_year() -> int:
    """Numbering year in the school's timezone, same clock as invoice dates."""
    return datetime.now(ZoneInfo(settings.TIMEZONE)).year


def format_number(prefix: str, year: int, sequence: int) -> str:
    return f"{prefix}-{year}-{str(sequence).zfill(settings.SEQUENCE_PAD_WIDTH)}"


def generate_invoice_number(db: SchoolDB, year: Optional[int] = None) -> str:
    year = year or current_year()
    seq = next_sequence(db, f"invoice_{db.school_id}_{year}")
    return format_number(settings.INVOICE_NUMBER_PREFIX, year, seq)


def generate_receipt_number(db: SchoolDB, year: Optional[int] = None) -> str:
    year = year or current_year()
    seq = next_sequence(db, f"receipt_{db.school_id}_{year}")
    return format_number(settings.RECEIPT_NUMBER_PREFIX, year, seq)
