import threading
from datetime import datetime, timezone

import pytest

from conftest import OTHER_SCHOOL_ID, SCHOOL_ID
from feeledger.core.config import settings
from feeledger.core.database import SchoolDB
from feeledger.core.errors import TenantScopeError, UpstreamError
from feeledger.utils import numbering
from feeledger.utils.numbering import format_number, generate_invoice_number, generate_receipt_number


def test_format_pads_sequence():
    assert format_number("INV", 2026, 42) == "INV-2026-00042"
    assert format_number("RCP", 2026, 123456) == "RCP-2026-123456"


def test_sequences_are_per_tenant_and_per_kind(fake_db):
    school = SchoolDB(SCHOOL_ID)
    other = SchoolDB(OTHER_SCHOOL_ID)

    assert generate_invoice_number(school, 2026) == "INV-2026-00001"
    assert generate_invoice_number(school, 2026) == "INV-2026-00002"
    assert generate_receipt_number(school, 2026) == "RCP-2026-00001"
    assert generate_invoice_number(other, 2026) == "INV-2026-00001"
    assert generate_invoice_number(school, 2027) == "INV-2027-00001"


def test_concurrent_callers_never_share_a_number(fake_db):
    school = SchoolDB(SCHOOL_ID)
    drawn, lock = [], threading.Lock()

    def draw():
        for _ in range(25):
            number = generate_receipt_number(school, 2026)
            with lock:
                drawn.append(number)

    threads = [threading.Thread(target=draw) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(drawn) == 200
    assert len(set(drawn)) == 200
    assert max(drawn) == "RCP-2026-00200"


def test_counter_outage_surfaces_as_upstream_error(fake_db):
    fake_db.fail_on("next_ledger_sequence", "rpc")

    with pytest.raises(UpstreamError) as exc:
        generate_invoice_number(SchoolDB(SCHOOL_ID))
    assert exc.value.code == "sequence_unavailable"


@pytest.mark.parametrize("school_id", [None, "", "None"])
def test_ledger_calls_need_a_tenant(fake_db, school_id):
    with pytest.raises(TenantScopeError) as exc:
        SchoolDB(school_id)
    assert exc.value.code == "tenant_scope_missing"


class _NewYearsEveUTC(datetime):
    """20:00 UTC on 31 December 2026, already 1 January in India."""

    @classmethod
    def now(cls, tz=None):
        instant = datetime(2026, 12, 31, 20, 0, tzinfo=timezone.utc)
        return instant.astimezone(tz) if tz else instant


def test_number_year_follows_school_timezone(fake_db, monkeypatch):
    monkeypatch.setattr(numbering, "datetime", _NewYearsEveUTC)
    monkeypatch.setattr(settings, "TIMEZONE", "Asia/Kolkata")

    assert generate_invoice_number(SchoolDB(SCHOOL_ID)) == "INV-2027-00001"
    assert generate_receipt_number(SchoolDB(SCHOOL_ID)) == "RCP-2027-00001"
