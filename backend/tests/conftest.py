import asyncio
import os
import sys
import uuid
from decimal import Decimal
from datetime import date, timedelta
from pathlib import Path

import pytest


# Ensure `import feeledger...` resolves when tests run from repo root.
BACKEND_DIR = Path(__file__).resolve().parents[1]
TESTS_DIR = Path(__file__).resolve().parent
for path in (BACKEND_DIR, TESTS_DIR):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))


# Minimal defaults so settings can initialize in test environments.
os.environ.setdefault("SUPABASE_URL", "https://example.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "test.service.key")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("NOTIFICATIONS_ENABLED", "false")
os.environ.setdefault("TIMEZONE", "UTC")


from fakes import FakeSupabase  # noqa: E402
from feeledger.core import database  # noqa: E402
from feeledger.core.security import CurrentUser  # noqa: E402
from feeledger.schemas.fees import GenerateInvoiceRequest, InvoiceItem  # noqa: E402
from feeledger.schemas.payments import CollectPaymentRequest  # noqa: E402
from feeledger.services import invoice_service, payment_service  # noqa: E402


SCHOOL_ID = "22222222-2222-2222-2222-222222222222"
OTHER_SCHOOL_ID = "99999999-9999-9999-9999-999999999999"
ADMIN_ID = "11111111-1111-1111-1111-111111111111"
SESSION_ID = "33333333-3333-3333-3333-333333333333"
NEXT_SESSION_ID = "44444444-4444-4444-4444-444444444444"


@pytest.fixture
def fake_db(monkeypatch):
    """Every SchoolDB in the test talks to one in-memory store."""
    fake = FakeSupabase()
    monkeypatch.setattr(database, "get_admin_client", lambda: fake)
    return fake


@pytest.fixture
def admin():
    return CurrentUser(
        user_id=uuid.UUID(ADMIN_ID),
        school_id=uuid.UUID(SCHOOL_ID),
        role="school_admin",
        email="admin@example.com",
        full_name="Admin User",
    )


@pytest.fixture
def bursar():
    return CurrentUser(
        user_id=uuid.uuid4(),
        school_id=uuid.UUID(SCHOOL_ID),
        role="bursar",
        email="bursar@example.com",
        full_name="Bursar User",
    )


@pytest.fixture
def school_class(fake_db):
    return fake_db.seed(
        "classes", id=str(uuid.uuid4()), school_id=SCHOOL_ID, name="Grade 5", grade=5,
    )


@pytest.fixture
def make_student(fake_db, school_class):
    def _make(name="Asha Rao", school_id=SCHOOL_ID, **extra):
        row = {
            "id": str(uuid.uuid4()),
            "school_id": school_id,
            "name": name,
            "role": "student",
            "is_active": True,
            "class_id": school_class["id"],
            "class_name": school_class["name"],
            "section_id": None,
            "admission_number": f"ADM-{name[:3].upper()}",
        }
        row.update(extra)
        return fake_db.seed("users", **row)
    return _make


@pytest.fixture
def student(make_student):
    return make_student()


@pytest.fixture
def due_in_future():
    return date.today() + timedelta(days=30)


@pytest.fixture
def due_in_past():
    return date.today() - timedelta(days=10)


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def make_invoice(admin, student, due_in_future):
    def _make(amount=5000, student_row=None, due=None, session_id=SESSION_ID, frequency="monthly", **kw):
        request = GenerateInvoiceRequest(
            student_id=(student_row or student)["id"],
            session_id=session_id,
            due_date=due or due_in_future,
            items=[InvoiceItem(fee_head_name="Tuition", amount=Decimal(str(amount)), frequency=frequency)],
            **kw,
        )
        return run(invoice_service.generate_invoice(admin, request))
    return _make


@pytest.fixture
def collect(admin):
    def _collect(invoice_id, amount, user=None, **kw):
        request = CollectPaymentRequest(invoice_id=invoice_id, amount=Decimal(str(amount)), **kw)
        return run(payment_service.collect_payment(user or admin, request))
    return _collect


def invoice_row(fake, invoice_id) -> dict:
    return next(r for r in fake.rows("invoices") if r["id"] == invoice_id)


def assert_ledger_consistent(fake) -> None:
    """balance == max(0, total - paid) and paid == sum of payment rows, for every invoice."""
    for inv in fake.rows("invoices"):
        total = Decimal(str(inv["total_amount"]))
        paid = Decimal(str(inv["paid_amount"]))
        assert Decimal(str(inv["balance_amount"])) == max(Decimal("0"), total - paid)
        ledger = sum(
            (Decimal(str(p["amount"])) for p in fake.rows("payments") if p["invoice_id"] == inv["id"]),
            Decimal("0"),
        )
        assert ledger == paid
