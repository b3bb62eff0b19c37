from datetime import date, timedelta
from decimal import Decimal

import pytest

from conftest import NEXT_SESSION_ID, SCHOOL_ID, SESSION_ID, run
from feeledger.core.errors import LedgerConflict
from feeledger.schemas.balances import CarryForwardRequest
from feeledger.services import balance_service, invoice_service, payment_service


def _carry(admin, student):
    return run(invoice_service.carry_forward_balance(admin, CarryForwardRequest(
        student_id=student["id"],
        from_session_id=SESSION_ID,
        to_session_id=NEXT_SESSION_ID,
        due_date=date.today() + timedelta(days=15),
    )))


def test_recompute_is_idempotent(fake_db, make_invoice, collect, student):
    invoice = make_invoice(amount=5000)
    collect(invoice["id"], 1200)

    first = run(balance_service.update_balance(SCHOOL_ID, student["id"], SESSION_ID))
    second = run(balance_service.update_balance(SCHOOL_ID, student["id"], SESSION_ID))

    assert first["total_balance"] == second["total_balance"] == 3800
    assert first["total_invoiced"] == 5000
    assert first["total_paid"] == 1200
    assert len(fake_db.rows("student_balances")) == 1


def test_recompute_heals_a_drifted_cache(fake_db, admin, make_invoice, student):
    make_invoice(amount=5000)
    fake_db.rows("student_balances")[0]["total_balance"] = 1.0

    balance = run(balance_service.recompute_balance(admin, student["id"], SESSION_ID))

    assert balance["total_balance"] == 5000
    assert fake_db.rows("fee_audit_logs")[-1]["action"] == "BALANCE_UPDATED"


def test_balance_is_computed_when_missing(fake_db, make_invoice, student):
    make_invoice(amount=700)
    fake_db.tables["student_balances"] = []

    balance = run(balance_service.get_balance(SCHOOL_ID, student["id"], SESSION_ID))

    assert balance["total_balance"] == 700


def test_last_payment_ignores_reversed_payments(fake_db, admin, make_invoice, collect, student):
    invoice = make_invoice(amount=5000)
    collect(invoice["id"], 1000)
    mistake = collect(invoice["id"], 2500)["payment"]
    run(payment_service.reverse_payment(admin, mistake["id"], "entered twice"))

    balance = run(balance_service.get_balance(SCHOOL_ID, student["id"], SESSION_ID))

    assert balance["total_paid"] == 1000
    assert balance["last_payment_amount"] == 1000


def test_defaulters_largest_first(fake_db, make_invoice, make_student, collect):
    big = make_student(name="Big")
    small = make_student(name="Small")
    clear = make_student(name="Clear")
    make_invoice(amount=9000, student_row=big)
    make_invoice(amount=300, student_row=small)
    paid = make_invoice(amount=100, student_row=clear)
    collect(paid["id"], 100)

    defaulters = run(balance_service.get_defaulters(SCHOOL_ID, SESSION_ID))
    over_1000 = run(balance_service.get_defaulters(SCHOOL_ID, SESSION_ID, min_balance=Decimal("1000")))

    assert [d["student_id"] for d in defaulters] == [big["id"], small["id"]]
    assert [d["student_id"] for d in over_1000] == [big["id"]]


def test_carry_forward_bills_arrears_into_next_session(fake_db, admin, make_invoice, collect, student):
    invoice = make_invoice(amount=5000)
    collect(invoice["id"], 3000)

    arrears = _carry(admin, student)

    assert arrears["session_id"] == NEXT_SESSION_ID
    assert arrears["carried_from_session_id"] == SESSION_ID
    assert arrears["total_amount"] == 2000
    assert arrears["items"][0]["frequency"] == "One-time"
    assert arrears["billing_period"] == {"display_text": "One-time Payment"}
    assert fake_db.rows("fee_audit_logs")[-1]["action"] == "BALANCE_CARRY_FORWARD"

    next_session = run(balance_service.get_balance(SCHOOL_ID, student["id"], NEXT_SESSION_ID))
    assert next_session["total_balance"] == 2000


def test_carry_forward_only_once(fake_db, admin, make_invoice, student):
    make_invoice(amount=5000)
    _carry(admin, student)

    with pytest.raises(LedgerConflict) as exc:
        _carry(admin, student)
    assert exc.value.code == "balance_already_carried_forward"


def test_nothing_to_carry_forward(fake_db, admin, make_invoice, collect, student):
    invoice = make_invoice(amount=5000)
    collect(invoice["id"], 5000)

    assert _carry(admin, student) is None
    assert [i["session_id"] for i in fake_db.rows("invoices")] == [SESSION_ID]
