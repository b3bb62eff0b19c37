import threading
from decimal import Decimal

import pytest

from conftest import SCHOOL_ID, assert_ledger_consistent, invoice_row, run
from feeledger.core.config import settings
from feeledger.core.errors import LedgerConflict, LedgerError, NotFoundError, UpstreamError, ValidationFailed
from feeledger.schemas.payments import CollectPaymentRequest, PaymentUpdate, TransactionDetails
from feeledger.services import invoice_service, payment_service


def _audit_actions(fake):
    return [r["action"] for r in fake.rows("fee_audit_logs")]


# ── Collection ───────────────────────────────────────────────

def test_collect_records_payment_with_receipt_number(fake_db, make_invoice, collect, student):
    invoice = make_invoice(amount=5000)

    result = collect(
        invoice["id"], 1500,
        payment_method="UPI",
        transaction_details=TransactionDetails(upi_id="parent@okbank", transaction_id="T-99"),
    )

    payment = result["payment"]
    assert payment["receipt_number"].startswith("RCP-")
    assert payment["receipt_number"].endswith("-00001")
    assert payment["student_id"] == student["id"]
    assert payment["school_id"] == SCHOOL_ID
    assert payment["payment_method"] == "UPI"
    assert payment["transaction_details"] == {"transaction_id": "T-99", "upi_id": "parent@okbank"}
    assert payment["is_confirmed"] is True
    assert "PAYMENT_COLLECTED" in _audit_actions(fake_db)


def test_collect_on_cancelled_invoice_rejected(admin, make_invoice, collect):
    invoice = make_invoice(amount=5000)
    run(invoice_service.cancel_invoice(admin, invoice["id"], "billed twice"))

    with pytest.raises(LedgerConflict) as exc:
        collect(invoice["id"], 100)
    assert exc.value.code == "invoice_cancelled"


def test_collect_unknown_invoice_is_not_found(fake_db, collect):
    with pytest.raises(NotFoundError) as exc:
        collect("00000000-0000-0000-0000-000000000000", 100)
    assert exc.value.code == "invoice_not_found"


def test_lost_race_revalidates_against_fresh_balance(fake_db, make_invoice, collect):
    invoice = make_invoice(amount=5000)

    def competing_payment(store):
        row = invoice_row(store, invoice["id"])
        row.update(paid_amount=4000.0, balance_amount=1000.0, status="Partial", version=row["version"] + 1)

    fake_db.before_next("invoices", "update", competing_payment)

    with pytest.raises(LedgerConflict) as exc:
        collect(invoice["id"], 3000)

    assert exc.value.code == "payment_exceeds_balance"
    assert invoice_row(fake_db, invoice["id"])["paid_amount"] == 4000.0
    assert fake_db.rows("payments") == []


def test_gives_up_after_repeated_write_conflicts(fake_db, make_invoice, collect, monkeypatch):
    monkeypatch.setattr(settings, "LEDGER_WRITE_ATTEMPTS", 2)
    invoice = make_invoice(amount=5000)

    def bump_version(store):
        invoice_row(store, invoice["id"])["version"] += 1

    fake_db.before_next("invoices", "update", bump_version)
    fake_db.before_next("invoices", "update", bump_version)

    with pytest.raises(LedgerConflict) as exc:
        collect(invoice["id"], 1000)

    assert exc.value.code == "concurrent_modification"
    assert invoice_row(fake_db, invoice["id"])["paid_amount"] == 0
    assert fake_db.rows("payments") == []


def test_concurrent_collections_never_overdraw(fake_db, admin, make_invoice, monkeypatch):
    # Each lost compare-and-set means another collection succeeded, so
    # five successful writes bound the retries any thread can need.
    monkeypatch.setattr(settings, "LEDGER_WRITE_ATTEMPTS", 10)
    invoice = make_invoice(amount=5000)
    successes, failures = [], []

    def pay():
        try:
            successes.append(run(payment_service.collect_payment(
                admin, CollectPaymentRequest(invoice_id=invoice["id"], amount=Decimal("1000")),
            )))
        except LedgerError as e:
            failures.append(e.code)

    threads = [threading.Thread(target=pay) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(successes) == 5
    assert failures == ["payment_exceeds_balance"] * 3
    row = invoice_row(fake_db, invoice["id"])
    assert row["paid_amount"] == 5000
    assert row["balance_amount"] == 0
    assert row["status"] == "Paid"
    assert len({p["receipt_number"] for p in fake_db.rows("payments")}) == 5
    assert_ledger_consistent(fake_db)


def test_failed_payment_insert_gives_money_back_to_invoice(fake_db, make_invoice, collect):
    invoice = make_invoice(amount=5000)
    fake_db.fail_on("payments", "insert")

    with pytest.raises(UpstreamError) as exc:
        collect(invoice["id"], 2000)

    assert exc.value.code == "storage_unavailable"
    row = invoice_row(fake_db, invoice["id"])
    assert row["paid_amount"] == 0
    assert row["balance_amount"] == 5000
    assert row["status"] == "Pending"
    assert "PAYMENT_COLLECTED" not in _audit_actions(fake_db)

    entry = next(r for r in fake_db.rows("fee_audit_logs")
                 if r["entity_id"] == invoice["id"] and r["details"].get("compensated"))
    assert entry["action"] == "INVOICE_UPDATED"
    assert entry["details"]["amount"] == -2000
    assert entry["details"]["receipt_number"].startswith("RCP-")
    assert "failed insert" in entry["details"]["reason"]


def test_counter_outage_writes_nothing(fake_db, make_invoice, collect):
    invoice = make_invoice(amount=5000)
    fake_db.fail_on("next_ledger_sequence", "rpc")

    with pytest.raises(UpstreamError) as exc:
        collect(invoice["id"], 2000)

    assert exc.value.code == "sequence_unavailable"
    assert invoice_row(fake_db, invoice["id"])["paid_amount"] == 0
    assert fake_db.rows("payments") == []


def test_audit_outage_does_not_block_collection(fake_db, make_invoice, collect):
    invoice = make_invoice(amount=5000)
    fake_db.fail_on("fee_audit_logs", "insert")

    result = collect(invoice["id"], 2000)

    assert result["invoice"]["balance_amount"] == 3000


# ── Confirmation & immutability ──────────────────────────────

@pytest.fixture
def unconfirmed(make_invoice, collect, monkeypatch):
    monkeypatch.setattr(settings, "AUTO_CONFIRM_PAYMENTS", False)
    invoice = make_invoice(amount=5000)
    return collect(invoice["id"], 2000)


def test_unconfirmed_payment_still_reduces_balance(unconfirmed):
    assert unconfirmed["payment"]["is_confirmed"] is False
    assert unconfirmed["invoice"]["balance_amount"] == 3000


def test_confirm_override_per_request(make_invoice, collect, monkeypatch):
    monkeypatch.setattr(settings, "AUTO_CONFIRM_PAYMENTS", True)
    invoice = make_invoice(amount=5000)

    result = collect(invoice["id"], 100, confirm=False)

    assert result["payment"]["is_confirmed"] is False


def test_unconfirmed_payment_can_be_corrected(admin, unconfirmed):
    payment_id = unconfirmed["payment"]["id"]

    updated = run(payment_service.update_payment(
        admin, payment_id, PaymentUpdate(remarks="Paid by father", payment_method="Cheque"),
    ))

    assert updated["remarks"] == "Paid by father"
    assert updated["payment_method"] == "Cheque"
    assert updated["amount"] == 2000


def test_amount_is_never_editable(admin, unconfirmed):
    with pytest.raises(ValidationFailed) as exc:
        run(payment_service.update_payment(
            admin, unconfirmed["payment"]["id"], PaymentUpdate(amount=10),
        ))
    assert exc.value.code == "field_not_editable"
    assert exc.value.field == "amount"


def test_confirmed_payment_is_immutable(fake_db, admin, unconfirmed):
    payment_id = unconfirmed["payment"]["id"]
    confirmed = run(payment_service.confirm_payment(admin, payment_id))
    assert confirmed["is_confirmed"] is True
    assert confirmed["confirmed_by"] == str(admin.user_id)

    with pytest.raises(LedgerConflict) as exc:
        run(payment_service.update_payment(admin, payment_id, PaymentUpdate(remarks="changed")))
    assert exc.value.code == "payment_immutable"

    with pytest.raises(LedgerConflict) as exc:
        run(payment_service.confirm_payment(admin, payment_id))
    assert exc.value.code == "payment_already_confirmed"

    stored = next(p for p in fake_db.rows("payments") if p["id"] == payment_id)
    assert stored["remarks"] is None


def test_confirmed_payment_amount_change_is_an_invariant_violation(fake_db, admin, make_invoice, collect):
    invoice = make_invoice(amount=5000)
    payment = collect(invoice["id"], 2000)["payment"]
    assert payment["is_confirmed"] is True

    with pytest.raises(LedgerConflict) as exc:
        run(payment_service.update_payment(admin, payment["id"], PaymentUpdate(amount=10)))

    assert exc.value.code == "payment_immutable"
    assert exc.value.status_code == 409
    stored = next(p for p in fake_db.rows("payments") if p["id"] == payment["id"])
    assert stored["amount"] == 2000


@pytest.mark.parametrize("field", ["payment_date", "payment_method"])
def test_required_payment_fields_cannot_be_cleared(fake_db, admin, unconfirmed, field):
    payment_id = unconfirmed["payment"]["id"]

    with pytest.raises(ValidationFailed) as exc:
        run(payment_service.update_payment(admin, payment_id, PaymentUpdate(**{field: None})))

    assert exc.value.code == "field_required"
    assert exc.value.field == field
    stored = next(p for p in fake_db.rows("payments") if p["id"] == payment_id)
    assert stored[field] is not None


def test_confirm_unknown_payment(fake_db, admin):
    with pytest.raises(NotFoundError):
        run(payment_service.confirm_payment(admin, "00000000-0000-0000-0000-000000000000"))


# ── Reversal ─────────────────────────────────────────────────

def test_unconfirmed_payment_cannot_be_reversed(admin, unconfirmed):
    with pytest.raises(LedgerConflict) as exc:
        run(payment_service.reverse_payment(admin, unconfirmed["payment"]["id"], "mistake"))
    assert exc.value.code == "payment_not_confirmed"


def test_reversal_happens_once(fake_db, admin, make_invoice, collect):
    invoice = make_invoice(amount=5000)
    payment = collect(invoice["id"], 2000)["payment"]
    result = run(payment_service.reverse_payment(admin, payment["id"], "bounced cheque"))

    with pytest.raises(LedgerConflict) as exc:
        run(payment_service.reverse_payment(admin, payment["id"], "bounced cheque"))
    assert exc.value.code == "payment_already_reversed"

    with pytest.raises(LedgerConflict) as exc:
        run(payment_service.reverse_payment(admin, result["reversal"]["id"], "undo the undo"))
    assert exc.value.code == "payment_is_reversal"

    reversals = [p for p in fake_db.rows("payments") if p.get("reverses_payment_id") == payment["id"]]
    assert len(reversals) == 1
    assert reversals[0]["remarks"] == f"Reversal of {payment['receipt_number']}: bounced cheque"
    assert invoice_row(fake_db, invoice["id"])["status"] == "Pending"
    assert_ledger_consistent(fake_db)


def test_failed_reversal_insert_rolls_everything_back(fake_db, admin, make_invoice, collect):
    invoice = make_invoice(amount=5000)
    payment = collect(invoice["id"], 2000)["payment"]
    fake_db.fail_on("payments", "insert")

    with pytest.raises(UpstreamError):
        run(payment_service.reverse_payment(admin, payment["id"], "bounced cheque"))

    original = next(p for p in fake_db.rows("payments") if p["id"] == payment["id"])
    assert original["is_reversed"] is False
    assert original["reversal_reason"] is None
    assert invoice_row(fake_db, invoice["id"])["paid_amount"] == 2000
    assert_ledger_consistent(fake_db)

    compensations = [r for r in fake_db.rows("fee_audit_logs") if r["details"].get("compensated")]
    assert {(r["action"], r["entity_id"]) for r in compensations} == {
        ("INVOICE_UPDATED", invoice["id"]),
        ("PAYMENT_UPDATED", payment["id"]),
    }
    assert "PAYMENT_REVERSED" not in _audit_actions(fake_db)


def test_reversal_stands_when_back_link_write_fails(fake_db, admin, make_invoice, collect, student):
    invoice = make_invoice(amount=5000)
    payment = collect(invoice["id"], 2000)["payment"]
    # The claim is already written; break payment updates once the negative row lands.
    fake_db.before_next("payments", "insert", lambda store: store.fail_on("payments", "update"))

    result = run(payment_service.reverse_payment(admin, payment["id"], "bounced cheque"))

    assert result["reversal"]["amount"] == -2000
    assert result["invoice"]["balance_amount"] == 5000
    original = next(p for p in fake_db.rows("payments") if p["id"] == payment["id"])
    assert original["is_reversed"] is True
    assert original.get("reversal_payment_id") is None
    assert_ledger_consistent(fake_db)

    entry = next(r for r in fake_db.rows("fee_audit_logs") if r["action"] == "PAYMENT_REVERSED")
    assert entry["details"]["link_pending"] is True
    assert entry["details"]["reversal_payment_id"] == result["reversal"]["id"]
    balance = next(b for b in fake_db.rows("student_balances") if b["student_id"] == student["id"])
    assert balance["total_balance"] == 5000


# ── Reads ────────────────────────────────────────────────────

def test_student_payments_newest_first(make_invoice, collect, student):
    invoice = make_invoice(amount=5000)
    first = collect(invoice["id"], 1000)["payment"]
    second = collect(invoice["id"], 500)["payment"]

    rows = run(payment_service.list_student_payments(SCHOOL_ID, student["id"]))

    assert [r["id"] for r in rows] == [second["id"], first["id"]]


def test_receipt_bundle(fake_db, make_invoice, collect, student):
    fake_db.seed("schools", id=SCHOOL_ID, name="Green Valley School", phone="080-1234")
    invoice = make_invoice(amount=5000)
    collect(invoice["id"], 3000)
    second = collect(invoice["id"], 1500)["payment"]

    bundle = run(payment_service.build_receipt(SCHOOL_ID, second["id"]))

    assert bundle["school"]["name"] == "Green Valley School"
    assert bundle["student"]["name"] == student["name"]
    assert bundle["payment"]["receipt_number"] == second["receipt_number"]
    assert bundle["items"][0]["fee_head_name"] == "Tuition"
    assert bundle["paid_before"] == Decimal("3000")
    assert bundle["outstanding_after"] == Decimal("500")
