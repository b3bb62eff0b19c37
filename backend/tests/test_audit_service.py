import uuid
from datetime import datetime, timedelta, timezone

from conftest import OTHER_SCHOOL_ID, SCHOOL_ID, run
from feeledger.core.config import settings
from feeledger.core.security import RequestMeta
from feeledger.schemas.audit import AuditAction, EntityRef, EntityType
from feeledger.services import audit_service


def test_entry_carries_actor_and_requester(fake_db, admin):
    invoice_id = uuid.uuid4()
    row = run(audit_service.log_action(
        school_id=SCHOOL_ID,
        action=AuditAction.invoice_generated,
        entity=EntityRef.invoice(invoice_id),
        user=admin,
        details={"amount": 10},
        meta=RequestMeta(ip_address="10.0.0.7", user_agent="pytest"),
    ))

    assert row["entity_type"] == "FeeInvoice"
    assert row["entity_id"] == str(invoice_id)
    assert row["user_id"] == str(admin.user_id)
    assert row["user_role"] == "school_admin"
    assert row["ip_address"] == "10.0.0.7"
    assert row["details"] == {"amount": 10}


def test_write_failure_is_swallowed(fake_db, admin):
    fake_db.fail_on("fee_audit_logs", "insert")

    row = run(audit_service.log_action(
        school_id=SCHOOL_ID, action=AuditAction.payment_collected,
        entity=EntityRef.payment(uuid.uuid4()), user=admin,
    ))

    assert row is None


def test_trail_newest_first_and_capped(fake_db, admin, monkeypatch):
    monkeypatch.setattr(settings, "AUDIT_TRAIL_LIMIT", 3)
    payment_id = uuid.uuid4()
    for n in range(5):
        run(audit_service.log_action(
            school_id=SCHOOL_ID, action=AuditAction.payment_updated,
            entity=EntityRef.payment(payment_id), user=admin, details={"n": n},
        ))

    trail = run(audit_service.get_entity_audit_trail(SCHOOL_ID, EntityType.payment, str(payment_id)))

    assert [r["details"]["n"] for r in trail] == [4, 3, 2]


def test_trail_is_tenant_scoped(fake_db, admin):
    payment_id = uuid.uuid4()
    run(audit_service.log_action(
        school_id=SCHOOL_ID, action=AuditAction.payment_confirmed,
        entity=EntityRef.payment(payment_id), user=admin,
    ))

    assert run(audit_service.get_entity_audit_trail(OTHER_SCHOOL_ID, EntityType.payment, str(payment_id))) == []


def test_user_activity_filters(fake_db, admin, bursar):
    for action in (AuditAction.payment_collected, AuditAction.payment_confirmed, AuditAction.payment_collected):
        run(audit_service.log_action(
            school_id=SCHOOL_ID, action=action, entity=EntityRef.payment(uuid.uuid4()), user=bursar,
        ))
    run(audit_service.log_action(
        school_id=SCHOOL_ID, action=AuditAction.payment_collected,
        entity=EntityRef.payment(uuid.uuid4()), user=admin,
    ))

    collected = run(audit_service.get_user_activity(
        SCHOOL_ID, str(bursar.user_id), action=AuditAction.payment_collected,
    ))
    tomorrow = run(audit_service.get_user_activity(
        SCHOOL_ID, str(bursar.user_id), start_date=datetime.now(timezone.utc) + timedelta(days=1),
    ))
    one = run(audit_service.get_user_activity(SCHOOL_ID, str(bursar.user_id), limit=1))

    assert len(collected) == 2
    assert tomorrow == []
    assert len(one) == 1
    assert one[0]["action"] == "PAYMENT_COLLECTED"


def test_ledger_operations_leave_a_trail(fake_db, admin, make_invoice, collect):
    invoice = make_invoice(amount=1000)
    payment = collect(invoice["id"], 400)["payment"]

    invoice_trail = run(audit_service.get_entity_audit_trail(SCHOOL_ID, EntityType.invoice, invoice["id"]))
    payment_trail = run(audit_service.get_entity_audit_trail(SCHOOL_ID, EntityType.payment, payment["id"]))

    assert [r["action"] for r in invoice_trail] == ["INVOICE_GENERATED"]
    assert [r["action"] for r in payment_trail] == ["PAYMENT_COLLECTED"]
    assert payment_trail[0]["details"]["new_balance"] == 600
