import re
from datetime import date, timedelta

import pytest

from app.pms.db import session_scope
from app.pms.models import AuditEvent, User
from app.pms.modules.billing.checkout import (
    CheckoutError,
    create_billing_portal_session,
    create_checkout_session,
    create_membership_checkout,
    verify_payment_session,
)
from app.pms.modules.billing.models import Invoice, MembershipTier, PatientMembership, PaymentHistory
from app.pms.modules.billing.service import (
    apply_payment,
    create_invoice,
    get_invoice_for_patient,
    invoice_summary,
    mark_overdue,
    send_invoice,
    void_invoice,
)
from app.pms.modules.notifications.models import Notification
from conftest import csrf, login, make_user

BASE_URL = "http://localhost:5000"


def _give_membership(s, user_id, tier="gold", interval="annual", customer_id=None):
    t = s.query(MembershipTier).filter(MembershipTier.name == tier).one()
    s.add(PatientMembership(user_id=user_id, tier_id=t.id, status="active", billing_interval=interval, customer_id=customer_id))
    s.flush()


def _invoice(s, ids, *, send=True, lines=None):
    inv, errors = create_invoice(
        s,
        {"patient_id": ids.patient, "line_items": lines or [{"service_id": ids.service, "qty": 1}]},
        s.get(User, ids.staff),
    )
    assert errors == []
    if send:
        send_invoice(s, inv, s.get(User, ids.staff))
    return inv


def test_create_invoice_from_catalog_and_adhoc_lines(app, seeded):
    with session_scope(app) as s:
        inv = _invoice(
            s,
            seeded,
            send=False,
            lines=[
                {"service_id": seeded.service, "qty": 1},
                {"description": "Knee brace", "unit_price_cents": 4999, "qty": 2},
            ],
        )
        assert inv.status == "draft"
        assert re.fullmatch(r"INV-\d{6}-[0-9A-F]{6}", inv.invoice_number)
        assert inv.subtotal_cents == 15000 + 9998
        assert inv.discount_cents == 0
        assert inv.total_cents == inv.amount_due_cents == 24998
        assert inv.membership_tier_applied is None
        assert [line["name"] for line in inv.line_items] == ["Office Visit", "Knee brace"]
        assert inv.line_items[0]["cpt_code"] == "99213"


def test_membership_discount_applies_per_line(app, seeded):
    with session_scope(app) as s:
        _give_membership(s, seeded.patient, "gold")
        inv = _invoice(
            s,
            seeded,
            send=False,
            lines=[
                {"service_id": seeded.service, "qty": 1},
                {"description": "Knee brace", "unit_price_cents": 4999, "qty": 2},
            ],
        )
        assert [line["discount_cents"] for line in inv.line_items] == [3000, 2000]
        assert inv.discount_cents == 5000
        assert inv.total_cents == 19998
        assert inv.amount_due_cents == 19998
        assert inv.membership_tier_applied == "gold"


def test_create_invoice_validation(app, seeded):
    with session_scope(app) as s:
        staff = s.get(User, seeded.staff)
        _, errors = create_invoice(s, {"patient_id": seeded.patient, "line_items": []}, staff)
        assert errors
        _, errors = create_invoice(s, {"line_items": [{"service_id": seeded.service}]}, staff)
        assert errors
        _, errors = create_invoice(s, {"patient_id": seeded.physician, "line_items": [{"service_id": seeded.service}]}, staff)
        assert errors[0].field == "patient_id"
        _, errors = create_invoice(s, {"patient_id": seeded.patient, "line_items": [{"service_id": 9999}]}, staff)
        assert errors[0].field == "line_items.0.service_id"
        _, errors = create_invoice(s, {"patient_id": seeded.patient, "line_items": [{"description": "No price"}]}, staff)
        assert errors


def test_send_sets_due_date_and_notifies(app, seeded):
    with session_scope(app) as s:
        inv = _invoice(s, seeded)
        assert inv.status == "sent"
        assert inv.issued_at is not None
        assert inv.due_date == inv.issued_at.date() + timedelta(days=30)
        with pytest.raises(ValueError):
            send_invoice(s, inv, s.get(User, seeded.staff))
        inv_id = inv.id

    with session_scope(app) as s:
        note = s.query(Notification).filter(Notification.user_id == seeded.patient).one()
        assert note.title == "New invoice"
        assert note.related_entity_id == str(inv_id)


def test_patient_never_sees_drafts(app, seeded):
    with session_scope(app) as s:
        patient = s.get(User, seeded.patient)
        draft = _invoice(s, seeded, send=False)
        assert get_invoice_for_patient(s, patient, draft.id) is None
        send_invoice(s, draft, s.get(User, seeded.staff))
        assert get_invoice_for_patient(s, patient, draft.id) is draft
        other = make_user(s, "other@example.com", "patient")
        assert get_invoice_for_patient(s, other, draft.id) is None


def test_void_rules(app, seeded):
    with session_scope(app) as s:
        staff = s.get(User, seeded.staff)
        inv = _invoice(s, seeded)
        void_invoice(s, inv, staff, reason="Entered twice")
        assert inv.status == "void"
        assert inv.amount_due_cents == 0
        with pytest.raises(ValueError):
            void_invoice(s, inv, staff)

        partly = _invoice(s, seeded)
        apply_payment(s, partly, amount_cents=5000, payment_intent_id="pi_part")
        assert partly.status == "partially_paid"
        with pytest.raises(ValueError):
            void_invoice(s, partly, staff)


def test_mark_overdue_only_touches_open_invoices(app, seeded):
    with session_scope(app) as s:
        sent = _invoice(s, seeded)
        draft = _invoice(s, seeded, send=False)
        paid = _invoice(s, seeded)
        apply_payment(s, paid, amount_cents=paid.amount_due_cents, payment_intent_id="pi_full")

        assert mark_overdue(s, sent.due_date) == 0
        assert mark_overdue(s, sent.due_date + timedelta(days=1)) == 1
        assert sent.status == "overdue"
        assert draft.status == "draft"
        assert paid.status == "paid"
        assert invoice_summary(s, s.get(User, seeded.patient)).overdue_count == 1


def test_apply_payment_is_idempotent_per_intent(app, seeded):
    with session_scope(app) as s:
        inv = _invoice(s, seeded)
        first = apply_payment(s, inv, amount_cents=15000, payment_intent_id="pi_dup")
        assert first is not None
        assert inv.status == "paid"
        assert inv.amount_due_cents == 0
        assert apply_payment(s, inv, amount_cents=15000, payment_intent_id="pi_dup") is None
        assert inv.amount_paid_cents == 15000
        inv_id = inv.id

    with session_scope(app) as s:
        assert s.query(PaymentHistory).filter(PaymentHistory.invoice_id == inv_id).count() == 1
        assert s.query(AuditEvent).filter(AuditEvent.action == "invoice.payment").count() == 1


def test_checkout_session_uses_line_items_and_metadata(app, seeded, payments):
    with session_scope(app) as s:
        patient = s.get(User, seeded.patient)
        inv = _invoice(s, seeded)
        result = create_checkout_session(s, payments, patient, inv.id, base_url=BASE_URL)
        assert result == {"session_id": "cs_test_1", "url": "https://checkout.example.com/cs_test_1"}
        assert inv.checkout_session_id == "cs_test_1"

    params = payments.created[0]
    assert params["mode"] == "payment"
    assert params["customer"] == "cus_1"
    assert params["metadata"] == {"invoice_id": inv.id, "patient_id": seeded.patient}
    assert params["line_items"][0]["price_data"]["unit_amount"] == 15000
    assert params["success_url"].startswith(BASE_URL + "/patient/billing/checkout/success")


def test_checkout_collapses_discounted_invoice_to_amount_due(app, seeded, payments):
    with session_scope(app) as s:
        _give_membership(s, seeded.patient, "silver", customer_id="cus_known")
        inv = _invoice(s, seeded)
        create_checkout_session(s, payments, s.get(User, seeded.patient), inv.id, base_url=BASE_URL)

    params = payments.created[0]
    assert params["customer"] == "cus_known"
    assert payments.customers == {}
    assert len(params["line_items"]) == 1
    assert params["line_items"][0]["price_data"]["unit_amount"] == 13500


def test_checkout_rejects_foreign_and_unpayable(app, seeded, payments):
    with session_scope(app) as s:
        patient = s.get(User, seeded.patient)
        other = make_user(s, "other@example.com", "patient")
        draft = _invoice(s, seeded, send=False)
        with pytest.raises(LookupError):
            create_checkout_session(s, payments, other, draft.id, base_url=BASE_URL)
        with pytest.raises(CheckoutError):
            create_checkout_session(s, payments, patient, draft.id, base_url=BASE_URL)
        with pytest.raises(LookupError):
            create_checkout_session(s, payments, patient, 9999, base_url=BASE_URL)
    assert payments.created == []


def test_verify_payment_session_applies_once(app, seeded, payments):
    with session_scope(app) as s:
        patient = s.get(User, seeded.patient)
        inv = _invoice(s, seeded)
        create_checkout_session(s, payments, patient, inv.id, base_url=BASE_URL)
        with pytest.raises(CheckoutError):
            verify_payment_session(s, payments, patient, "cs_test_1")

        payments.complete("cs_test_1", 15000)
        verified = verify_payment_session(s, payments, patient, "cs_test_1")
        assert verified.applied is True
        assert verified.invoice_id == inv.id
        assert verified.amount_total_cents == 15000
        assert inv.status == "paid"

        again = verify_payment_session(s, payments, patient, "cs_test_1")
        assert again.applied is False
        assert inv.amount_paid_cents == 15000

        with pytest.raises(CheckoutError):
            verify_payment_session(s, payments, patient, "pi_not_a_session")
        other = make_user(s, "other@example.com", "patient")
        with pytest.raises(LookupError):
            verify_payment_session(s, payments, other, "cs_test_1")


def test_membership_checkout(app, seeded, payments):
    with session_scope(app) as s:
        patient = s.get(User, seeded.patient)
        result = create_membership_checkout(s, payments, patient, "gold", "monthly", base_url=BASE_URL)
        assert result["session_id"] == "cs_test_1"
        with pytest.raises(CheckoutError):
            create_membership_checkout(s, payments, patient, "platinum", "monthly", base_url=BASE_URL)
        create_membership_checkout(s, payments, patient, "platinum", "annual", base_url=BASE_URL)

    gold, platinum = payments.created
    assert gold["mode"] == "subscription"
    assert gold["metadata"] == {"user_id": seeded.patient, "tier": "gold", "interval": "monthly"}
    assert gold["line_items"][0]["price_data"]["unit_amount"] == 4500
    assert gold["line_items"][0]["price_data"]["recurring"] == {"interval": "month"}
    assert platinum["line_items"][0]["price_data"]["unit_amount"] == 100000


def test_billing_portal_needs_known_customer(app, seeded, payments):
    with session_scope(app) as s:
        patient = s.get(User, seeded.patient)
        with pytest.raises(CheckoutError):
            create_billing_portal_session(s, payments, patient, base_url=BASE_URL)
        _give_membership(s, seeded.patient, customer_id="cus_portal")
        result = create_billing_portal_session(s, payments, patient, base_url=BASE_URL)
        assert result == {"url": "https://billing.example.com/cus_portal"}
    assert payments.portals[0]["return_url"] == BASE_URL + "/patient/billing"


# HTTP surface


def _sent_invoice_id(app, ids) -> int:
    with session_scope(app) as s:
        return _invoice(s, ids).id


def test_checkout_api(client, app, seeded, payments):
    inv_id = _sent_invoice_id(app, seeded)
    login(client, "patient@example.com")
    headers = {"X-CSRF-Token": csrf(client)}

    r = client.post("/api/billing/checkout", json={}, headers=headers)
    assert r.status_code == 400
    assert "invoice_id" in r.get_json()["field_errors"]

    r = client.post("/api/billing/checkout", json={"invoice_id": 9999}, headers=headers)
    assert r.status_code == 404

    r = client.post("/api/billing/checkout", json={"invoice_id": inv_id}, headers=headers)
    assert r.status_code == 200
    assert r.get_json() == {"session_id": "cs_test_1", "url": "https://checkout.example.com/cs_test_1"}

    with session_scope(app) as s:
        assert s.get(Invoice, inv_id).checkout_session_id == "cs_test_1"


def test_checkout_api_reports_processor_failure(client, app, seeded, payments):
    inv_id = _sent_invoice_id(app, seeded)
    login(client, "patient@example.com")

    def boom(params):
        from app.pms.modules.billing.payments_client import PaymentsError

        raise PaymentsError("processor down")

    payments.create_checkout_session = boom
    r = client.post("/api/billing/checkout", json={"invoice_id": inv_id}, headers={"X-CSRF-Token": csrf(client)})
    assert r.status_code == 502


def test_verify_payment_api_and_success_page(client, app, seeded, payments):
    inv_id = _sent_invoice_id(app, seeded)
    login(client, "patient@example.com")
    client.post("/api/billing/checkout", json={"invoice_id": inv_id}, headers={"X-CSRF-Token": csrf(client)})

    assert client.get("/api/billing/verify-payment").status_code == 400
    assert client.get("/api/billing/verify-payment?session_id=cs_missing").status_code == 502

    payments.complete("cs_test_1", 15000, payment_intent="pi_api")
    r = client.get("/api/billing/verify-payment?session_id=cs_test_1")
    assert r.status_code == 200
    body = r.get_json()
    assert body["invoice_id"] == inv_id
    assert body["amount_total"] == 15000
    assert body["status"] == "paid"
    assert body["payment_date"]

    r = client.get("/patient/billing/checkout/success?session_id=cs_test_1")
    assert r.status_code == 200

    with session_scope(app) as s:
        assert s.get(Invoice, inv_id).status == "paid"
        assert s.query(PaymentHistory).filter(PaymentHistory.payment_intent_id == "pi_api").count() == 1


def test_membership_and_portal_api(client, app, seeded, payments):
    login(client, "patient@example.com")
    headers = {"X-CSRF-Token": csrf(client)}

    r = client.post("/api/stripe/checkout", json={"tier": "platinum", "interval": "monthly"}, headers=headers)
    assert r.status_code == 400
    r = client.post("/api/stripe/checkout", json={"tier": "bronze"}, headers=headers)
    assert r.status_code == 400
    r = client.post("/api/stripe/checkout", json={"tier": "Silver", "interval": "annual"}, headers=headers)
    assert r.status_code == 200
    assert r.get_json()["url"].startswith("https://checkout.example.com/")

    r = client.post("/api/stripe/portal", headers=headers)
    assert r.status_code == 400


def test_staff_cannot_use_patient_checkout(client, app, seeded):
    inv_id = _sent_invoice_id(app, seeded)
    login(client, "staff@example.com")
    r = client.post("/api/billing/checkout", json={"invoice_id": inv_id}, headers={"X-CSRF-Token": csrf(client)})
    assert r.status_code in (302, 403)


def test_staff_invoice_workflow(client, app, seeded):
    login(client, "staff@example.com")
    token = csrf(client)
    assert client.get("/staff/invoices/new").status_code == 200

    r = client.post(
        "/staff/invoices/new",
        data={
            "patient_id": str(seeded.patient),
            "line_service_id": [str(seeded.service), ""],
            "line_description": ["", "Cold pack"],
            "line_qty": ["1", "3"],
            "line_unit_price": ["", "12.50"],
            "notes": "Follow-up supplies",
            "csrf_token": token,
        },
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        inv = s.query(Invoice).one()
        inv_id = inv.id
        assert inv.total_cents == 15000 + 3750
        assert inv.notes == "Follow-up supplies"

    assert client.get(f"/staff/invoices/{inv_id}").status_code == 200
    assert client.get("/staff/invoices?status=draft").status_code == 200
    client.post(f"/staff/invoices/{inv_id}/send", data={"csrf_token": token})
    client.post(f"/staff/invoices/{inv_id}/void", data={"reason": "Wrong patient", "csrf_token": token})
    r = client.post("/staff/invoices/mark-overdue", data={"csrf_token": token})
    assert r.status_code == 302

    with session_scope(app) as s:
        inv = s.get(Invoice, inv_id)
        assert inv.status == "void"
        voided = s.query(AuditEvent).filter(AuditEvent.action == "invoice.void").one()
        assert voided.reason == "Wrong patient"


def test_staff_invoice_form_rejects_empty_lines(client, app, seeded):
    login(client, "staff@example.com")
    r = client.post("/staff/invoices/new", data={"patient_id": str(seeded.patient), "csrf_token": csrf(client)})
    assert r.status_code == 400


def test_patient_billing_pages(client, app, seeded):
    inv_id = _sent_invoice_id(app, seeded)
    login(client, "patient@example.com")
    for path in (
        "/patient/billing",
        "/patient/billing/invoices",
        f"/patient/billing/invoices/{inv_id}",
        "/patient/billing/payments",
        "/patient/billing/checkout/cancelled",
        "/patient/membership",
        "/patient/membership?checkout=success",
    ):
        assert client.get(path).status_code == 200, path
