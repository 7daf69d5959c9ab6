import json
import time
from datetime import datetime

import pytest

from app.pms.db import session_scope
from app.pms.models import User
from app.pms.modules.billing.models import Invoice, PatientMembership, PaymentHistory, Subscription
from app.pms.modules.billing.service import create_invoice, send_invoice
from app.pms.modules.billing.webhooks import (
    WebhookSignatureError,
    compute_signature,
    handle_event,
    verify_signature,
)
from app.pms.modules.notifications.models import Notification
from conftest import WEBHOOK_SECRET

SECRET = "whsec_unit"


def _signed(event: dict, secret: str = SECRET, at: int | None = None) -> tuple[bytes, str]:
    body = json.dumps(event).encode("utf-8")
    ts = str(at if at is not None else int(time.time()))
    return body, f"t={ts},v1={compute_signature(secret, ts, body)}"


def _event(event_type: str, obj: dict) -> dict:
    return {"id": "evt_1", "type": event_type, "data": {"object": obj}}


def test_valid_signature_decodes_event():
    body, header = _signed(_event("ping", {}), at=1_700_000_000)
    event = verify_signature(body, header, SECRET, now=1_700_000_100)
    assert event["type"] == "ping"


def test_any_v1_signature_may_match():
    body, header = _signed(_event("ping", {}), at=1_700_000_000)
    header = header.replace("v1=", "v1=deadbeef,v1=")
    assert verify_signature(body, header, SECRET, now=1_700_000_000)["id"] == "evt_1"


@pytest.mark.parametrize(
    "mutate",
    [
        lambda body, header: (body, header.replace(header.split("v1=")[1], "0" * 64)),
        lambda body, header: (body + b" ", header),
        lambda body, header: (body, "v1=abc"),
        lambda body, header: (body, "t=notanumber,v1=abc"),
        lambda body, header: (body, ""),
    ],
)
def test_bad_signatures_rejected(mutate):
    body, header = _signed(_event("ping", {}), at=1_700_000_000)
    body, header = mutate(body, header)
    with pytest.raises(WebhookSignatureError):
        verify_signature(body, header, SECRET, now=1_700_000_000)


def test_stale_signature_rejected():
    body, header = _signed(_event("ping", {}), at=1_700_000_000)
    with pytest.raises(WebhookSignatureError):
        verify_signature(body, header, SECRET, now=1_700_000_000 + 301)
    assert verify_signature(body, header, SECRET, now=1_700_000_000 + 300)


def test_wrong_secret_rejected():
    body, header = _signed(_event("ping", {}), secret="whsec_other", at=1_700_000_000)
    with pytest.raises(WebhookSignatureError):
        verify_signature(body, header, SECRET, now=1_700_000_000)


def test_unknown_event_type_is_ignored(app):
    with session_scope(app) as s:
        assert handle_event(s, _event("customer.created", {"id": "cus_1"})) is False


def _subscription_checkout(app, user_id, tier="gold", interval="monthly"):
    with session_scope(app) as s:
        assert handle_event(
            s,
            _event(
                "checkout.session.completed",
                {
                    "id": "cs_sub_1",
                    "mode": "subscription",
                    "customer": "cus_9",
                    "subscription": "sub_9",
                    "metadata": {"user_id": str(user_id), "tier": tier, "interval": interval},
                },
            ),
        )


def test_subscription_checkout_activates_membership(app, seeded):
    _subscription_checkout(app, seeded.patient, "silver")
    _subscription_checkout(app, seeded.patient, "gold", "annual")

    with session_scope(app) as s:
        sub = s.query(Subscription).filter(Subscription.user_id == seeded.patient).one()
        assert (sub.status, sub.customer_id, sub.subscription_id, sub.tier_name) == ("active", "cus_9", "sub_9", "gold")
        memberships = s.query(PatientMembership).filter(PatientMembership.user_id == seeded.patient).all()
        assert sorted(m.status for m in memberships) == ["active", "cancelled"]
        active = [m for m in memberships if m.status == "active"][0]
        assert active.tier.name == "gold"
        assert active.billing_interval == "annual"
        titles = [n.title for n in s.query(Notification).filter(Notification.user_id == seeded.patient)]
        assert titles.count("Membership active") == 2


def test_subscription_checkout_without_user_is_skipped(app, seeded):
    with session_scope(app) as s:
        handle_event(s, _event("checkout.session.completed", {"id": "cs_x", "mode": "subscription", "metadata": {}}))
    with session_scope(app) as s:
        assert s.query(Subscription).count() == 0


def test_payment_checkout_pays_invoice_once(app, seeded):
    with session_scope(app) as s:
        inv, _ = create_invoice(
            s, {"patient_id": seeded.patient, "line_items": [{"service_id": seeded.service}]}, s.get(User, seeded.staff)
        )
        send_invoice(s, inv, s.get(User, seeded.staff))
        inv_id = inv.id

    completed = _event(
        "checkout.session.completed",
        {
            "id": "cs_pay_1",
            "mode": "payment",
            "payment_status": "paid",
            "payment_intent": "pi_hook",
            "amount_total": 15000,
            "currency": "usd",
            "metadata": {"invoice_id": str(inv_id), "patient_id": str(seeded.patient)},
        },
    )
    for _ in range(2):
        with session_scope(app) as s:
            handle_event(s, completed)

    with session_scope(app) as s:
        inv = s.get(Invoice, inv_id)
        assert inv.status == "paid"
        assert inv.checkout_session_id == "cs_pay_1"
        assert s.query(PaymentHistory).filter(PaymentHistory.invoice_id == inv_id).count() == 1


def test_subscription_updated_maps_status(app, seeded):
    _subscription_checkout(app, seeded.patient)
    for raw, expected in (("canceled", "cancelled"), ("incomplete_expired", "past_due"), ("trialing", "trialing")):
        with session_scope(app) as s:
            handle_event(
                s,
                _event(
                    "customer.subscription.updated",
                    {
                        "id": "sub_9",
                        "object": "subscription",
                        "status": raw,
                        "current_period_start": 1_700_000_000,
                        "current_period_end": 1_702_592_000,
                        "cancel_at_period_end": True,
                    },
                ),
            )
        with session_scope(app) as s:
            sub = s.query(Subscription).one()
            assert sub.status == expected
            assert sub.cancel_at_period_end is True
            assert sub.current_period_end is not None


def test_subscription_deleted_cancels_memberships(app, seeded):
    _subscription_checkout(app, seeded.patient)
    with session_scope(app) as s:
        handle_event(s, _event("customer.subscription.deleted", {"id": "sub_9", "object": "subscription"}))
    with session_scope(app) as s:
        assert s.query(Subscription).one().status == "cancelled"
        assert s.query(PatientMembership).filter(PatientMembership.status == "active").count() == 0


def test_invoice_events_record_membership_payments(app, seeded):
    _subscription_checkout(app, seeded.patient)
    with session_scope(app) as s:
        handle_event(
            s,
            _event(
                "invoice.payment_succeeded",
                {"id": "in_1", "subscription": "sub_9", "amount_paid": 4500, "payment_intent": "pi_sub_1"},
            ),
        )
        handle_event(
            s,
            _event(
                "invoice.payment_failed",
                {"id": "in_2", "metadata": {"user_id": str(seeded.patient)}, "amount_due": 4500},
            ),
        )

    with session_scope(app) as s:
        rows = s.query(PaymentHistory).order_by(PaymentHistory.id).all()
        assert [(r.status, r.amount_cents, r.processor_invoice_id) for r in rows] == [
            ("succeeded", 4500, "in_1"),
            ("failed", 4500, "in_2"),
        ]
        assert s.query(Subscription).one().status == "past_due"
        failed = s.query(Notification).filter(Notification.title == "Payment failed").one()
        assert failed.priority == "high"


def test_invoice_event_for_unknown_subscription_is_noop(app, seeded):
    with session_scope(app) as s:
        handle_event(s, _event("invoice.payment_succeeded", {"id": "in_x", "subscription": "sub_unknown"}))
    with session_scope(app) as s:
        assert s.query(PaymentHistory).count() == 0


def test_redelivered_invoice_events_are_recorded_once(app, seeded):
    _subscription_checkout(app, seeded.patient)
    paid = _event("invoice.payment_succeeded", {"id": "in_1", "subscription": "sub_9", "amount_paid": 4500})
    failed = _event("invoice.payment_failed", {"id": "in_2", "subscription": "sub_9", "amount_due": 4500})
    for _ in range(2):
        with session_scope(app) as s:
            handle_event(s, paid)
            handle_event(s, failed)

    with session_scope(app) as s:
        rows = s.query(PaymentHistory).order_by(PaymentHistory.id).all()
        assert [(r.status, r.processor_invoice_id) for r in rows] == [("succeeded", "in_1"), ("failed", "in_2")]
        assert s.query(Notification).filter(Notification.title == "Payment failed").count() == 1


def test_invoice_events_read_parent_subscription_details(app, seeded):
    _subscription_checkout(app, seeded.patient)
    with session_scope(app) as s:
        handle_event(
            s,
            _event(
                "invoice.payment_succeeded",
                {
                    "id": "in_3",
                    "amount_paid": 4500,
                    "status_transitions": {"paid_at": 1767225600},
                    "parent": {"subscription_details": {"subscription": "sub_9", "metadata": {}}},
                },
            ),
        )
        handle_event(
            s,
            _event(
                "invoice.payment_failed",
                {
                    "id": "in_4",
                    "amount_due": 4500,
                    "parent": {
                        "subscription_details": {
                            "subscription": {"id": "sub_other"},
                            "metadata": {"user_id": str(seeded.patient)},
                        }
                    },
                },
            ),
        )

    with session_scope(app) as s:
        rows = s.query(PaymentHistory).order_by(PaymentHistory.id).all()
        assert [(r.status, r.processor_invoice_id, r.user_id) for r in rows] == [
            ("succeeded", "in_3", seeded.patient),
            ("failed", "in_4", seeded.patient),
        ]
        assert rows[0].paid_at == datetime(2026, 1, 1)
        assert s.query(Subscription).one().status == "past_due"


# Endpoint


def _post(client, event, secret=WEBHOOK_SECRET, header=None):
    body, signed = _signed(event, secret)
    headers = {"Content-Type": "application/json"}
    if header is not False:
        headers["Stripe-Signature"] = header or signed
    return client.post("/api/stripe/webhook", data=body, headers=headers)


def test_webhook_endpoint_accepts_signed_event(client, app, seeded):
    r = _post(
        client,
        _event(
            "checkout.session.completed",
            {"id": "cs_sub_2", "mode": "subscription", "customer": "cus_2", "metadata": {"user_id": str(seeded.patient), "tier": "silver"}},
        ),
    )
    assert r.status_code == 200
    assert r.get_json() == {"received": True}
    with session_scope(app) as s:
        assert s.query(Subscription).one().tier_name == "silver"


def test_webhook_endpoint_acknowledges_unknown_types(client, app):
    r = _post(client, _event("charge.refunded", {"id": "ch_1"}))
    assert r.status_code == 200


def test_webhook_endpoint_rejects_bad_requests(client, app):
    assert _post(client, _event("ping", {}), header=False).status_code == 400
    r = _post(client, _event("ping", {}), secret="whsec_wrong")
    assert r.status_code == 400
    assert r.get_json()["error"] == "Invalid signature."


def test_webhook_endpoint_requires_configured_secret(client, app):
    app.config["STRIPE_WEBHOOK_SECRET"] = None
    assert _post(client, _event("ping", {})).status_code == 500
