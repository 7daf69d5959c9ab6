"""
JSON endpoints: booking slot lookup, invoice checkout, membership checkout,
billing portal and the payment-processor webhook.
"""
from flask import Blueprint, current_app, g, request

from app.pms.db import db_session
from app.pms.modules.appointments.service import available_time_slots
from app.pms.modules.billing.checkout import (
    CheckoutError,
    create_billing_portal_session,
    create_checkout_session,
    create_membership_checkout,
    verify_payment_session,
)
from app.pms.modules.billing.payments_client import PaymentsError, payments_client_from_config
from app.pms.modules.billing.schemas import CheckoutRequest, MembershipCheckoutRequest
from app.pms.modules.billing.webhooks import WebhookSignatureError, handle_event, verify_signature
from app.pms.rbac import require_permission
from app.pms.validation import errors_to_dict, parse_date, parse_int, parse_payload

bp = Blueprint("api", __name__)


def _json_payload() -> dict:
    if request.is_json:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}
    return request.form.to_dict()


def _field_errors(errors):
    return {"error": "Validation failed.", "field_errors": errors_to_dict(errors)}, 400


def _payments_failed(e: PaymentsError):
    current_app.logger.warning("Payment processor error (request_id=%s): %s", getattr(g, "request_id", None), e)
    return {"error": "Payment processor unavailable. Please try again."}, 502


@bp.get("/appointments/slots")
@require_permission("appointments.book")
def appointment_slots():
    provider_id = parse_int(request.args.get("provider_id"))
    day = parse_date(request.args.get("date"))
    location_id = parse_int(request.args.get("location_id"))
    if not provider_id or not day:
        return {"error": "provider_id and date (YYYY-MM-DD) are required."}, 400
    slots = available_time_slots(db_session(), provider_id, day, location_id)
    return {"date": day.isoformat(), "slots": [{"time": sl.time, "available": sl.available} for sl in slots]}


@bp.post("/billing/checkout")
@require_permission("billing.pay")
def billing_checkout():
    s = db_session()
    data, errors = parse_payload(CheckoutRequest, _json_payload())
    if errors:
        return _field_errors(errors)
    try:
        result = create_checkout_session(
            s,
            payments_client_from_config(current_app),
            g.current_user,
            data.invoice_id,
            base_url=current_app.config["APP_BASE_URL"],
            currency=current_app.config["PAYMENTS_CURRENCY"],
        )
    except LookupError:
        return {"error": "Invoice not found."}, 404
    except CheckoutError as e:
        return {"error": str(e)}, 400
    except PaymentsError as e:
        s.rollback()
        return _payments_failed(e)
    s.commit()
    return result


@bp.get("/billing/verify-payment")
@require_permission("billing.pay")
def billing_verify_payment():
    s = db_session()
    session_id = (request.args.get("session_id") or "").strip()
    if not session_id:
        return {"error": "session_id is required."}, 400
    try:
        verified = verify_payment_session(s, payments_client_from_config(current_app), g.current_user, session_id)
    except LookupError:
        return {"error": "Checkout session not found."}, 404
    except CheckoutError as e:
        return {"error": str(e)}, 400
    except PaymentsError as e:
        s.rollback()
        return _payments_failed(e)
    s.commit()
    return {
        "session_id": verified.session_id,
        "amount_total": verified.amount_total_cents,
        "currency": verified.currency,
        "status": verified.status,
        "invoice_id": verified.invoice_id,
        "payment_date": verified.payment_date.isoformat() if verified.payment_date else None,
    }


@bp.post("/stripe/checkout")
@require_permission("billing.pay")
def stripe_checkout():
    s = db_session()
    data, errors = parse_payload(MembershipCheckoutRequest, _json_payload())
    if errors:
        return _field_errors(errors)
    try:
        result = create_membership_checkout(
            s,
            payments_client_from_config(current_app),
            g.current_user,
            data.tier,
            data.interval,
            base_url=current_app.config["APP_BASE_URL"],
            currency=current_app.config["PAYMENTS_CURRENCY"],
        )
    except CheckoutError as e:
        return {"error": str(e)}, 400
    except PaymentsError as e:
        s.rollback()
        return _payments_failed(e)
    s.commit()
    return result


@bp.post("/stripe/portal")
@require_permission("billing.view_own")
def stripe_portal():
    s = db_session()
    try:
        result = create_billing_portal_session(
            s,
            payments_client_from_config(current_app),
            g.current_user,
            base_url=current_app.config["APP_BASE_URL"],
        )
    except CheckoutError as e:
        return {"error": str(e)}, 400
    except PaymentsError as e:
        return _payments_failed(e)
    return result


@bp.post("/stripe/webhook")
def stripe_webhook():
    header = request.headers.get("Stripe-Signature")
    if not header:
        return {"error": "Missing signature."}, 400
    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not secret:
        current_app.logger.error("Webhook received but STRIPE_WEBHOOK_SECRET is not configured.")
        return {"error": "Webhook not configured."}, 500

    try:
        event = verify_signature(request.get_data(), header, secret)
    except WebhookSignatureError as e:
        current_app.logger.warning("Webhook rejected (request_id=%s): %s", getattr(g, "request_id", None), e)
        return {"error": "Invalid signature."}, 400

    s = db_session()
    try:
        handle_event(s, event)
        s.commit()
    except Exception:
        s.rollback()
        current_app.logger.exception("Webhook handler failed type=%s id=%s", event.get("type"), event.get("id"))
        return {"error": "Webhook handler failed."}, 500
    return {"received": True}
