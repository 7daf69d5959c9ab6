"""
Payment processor webhooks.

Signature header format: ``t=<unix>,v1=<hex hmac>``; the signed message is
``"<t>.<raw body>"`` under HMAC-SHA256 with the endpoint secret.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from app.pms.audit import record_event
from app.pms.modules.billing.models import Invoice, MembershipTier, PatientMembership, PaymentHistory, Subscription
from app.pms.modules.billing.service import apply_payment
from app.pms.modules.notifications.service import create_for_user

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

# Maximum age of a signed webhook (5 minutes)
MAX_WEBHOOK_AGE_SECONDS = 300

SUBSCRIPTION_STATUSES = ("active", "past_due", "cancelled", "trialing", "paused")


class WebhookSignatureError(Exception):
    """Raised when webhook signature verification fails"""


def compute_signature(secret: str, timestamp: str, payload: bytes) -> str:
    signed = timestamp.encode("utf-8") + b"." + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def _parse_header(header: str) -> tuple[str | None, list[str]]:
    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def verify_signature(
    payload: bytes,
    header: str,
    secret: str,
    *,
    tolerance: int = MAX_WEBHOOK_AGE_SECONDS,
    now: float | None = None,
) -> dict[str, Any]:
    """Verify and decode a webhook body. Raises WebhookSignatureError."""
    timestamp, signatures = _parse_header(header or "")
    if not timestamp or not signatures:
        raise WebhookSignatureError("Malformed signature header.")
    try:
        age = abs((now if now is not None else time.time()) - int(timestamp))
    except ValueError as e:
        raise WebhookSignatureError("Invalid signature timestamp.") from e
    if age > tolerance:
        raise WebhookSignatureError(f"Signature timestamp too old ({int(age)}s).")

    expected = compute_signature(secret, timestamp, payload)
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise WebhookSignatureError("Signature mismatch.")
    try:
        event = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise WebhookSignatureError("Webhook body is not valid JSON.") from e
    if not isinstance(event, dict):
        raise WebhookSignatureError("Webhook body is not an event object.")
    return event


def _ts(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _subscription_status(raw: str | None) -> str:
    if raw == "canceled":
        return "cancelled"
    if raw in SUBSCRIPTION_STATUSES:
        return raw
    # incomplete, unpaid and friends
    return "past_due"


def _subscription_ref(obj: dict[str, Any]) -> tuple[str | None, dict[str, Any]]:
    """Subscription id and metadata; invoices nest both under parent.subscription_details."""
    if obj.get("object") == "subscription":
        return obj.get("id"), obj.get("metadata") or {}
    details = (obj.get("parent") or {}).get("subscription_details") or {}
    sub_id = details.get("subscription")
    if isinstance(sub_id, dict):
        sub_id = sub_id.get("id")
    return sub_id or obj.get("subscription"), details.get("metadata") or obj.get("metadata") or {}


def _find_subscription(s: "Session", obj: dict[str, Any]) -> Subscription | None:
    sub_id, meta = _subscription_ref(obj)
    if sub_id:
        sub = s.query(Subscription).filter(Subscription.subscription_id == sub_id).one_or_none()
        if sub:
            return sub
    user_id = _int(meta.get("user_id"))
    if user_id:
        return s.query(Subscription).filter(Subscription.user_id == user_id).one_or_none()
    return None


def _handle_checkout_completed(s: "Session", obj: dict[str, Any]) -> None:
    meta = obj.get("metadata") or {}
    if obj.get("mode") == "subscription":
        user_id = _int(meta.get("user_id"))
        if not user_id:
            logger.warning("Subscription checkout without user_id metadata session=%s", obj.get("id"))
            return
        tier_name = meta.get("tier")
        now = datetime.utcnow()
        sub = s.query(Subscription).filter(Subscription.user_id == user_id).one_or_none()
        if not sub:
            sub = Subscription(user_id=user_id, created_at=now)
            s.add(sub)
        sub.status = "active"
        sub.customer_id = obj.get("customer") or sub.customer_id
        sub.subscription_id = obj.get("subscription") or sub.subscription_id
        sub.tier_name = tier_name or sub.tier_name
        sub.cancel_at_period_end = False
        sub.updated_at = now

        tier = s.query(MembershipTier).filter(MembershipTier.name == tier_name).one_or_none() if tier_name else None
        if tier:
            for old in (
                s.query(PatientMembership)
                .filter(PatientMembership.user_id == user_id)
                .filter(PatientMembership.status == "active")
                .all()
            ):
                old.status = "cancelled"
            s.add(
                PatientMembership(
                    user_id=user_id,
                    tier_id=tier.id,
                    status="active",
                    billing_interval=meta.get("interval") or "monthly",
                    customer_id=sub.customer_id,
                    started_at=now,
                    created_at=now,
                )
            )
        create_for_user(
            s,
            user_id,
            title="Membership active",
            message=f"Your {(tier_name or 'membership').title()} membership is now active.",
            notification_type="billing",
            action_url="/patient/membership",
            action_label="View membership",
        )
        record_event(
            s,
            actor=None,
            action="subscription.activate",
            entity_type="Subscription",
            entity_id=str(user_id),
            metadata={"tier": tier_name, "subscription_id": sub.subscription_id},
        )
        return

    invoice_id = _int(meta.get("invoice_id"))
    inv = s.get(Invoice, invoice_id) if invoice_id else None
    if not inv:
        logger.warning("Payment checkout for unknown invoice session=%s invoice_id=%s", obj.get("id"), invoice_id)
        return
    if obj.get("payment_status") != "paid":
        logger.info("Checkout completed but unpaid session=%s", obj.get("id"))
        return
    apply_payment(
        s,
        inv,
        amount_cents=int(obj.get("amount_total") or 0),
        payment_intent_id=obj.get("payment_intent"),
        currency=obj.get("currency") or "usd",
        checkout_session_id=obj.get("id"),
    )


def _handle_subscription_updated(s: "Session", obj: dict[str, Any]) -> None:
    sub = _find_subscription(s, obj)
    if not sub:
        logger.warning("Subscription update for unknown subscription=%s", obj.get("id"))
        return
    sub.status = _subscription_status(obj.get("status"))
    sub.current_period_start = _ts(obj.get("current_period_start")) or sub.current_period_start
    sub.current_period_end = _ts(obj.get("current_period_end")) or sub.current_period_end
    sub.cancel_at_period_end = bool(obj.get("cancel_at_period_end"))
    sub.updated_at = datetime.utcnow()


def _handle_subscription_deleted(s: "Session", obj: dict[str, Any]) -> None:
    sub = _find_subscription(s, obj)
    if not sub:
        logger.warning("Subscription delete for unknown subscription=%s", obj.get("id"))
        return
    sub.status = "cancelled"
    sub.updated_at = datetime.utcnow()
    for m in (
        s.query(PatientMembership)
        .filter(PatientMembership.user_id == sub.user_id)
        .filter(PatientMembership.status == "active")
        .all()
    ):
        m.status = "cancelled"
    record_event(
        s,
        actor=None,
        action="subscription.cancel",
        entity_type="Subscription",
        entity_id=str(sub.user_id),
        metadata={"subscription_id": sub.subscription_id},
    )


def _invoice_payment_row(s: "Session", obj: dict[str, Any], status: str) -> PaymentHistory | None:
    sub = _find_subscription(s, obj)
    if not sub:
        logger.warning("Invoice event for unknown subscription=%s invoice=%s", _subscription_ref(obj)[0], obj.get("id"))
        return None
    # deliveries are at least once
    existing = (
        s.query(PaymentHistory)
        .filter(PaymentHistory.processor_invoice_id == obj.get("id"))
        .filter(PaymentHistory.status == status)
        .first()
        if obj.get("id")
        else None
    )
    if existing:
        logger.info("Invoice event already recorded invoice=%s status=%s", obj.get("id"), status)
        return existing
    amount = obj.get("amount_paid") if status == "succeeded" else obj.get("amount_due")
    row = PaymentHistory(
        user_id=sub.user_id,
        amount_cents=int(amount or 0),
        currency=obj.get("currency") or "usd",
        status=status,
        description=f"{(sub.tier_name or 'Membership').title()} membership",
        payment_method="card",
        receipt_url=obj.get("hosted_invoice_url"),
        payment_intent_id=obj.get("payment_intent"),
        processor_invoice_id=obj.get("id"),
        paid_at=_ts((obj.get("status_transitions") or {}).get("paid_at")) if status == "succeeded" else None,
    )
    s.add(row)
    s.flush()
    if status == "failed":
        sub.status = "past_due"
        sub.updated_at = datetime.utcnow()
        create_for_user(
            s,
            sub.user_id,
            title="Payment failed",
            message="We could not charge your card for your membership. Please update your payment method.",
            notification_type="billing",
            priority="high",
            action_url="/patient/billing",
            action_label="Update billing",
        )
    return row


def _handle_invoice_succeeded(s: "Session", obj: dict[str, Any]) -> None:
    _invoice_payment_row(s, obj, "succeeded")


def _handle_invoice_failed(s: "Session", obj: dict[str, Any]) -> None:
    _invoice_payment_row(s, obj, "failed")


HANDLERS = {
    "checkout.session.completed": _handle_checkout_completed,
    "customer.subscription.updated": _handle_subscription_updated,
    "customer.subscription.deleted": _handle_subscription_deleted,
    "invoice.payment_succeeded": _handle_invoice_succeeded,
    "invoice.payment_failed": _handle_invoice_failed,
}


def handle_event(s: "Session", event: dict[str, Any]) -> bool:
    """Dispatch a verified event. Returns False for event types we ignore."""
    event_type = event.get("type") or ""
    handler = HANDLERS.get(event_type)
    if not handler:
        logger.info("Unhandled webhook event type=%s id=%s", event_type, event.get("id"))
        return False
    obj = (event.get("data") or {}).get("object") or {}
    handler(s, obj)
    logger.info("Processed webhook event type=%s id=%s", event_type, event.get("id"))
    return True
