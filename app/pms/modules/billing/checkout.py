"""
Hosted checkout, payment verification and billing-portal sessions.

The payment processor owns card entry; this module only builds sessions,
reads them back, and applies completed payments to invoices.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from app.pms.audit import record_event
from app.pms.models import User
from app.pms.modules.billing.models import Invoice, PatientMembership, Subscription
from app.pms.modules.billing.payments_client import PaymentsError
from app.pms.modules.billing.service import apply_payment, is_payable, membership_price_cents

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.pms.modules.billing.payments_client import StripeClient

logger = logging.getLogger(__name__)

SUCCESS_PATH = "/patient/billing/checkout/success?session_id={CHECKOUT_SESSION_ID}"
CANCEL_PATH = "/patient/billing/checkout/cancelled"
MEMBERSHIP_SUCCESS_PATH = "/patient/membership?checkout=success"
MEMBERSHIP_CANCEL_PATH = "/patient/membership?checkout=cancelled"
PORTAL_RETURN_PATH = "/patient/billing"


class CheckoutError(ValueError):
    """Request-level problem (bad invoice, foreign session); maps to 400/404."""


@dataclass(frozen=True)
class VerifiedPayment:
    session_id: str
    amount_total_cents: int
    currency: str
    status: str
    invoice_id: int | None
    payment_date: datetime | None
    applied: bool


def known_customer_id(s: "Session", user: User) -> str | None:
    membership = (
        s.query(PatientMembership)
        .filter(PatientMembership.user_id == user.id)
        .filter(PatientMembership.customer_id.isnot(None))
        .order_by(PatientMembership.started_at.desc())
        .first()
    )
    if membership:
        return membership.customer_id
    sub = s.query(Subscription).filter(Subscription.user_id == user.id).one_or_none()
    if sub and sub.customer_id:
        return sub.customer_id
    return None


def resolve_customer_id(s: "Session", client: "StripeClient", user: User) -> str:
    cid = known_customer_id(s, user)
    if cid:
        return cid
    existing = client.find_customer_by_email(user.email)
    if existing and existing.get("id"):
        return existing["id"]
    created = client.create_customer(email=user.email, name=user.full_name, metadata={"user_id": user.id})
    if not created.get("id"):
        raise PaymentsError("Payment processor did not return a customer id.")
    return created["id"]


def _checkout_line_items(inv: Invoice, currency: str) -> list[dict]:
    items = []
    lines = inv.line_items or []
    for line in lines:
        unit = int(line.get("unit_price_cents") or 0)
        qty = int(line.get("qty") or 1)
        items.append(
            {
                "price_data": {
                    "currency": currency,
                    "unit_amount": unit,
                    "product_data": {"name": line.get("name") or line.get("description") or "Service"},
                },
                "quantity": qty,
            }
        )
    # discounted or part-paid invoices are charged as one amount_due line
    if not items or inv.amount_paid_cents or any(line.get("discount_cents") for line in lines):
        items = [
            {
                "price_data": {
                    "currency": currency,
                    "unit_amount": inv.amount_due_cents,
                    "product_data": {"name": f"Invoice {inv.invoice_number}"},
                },
                "quantity": 1,
            }
        ]
    return items


def create_checkout_session(
    s: "Session",
    client: "StripeClient",
    patient: User,
    invoice_id: int,
    *,
    base_url: str,
    currency: str = "usd",
) -> dict[str, str]:
    inv = s.get(Invoice, invoice_id)
    if not inv or inv.patient_id != patient.id:
        raise LookupError("Invoice not found.")
    if not is_payable(inv):
        raise CheckoutError(f"Invoice {inv.invoice_number} is not payable.")

    customer_id = resolve_customer_id(s, client, patient)
    session = client.create_checkout_session(
        {
            "mode": "payment",
            "customer": customer_id,
            "line_items": _checkout_line_items(inv, currency),
            "success_url": base_url + SUCCESS_PATH,
            "cancel_url": base_url + CANCEL_PATH,
            "metadata": {"invoice_id": inv.id, "patient_id": patient.id},
            "payment_intent_data": {"metadata": {"invoice_id": inv.id, "patient_id": patient.id}},
        }
    )
    if not session.get("id") or not session.get("url"):
        raise PaymentsError("Payment processor did not return a checkout session.")

    inv.checkout_session_id = session["id"]
    inv.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=patient,
        action="invoice.checkout_start",
        entity_type="Invoice",
        entity_id=str(inv.id),
        metadata={"session_id": session["id"], "amount_due_cents": inv.amount_due_cents},
    )
    return {"session_id": session["id"], "url": session["url"]}


def _metadata_int(meta: dict, key: str) -> int | None:
    try:
        return int(meta.get(key))
    except (TypeError, ValueError):
        return None


def verify_payment_session(s: "Session", client: "StripeClient", patient: User, session_id: str) -> VerifiedPayment:
    session_id = (session_id or "").strip()
    if not session_id.startswith("cs_"):
        raise CheckoutError("Invalid checkout session id.")

    session = client.retrieve_checkout_session(session_id)
    meta = session.get("metadata") or {}
    if _metadata_int(meta, "patient_id") != patient.id:
        raise LookupError("Checkout session not found.")
    if session.get("status") != "complete":
        raise CheckoutError("Checkout session is not complete.")

    invoice_id = _metadata_int(meta, "invoice_id")
    amount = int(session.get("amount_total") or 0)
    currency = session.get("currency") or "usd"
    applied = False
    paid_at = None
    inv = s.get(Invoice, invoice_id) if invoice_id else None
    if inv and inv.patient_id == patient.id and session.get("payment_status") == "paid":
        payment = apply_payment(
            s,
            inv,
            amount_cents=amount,
            payment_intent_id=session.get("payment_intent"),
            currency=currency,
            checkout_session_id=session_id,
            actor=patient,
        )
        applied = payment is not None
        paid_at = payment.paid_at if payment else inv.paid_at

    return VerifiedPayment(
        session_id=session_id,
        amount_total_cents=amount,
        currency=currency,
        status=session.get("payment_status") or session.get("status") or "unknown",
        invoice_id=invoice_id,
        payment_date=paid_at,
        applied=applied,
    )


def create_membership_checkout(
    s: "Session",
    client: "StripeClient",
    user: User,
    tier: str,
    interval: str,
    *,
    base_url: str,
    currency: str = "usd",
) -> dict[str, str]:
    price = membership_price_cents(tier, interval)
    if price is None:
        raise CheckoutError(f"{tier.title()} membership is only available with annual billing.")

    customer_id = resolve_customer_id(s, client, user)
    session = client.create_checkout_session(
        {
            "mode": "subscription",
            "customer": customer_id,
            "line_items": [
                {
                    "price_data": {
                        "currency": currency,
                        "unit_amount": price,
                        "recurring": {"interval": "year" if interval == "annual" else "month"},
                        "product_data": {"name": f"{tier.title()} membership"},
                    },
                    "quantity": 1,
                }
            ],
            "success_url": base_url + MEMBERSHIP_SUCCESS_PATH,
            "cancel_url": base_url + MEMBERSHIP_CANCEL_PATH,
            "metadata": {"user_id": user.id, "tier": tier, "interval": interval},
            "subscription_data": {"metadata": {"user_id": user.id, "tier": tier}},
        }
    )
    if not session.get("id") or not session.get("url"):
        raise PaymentsError("Payment processor did not return a checkout session.")
    record_event(
        s,
        actor=user,
        action="membership.checkout_start",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"tier": tier, "interval": interval, "session_id": session["id"]},
    )
    return {"session_id": session["id"], "url": session["url"]}


def create_billing_portal_session(s: "Session", client: "StripeClient", user: User, *, base_url: str) -> dict[str, str]:
    customer_id = known_customer_id(s, user)
    if not customer_id:
        raise CheckoutError("No billing account found. Start a membership or pay an invoice first.")
    portal = client.create_billing_portal_session(customer=customer_id, return_url=base_url + PORTAL_RETURN_PATH)
    if not portal.get("url"):
        raise PaymentsError("Payment processor did not return a portal URL.")
    return {"url": portal["url"]}
