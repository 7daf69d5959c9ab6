from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.pms.audit import record_event
from app.pms.models import User
from app.pms.modules.billing.models import Invoice, MembershipTier, PatientMembership, PaymentHistory
from app.pms.modules.billing.schemas import InvoiceCreate
from app.pms.modules.locations.models import ServiceCatalog
from app.pms.modules.notifications.service import create_for_user
from app.pms.validation import ValidationError, parse_payload

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

INVOICE_STATUSES = ("draft", "sent", "paid", "partially_paid", "overdue", "void", "refunded")
PAYABLE_STATUSES = ("sent", "partially_paid", "overdue")
PAID_STATUSES = ("paid", "partially_paid", "refunded")
PAYMENT_STATUSES = ("succeeded", "failed", "pending", "refunded")
PENDING_CLAIM_STATUSES = ("submitted", "acknowledged", "pending", "appealed")
PAYMENT_TERMS_DAYS = 30
RECENT_LIMIT = 5

# name -> (monthly cents, annual cents); platinum is annual only
MEMBERSHIP_PRICING: dict[str, tuple[int | None, int]] = {
    "platinum": (None, 100000),
    "gold": (4500, 50000),
    "silver": (2200, 25000),
}


@dataclass(frozen=True)
class BillingSummary:
    outstanding_cents: int
    next_payment_due: date | None
    paid_this_year_cents: int
    pending_reimbursements_cents: int


@dataclass(frozen=True)
class InvoiceSummary:
    outstanding_balance_cents: int
    total_paid_ytd_cents: int
    last_payment_date: datetime | None
    overdue_count: int


@dataclass(frozen=True)
class PaymentSummary:
    total_paid_cents: int
    failed_count: int


def is_payable(invoice: Invoice) -> bool:
    return invoice.status in PAYABLE_STATUSES and (invoice.amount_due_cents or 0) > 0


def membership_price_cents(tier: str, interval: str) -> int | None:
    monthly, annual = MEMBERSHIP_PRICING[tier]
    return annual if interval == "annual" else monthly


def active_membership(s: "Session", user_id: int) -> PatientMembership | None:
    return (
        s.query(PatientMembership)
        .filter(PatientMembership.user_id == user_id)
        .filter(PatientMembership.status == "active")
        .order_by(PatientMembership.started_at.desc())
        .first()
    )


def list_membership_tiers(s: "Session", include_inactive: bool = False) -> list[MembershipTier]:
    q = s.query(MembershipTier)
    if not include_inactive:
        q = q.filter(MembershipTier.is_active.is_(True))
    return q.order_by(MembershipTier.sort_order.asc(), MembershipTier.name.asc()).all()


def _start_of_year(today: date) -> datetime:
    return datetime(today.year, 1, 1)


def billing_summary(s: "Session", patient: User, today: date | None = None) -> BillingSummary:
    from app.pms.modules.claims.models import InsuranceClaim

    today = today or date.today()
    open_invoices = (
        s.query(Invoice)
        .filter(Invoice.patient_id == patient.id)
        .filter(Invoice.status.in_(PAYABLE_STATUSES))
        .all()
    )
    outstanding = sum(inv.amount_due_cents or 0 for inv in open_invoices)
    due_dates = [inv.due_date for inv in open_invoices if inv.due_date]

    paid_ytd = (
        s.query(func.coalesce(func.sum(Invoice.amount_paid_cents), 0))
        .filter(Invoice.patient_id == patient.id)
        .filter(Invoice.status.in_(PAID_STATUSES))
        .filter(Invoice.paid_at >= _start_of_year(today))
        .scalar()
    )
    pending = (
        s.query(func.coalesce(func.sum(InsuranceClaim.billed_amount_cents), 0))
        .filter(InsuranceClaim.patient_id == patient.id)
        .filter(InsuranceClaim.status.in_(PENDING_CLAIM_STATUSES))
        .scalar()
    )
    return BillingSummary(
        outstanding_cents=int(outstanding),
        next_payment_due=min(due_dates) if due_dates else None,
        paid_this_year_cents=int(paid_ytd or 0),
        pending_reimbursements_cents=int(pending or 0),
    )


def recent_invoices(s: "Session", patient: User, limit: int = RECENT_LIMIT) -> list[Invoice]:
    return (
        s.query(Invoice)
        .filter(Invoice.patient_id == patient.id)
        .filter(Invoice.status != "draft")
        .order_by(Invoice.created_at.desc(), Invoice.id.desc())
        .limit(limit)
        .all()
    )


def recent_payments(s: "Session", patient: User, limit: int = RECENT_LIMIT) -> list[PaymentHistory]:
    return (
        s.query(PaymentHistory)
        .filter(PaymentHistory.user_id == patient.id)
        .order_by(PaymentHistory.created_at.desc(), PaymentHistory.id.desc())
        .limit(limit)
        .all()
    )


def recent_superbills(s: "Session", patient: User, limit: int = RECENT_LIMIT) -> list:
    from app.pms.modules.claims.models import Superbill

    return (
        s.query(Superbill)
        .filter(Superbill.patient_id == patient.id)
        .order_by(Superbill.created_at.desc(), Superbill.id.desc())
        .limit(limit)
        .all()
    )


def _date_bounds(q, column, date_from: date | None, date_to: date | None):
    if date_from:
        q = q.filter(column >= datetime.combine(date_from, time.min))
    if date_to:
        q = q.filter(column < datetime.combine(date_to + timedelta(days=1), time.min))
    return q


def list_invoices(
    s: "Session",
    patient: User,
    *,
    status: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
) -> list[Invoice]:
    q = s.query(Invoice).filter(Invoice.patient_id == patient.id).filter(Invoice.status != "draft")
    if status:
        q = q.filter(Invoice.status == status)
    q = _date_bounds(q, Invoice.created_at, date_from, date_to)
    return q.order_by(Invoice.created_at.desc(), Invoice.id.desc()).all()


def get_invoice_for_patient(s: "Session", patient: User, invoice_id: int) -> Invoice | None:
    inv = s.get(Invoice, invoice_id)
    if not inv or inv.patient_id != patient.id or inv.status == "draft":
        return None
    return inv


def invoice_summary(s: "Session", patient: User, today: date | None = None) -> InvoiceSummary:
    today = today or date.today()
    invoices = s.query(Invoice).filter(Invoice.patient_id == patient.id).all()
    outstanding = sum(inv.amount_due_cents or 0 for inv in invoices if inv.status in PAYABLE_STATUSES)
    start = _start_of_year(today)
    paid_ytd = sum(
        inv.amount_paid_cents or 0
        for inv in invoices
        if inv.status in PAID_STATUSES and inv.paid_at and inv.paid_at >= start
    )
    last_payment = (
        s.query(func.max(PaymentHistory.paid_at))
        .filter(PaymentHistory.user_id == patient.id)
        .filter(PaymentHistory.status == "succeeded")
        .scalar()
    )
    overdue = sum(1 for inv in invoices if inv.status == "overdue")
    return InvoiceSummary(
        outstanding_balance_cents=outstanding,
        total_paid_ytd_cents=paid_ytd,
        last_payment_date=last_payment,
        overdue_count=overdue,
    )


def payment_history(
    s: "Session",
    patient: User,
    *,
    status: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
) -> tuple[list[PaymentHistory], PaymentSummary]:
    q = s.query(PaymentHistory).filter(PaymentHistory.user_id == patient.id)
    if status:
        q = q.filter(PaymentHistory.status == status)
    q = _date_bounds(q, PaymentHistory.created_at, date_from, date_to)
    rows = q.order_by(PaymentHistory.created_at.desc(), PaymentHistory.id.desc()).all()
    summary = PaymentSummary(
        total_paid_cents=sum(p.amount_cents for p in rows if p.status == "succeeded"),
        failed_count=sum(1 for p in rows if p.status == "failed"),
    )
    return rows, summary


def generate_invoice_number(s: "Session", today: date | None = None) -> str:
    today = today or date.today()
    while True:
        number = f"INV-{today.strftime('%Y%m')}-{secrets.token_hex(3).upper()}"
        if not s.query(Invoice).filter(Invoice.invoice_number == number).one_or_none():
            return number


def create_invoice(s: "Session", payload: dict[str, Any], user: User) -> tuple[Invoice | None, list[ValidationError]]:
    """
    Build an invoice from service or ad-hoc lines. The patient's active
    membership discount is applied per line.
    """
    from app.pms.modules.encounters.models import Encounter

    data, errors = parse_payload(InvoiceCreate, payload)
    if errors:
        return None, errors

    encounter = None
    patient_id = data.patient_id
    if data.encounter_id is not None:
        encounter = s.get(Encounter, data.encounter_id)
        if not encounter:
            return None, [ValidationError("encounter_id", "Encounter not found.")]
        if patient_id is not None and patient_id != encounter.patient_id:
            return None, [ValidationError("patient_id", "Patient does not match the encounter.")]
        patient_id = encounter.patient_id
    patient = s.get(User, patient_id)
    if not patient or not patient.has_role("patient"):
        return None, [ValidationError("patient_id", "Patient not found.")]

    membership = active_membership(s, patient.id)
    discount_pct = membership.tier.discount_pct if membership else 0

    lines = []
    for i, item in enumerate(data.line_items):
        svc = None
        if item.service_id is not None:
            svc = s.get(ServiceCatalog, item.service_id)
            if not svc:
                return None, [ValidationError(f"line_items.{i}.service_id", "Service not found.")]
        unit = item.unit_price_cents if item.unit_price_cents is not None else svc.base_price_cents
        gross = unit * item.qty
        discount = round(gross * discount_pct / 100)
        lines.append(
            {
                "service_id": svc.id if svc else None,
                "name": svc.name if svc else item.description,
                "cpt_code": svc.cpt_code if svc else None,
                "description": item.description or (svc.description if svc else None),
                "qty": item.qty,
                "unit_price_cents": unit,
                "discount_cents": discount,
                "total_cents": gross - discount,
            }
        )

    subtotal = sum(line["unit_price_cents"] * line["qty"] for line in lines)
    discount_total = sum(line["discount_cents"] for line in lines)
    total = subtotal - discount_total
    now = datetime.utcnow()
    inv = Invoice(
        invoice_number=generate_invoice_number(s, now.date()),
        patient_id=patient.id,
        encounter_id=encounter.id if encounter else None,
        status="draft",
        subtotal_cents=subtotal,
        discount_cents=discount_total,
        tax_cents=0,
        total_cents=total,
        amount_paid_cents=0,
        amount_due_cents=total,
        membership_tier_applied=membership.tier.name if membership else None,
        line_items=lines,
        notes=data.notes,
        created_at=now,
        updated_at=now,
        created_by_user_id=user.id,
    )
    s.add(inv)
    s.flush()

    record_event(
        s,
        actor=user,
        action="invoice.create",
        entity_type="Invoice",
        entity_id=str(inv.id),
        metadata={
            "invoice_number": inv.invoice_number,
            "patient_id": patient.id,
            "total_cents": total,
            "membership_tier": inv.membership_tier_applied,
        },
    )
    return inv, []


def send_invoice(s: "Session", inv: Invoice, user: User) -> Invoice:
    if inv.status != "draft":
        raise ValueError("Only draft invoices can be sent.")
    now = datetime.utcnow()
    inv.status = "sent"
    inv.issued_at = now
    inv.due_date = now.date() + timedelta(days=PAYMENT_TERMS_DAYS)
    inv.updated_at = now
    create_for_user(
        s,
        inv.patient_id,
        title="New invoice",
        message=f"Invoice {inv.invoice_number} for ${inv.amount_due_cents / 100:,.2f} is due {inv.due_date.isoformat()}.",
        notification_type="billing",
        action_url=f"/patient/billing/invoices/{inv.id}",
        action_label="View invoice",
        related_entity_type="Invoice",
        related_entity_id=inv.id,
    )
    record_event(
        s,
        actor=user,
        action="invoice.send",
        entity_type="Invoice",
        entity_id=str(inv.id),
        metadata={"invoice_number": inv.invoice_number, "due_date": inv.due_date.isoformat()},
    )
    return inv


def void_invoice(s: "Session", inv: Invoice, user: User, reason: str | None = None) -> Invoice:
    if inv.status in ("paid", "void", "refunded"):
        raise ValueError(f"Cannot void an invoice that is {inv.status}.")
    if inv.amount_paid_cents:
        raise ValueError("Cannot void an invoice with payments applied.")
    old_status = inv.status
    inv.status = "void"
    inv.amount_due_cents = 0
    inv.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="invoice.void",
        entity_type="Invoice",
        entity_id=str(inv.id),
        reason=reason,
        metadata={"invoice_number": inv.invoice_number, "old_status": old_status},
    )
    return inv


def mark_overdue(s: "Session", today: date | None = None) -> int:
    today = today or date.today()
    rows = (
        s.query(Invoice)
        .filter(Invoice.status.in_(("sent", "partially_paid")))
        .filter(Invoice.due_date < today)
        .all()
    )
    for inv in rows:
        inv.status = "overdue"
        inv.updated_at = datetime.utcnow()
    if rows:
        record_event(
            s,
            actor=None,
            action="invoice.mark_overdue",
            entity_type="Invoice",
            metadata={"count": len(rows), "invoice_ids": [inv.id for inv in rows]},
        )
    return len(rows)


def apply_payment(
    s: "Session",
    inv: Invoice,
    *,
    amount_cents: int,
    payment_intent_id: str | None,
    currency: str = "usd",
    payment_method: str | None = "card",
    receipt_url: str | None = None,
    checkout_session_id: str | None = None,
    actor: User | None = None,
) -> PaymentHistory | None:
    """
    Record a successful payment against an invoice. Returns None when the
    payment intent was already applied.
    """
    if payment_intent_id:
        existing = (
            s.query(PaymentHistory)
            .filter(PaymentHistory.payment_intent_id == payment_intent_id)
            .filter(PaymentHistory.status == "succeeded")
            .first()
        )
        if existing:
            logger.info("Payment already applied payment_intent=%s invoice=%s", payment_intent_id, inv.id)
            return None

    now = datetime.utcnow()
    inv.amount_paid_cents = (inv.amount_paid_cents or 0) + amount_cents
    inv.amount_due_cents = max(0, (inv.total_cents or 0) - inv.amount_paid_cents)
    inv.status = "paid" if inv.amount_due_cents == 0 else "partially_paid"
    inv.paid_at = now
    inv.payment_intent_id = payment_intent_id or inv.payment_intent_id
    inv.checkout_session_id = checkout_session_id or inv.checkout_session_id
    inv.updated_at = now

    payment = PaymentHistory(
        user_id=inv.patient_id,
        invoice_id=inv.id,
        amount_cents=amount_cents,
        currency=currency,
        status="succeeded",
        description=f"Payment for {inv.invoice_number}",
        payment_method=payment_method,
        receipt_url=receipt_url,
        payment_intent_id=payment_intent_id,
        paid_at=now,
        created_at=now,
    )
    s.add(payment)
    s.flush()

    create_for_user(
        s,
        inv.patient_id,
        title="Payment received",
        message=f"We received ${amount_cents / 100:,.2f} for invoice {inv.invoice_number}.",
        notification_type="billing",
        action_url=f"/patient/billing/invoices/{inv.id}",
        action_label="View invoice",
        related_entity_type="Invoice",
        related_entity_id=inv.id,
    )
    record_event(
        s,
        actor=actor,
        action="invoice.payment",
        entity_type="Invoice",
        entity_id=str(inv.id),
        metadata={
            "invoice_number": inv.invoice_number,
            "amount_cents": amount_cents,
            "payment_intent_id": payment_intent_id,
            "status": inv.status,
        },
    )
    return payment


def list_all_invoices(s: "Session", *, status: str | None = None, q: str | None = None, limit: int = 200) -> list[Invoice]:
    query = s.query(Invoice)
    if status:
        query = query.filter(Invoice.status == status)
    if q:
        like = f"%{q}%"
        query = query.join(User, User.id == Invoice.patient_id).filter(
            (Invoice.invoice_number.ilike(like)) | (User.email.ilike(like)) | (User.last_name.ilike(like))
        )
    return query.order_by(Invoice.created_at.desc(), Invoice.id.desc()).limit(limit).all()
