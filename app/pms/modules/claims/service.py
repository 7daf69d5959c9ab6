from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from app.pms.audit import record_event
from app.pms.models import User
from app.pms.modules.claims.models import ClaimActivity, InsuranceClaim, InsurancePayer, Superbill
from app.pms.modules.claims.schemas import ClaimCreate, ClaimNote, ClaimStatusChange, PayerForm
from app.pms.modules.notifications.service import create_for_user
from app.pms.validation import ValidationError, dollars_to_cents, parse_payload

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.pms.modules.encounters.models import Encounter


CLAIM_STATUSES = ("draft", "submitted", "acknowledged", "pending", "denied", "partially_paid", "paid", "appealed")
PENDING_STATUSES = ("submitted", "acknowledged", "pending", "appealed")
SUPERBILL_STATUSES = ("generated", "submitted_to_insurance", "reimbursed", "denied", "pending_review")

STATUS_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "draft": ("submitted",),
    "submitted": ("acknowledged", "pending", "denied", "partially_paid", "paid"),
    "acknowledged": ("pending", "denied", "partially_paid", "paid"),
    "pending": ("denied", "partially_paid", "paid"),
    "denied": ("appealed",),
    "appealed": ("pending", "denied", "partially_paid", "paid"),
    "partially_paid": ("paid", "appealed"),
    "paid": (),
}

TELEHEALTH_POS = "02"
OFFICE_POS = "11"


@dataclass(frozen=True)
class ClaimsSummary:
    total_billed_cents: int
    total_paid_cents: int
    pending_amount_cents: int
    denial_rate: float
    total_claims: int
    pending_count: int
    paid_count: int
    denied_count: int


def _number(prefix: str) -> str:
    return f"{prefix}-{datetime.utcnow().strftime('%Y%m')}-{secrets.token_hex(3).upper()}"


def list_patient_claims(s: "Session", patient: User, status: str | None = None) -> list[InsuranceClaim]:
    q = s.query(InsuranceClaim).filter(InsuranceClaim.patient_id == patient.id)
    if status:
        q = q.filter(InsuranceClaim.status == status)
    return q.order_by(InsuranceClaim.created_at.desc(), InsuranceClaim.id.desc()).all()


def get_claim_detail(s: "Session", patient: User, claim_id: int) -> InsuranceClaim | None:
    claim = s.get(InsuranceClaim, claim_id)
    if not claim or claim.patient_id != patient.id:
        return None
    return claim


def claims_summary(s: "Session", patient: User) -> ClaimsSummary:
    claims = s.query(InsuranceClaim).filter(InsuranceClaim.patient_id == patient.id).all()
    denied = sum(1 for c in claims if c.status == "denied")
    paid = sum(1 for c in claims if c.status == "paid")
    partial = sum(1 for c in claims if c.status == "partially_paid")
    decided = denied + paid + partial
    pending = [c for c in claims if c.status in PENDING_STATUSES]
    return ClaimsSummary(
        total_billed_cents=sum(c.billed_amount_cents or 0 for c in claims),
        total_paid_cents=sum(c.paid_amount_cents or 0 for c in claims),
        pending_amount_cents=sum(c.billed_amount_cents or 0 for c in pending),
        denial_rate=round(denied / decided * 100, 1) if decided else 0.0,
        total_claims=len(claims),
        pending_count=len(pending),
        paid_count=paid + partial,
        denied_count=denied,
    )


def _activity(
    s: "Session",
    claim: InsuranceClaim,
    actor: User | None,
    activity_type: str,
    *,
    old_status: str | None = None,
    new_status: str | None = None,
    note: str | None = None,
) -> ClaimActivity:
    act = ClaimActivity(
        claim_id=claim.id,
        activity_type=activity_type,
        old_status=old_status,
        new_status=new_status,
        note=note,
        actor_user_id=actor.id if actor else None,
    )
    s.add(act)
    claim.activities.append(act)
    return act


def add_claim_note(s: "Session", patient: User, claim: InsuranceClaim, payload: dict[str, Any]) -> list[ValidationError]:
    data, errors = parse_payload(ClaimNote, payload)
    if errors:
        return errors
    _activity(s, claim, patient, "note", note=data.note)
    claim.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=patient,
        action="claim.note",
        entity_type="InsuranceClaim",
        entity_id=str(claim.id),
        metadata={"claim_number": claim.claim_number},
    )
    return []


def list_payers(s: "Session") -> list[InsurancePayer]:
    return s.query(InsurancePayer).filter(InsurancePayer.is_active.is_(True)).order_by(InsurancePayer.name.asc()).all()


def create_payer(s: "Session", payload: dict[str, Any], user: User) -> tuple[InsurancePayer | None, list[ValidationError]]:
    data, errors = parse_payload(PayerForm, payload)
    if errors:
        return None, errors
    if s.query(InsurancePayer).filter(InsurancePayer.name == data.name).one_or_none():
        return None, [ValidationError("name", "A payer with this name already exists.")]
    payer = InsurancePayer(**data.model_dump(), is_active=True)
    s.add(payer)
    s.flush()
    record_event(s, actor=user, action="payer.create", entity_type="InsurancePayer", entity_id=str(payer.id), metadata={"name": payer.name})
    return payer, []


def create_claim(s: "Session", payload: dict[str, Any], user: User) -> tuple[InsuranceClaim | None, list[ValidationError]]:
    from app.pms.modules.billing.models import Invoice

    data, errors = parse_payload(ClaimCreate, payload)
    if errors:
        return None, errors
    inv = s.get(Invoice, data.invoice_id)
    if not inv or inv.status == "void":
        return None, [ValidationError("invoice_id", "Invoice not found.")]
    payer = s.get(InsurancePayer, data.payer_id)
    if not payer:
        return None, [ValidationError("payer_id", "Payer not found.")]

    enc = inv.encounter
    now = datetime.utcnow()
    claim = InsuranceClaim(
        claim_number=_number("CLM"),
        patient_id=inv.patient_id,
        invoice_id=inv.id,
        encounter_id=inv.encounter_id,
        payer_id=payer.id,
        location_id=enc.location_id if enc else None,
        status="draft",
        billed_amount_cents=inv.total_cents,
        paid_amount_cents=0,
        service_date=(enc.check_in_time.date() if enc and enc.check_in_time else inv.created_at.date()),
        created_at=now,
        updated_at=now,
        created_by_user_id=user.id,
    )
    s.add(claim)
    s.flush()
    _activity(s, claim, user, "created", new_status="draft", note=data.notes)
    record_event(
        s,
        actor=user,
        action="claim.create",
        entity_type="InsuranceClaim",
        entity_id=str(claim.id),
        metadata={"claim_number": claim.claim_number, "invoice_id": inv.id, "payer": payer.name},
    )
    return claim, []


def change_claim_status(s: "Session", claim: InsuranceClaim, payload: dict[str, Any], user: User) -> InsuranceClaim:
    data, errors = parse_payload(ClaimStatusChange, payload)
    if errors:
        raise ValueError("; ".join(f"{e.field}: {e.message}" for e in errors))

    new_status = data.status
    allowed = STATUS_TRANSITIONS.get(claim.status, ())
    if new_status not in allowed:
        raise ValueError(f"Cannot move claim from {claim.status} to {new_status}.")

    errs: list[str] = []
    paid = dollars_to_cents(data.paid_amount)
    allowed_amount = dollars_to_cents(data.allowed_amount)
    if new_status in ("paid", "partially_paid") and paid is None:
        errs.append("Paid amount is required.")
    if paid is not None and paid < 0:
        errs.append("Paid amount cannot be negative.")
    if new_status == "denied" and not data.denial_reason:
        errs.append("Denial reason is required.")
    if errs:
        raise ValueError("; ".join(errs))

    now = datetime.utcnow()
    old_status = claim.status
    claim.status = new_status
    if new_status == "submitted":
        claim.submitted_at = now
    if paid is not None:
        claim.paid_amount_cents = paid
    if allowed_amount is not None:
        claim.allowed_amount_cents = allowed_amount
    if new_status in ("paid", "partially_paid"):
        claim.paid_at = now
    if new_status == "denied":
        claim.denial_reason = data.denial_reason
    if new_status == "appealed":
        claim.was_appealed = True
    claim.updated_at = now

    _activity(s, claim, user, "status_change", old_status=old_status, new_status=new_status, note=data.note or data.denial_reason)
    create_for_user(
        s,
        claim.patient_id,
        title="Claim updated",
        message=f"Claim {claim.claim_number} is now {new_status.replace('_', ' ')}.",
        notification_type="claim",
        priority="high" if new_status == "denied" else "normal",
        action_url=f"/patient/claims/{claim.id}",
        action_label="View claim",
        related_entity_type="InsuranceClaim",
        related_entity_id=claim.id,
    )
    record_event(
        s,
        actor=user,
        action="claim.status_change",
        entity_type="InsuranceClaim",
        entity_id=str(claim.id),
        metadata={
            "claim_number": claim.claim_number,
            "changes": {"status": {"old": old_status, "new": new_status}},
            "paid_amount_cents": claim.paid_amount_cents,
        },
    )
    return claim


def list_all_claims(s: "Session", status: str | None = None, limit: int = 200) -> list[InsuranceClaim]:
    q = s.query(InsuranceClaim)
    if status:
        q = q.filter(InsuranceClaim.status == status)
    return q.order_by(InsuranceClaim.updated_at.desc(), InsuranceClaim.id.desc()).limit(limit).all()


def generate_superbill(s: "Session", patient: User, enc: "Encounter") -> Superbill:
    from app.pms.modules.locations.models import ServiceCatalog

    if enc.patient_id != patient.id:
        raise LookupError("Encounter not found.")
    if enc.status != "completed":
        raise ValueError("A superbill is available once the visit is completed.")
    if s.query(Superbill).filter(Superbill.encounter_id == enc.id).one_or_none():
        raise ValueError("A superbill already exists for this visit.")

    lines = []
    for code in enc.procedure_codes or []:
        svc = (
            s.query(ServiceCatalog)
            .filter(ServiceCatalog.cpt_code == code)
            .order_by(ServiceCatalog.is_active.desc(), ServiceCatalog.id.asc())
            .first()
        )
        lines.append(
            {
                "cpt_code": code,
                "description": svc.name if svc else None,
                "charge_cents": svc.base_price_cents if svc else 0,
            }
        )

    sb = Superbill(
        superbill_number=_number("SB"),
        patient_id=patient.id,
        encounter_id=enc.id,
        physician_id=enc.physician_id,
        status="generated",
        date_of_service=enc.check_in_time.date() if enc.check_in_time else None,
        place_of_service=TELEHEALTH_POS if enc.is_telehealth else OFFICE_POS,
        diagnosis_codes=list(enc.diagnosis_codes or []),
        procedure_lines=lines,
        total_charges_cents=sum(line["charge_cents"] for line in lines),
    )
    s.add(sb)
    s.flush()
    record_event(
        s,
        actor=patient,
        action="superbill.generate",
        entity_type="Superbill",
        entity_id=str(sb.id),
        metadata={"encounter_id": enc.id, "superbill_number": sb.superbill_number, "total_charges_cents": sb.total_charges_cents},
    )
    return sb


def list_superbills(s: "Session", patient: User) -> list[Superbill]:
    return (
        s.query(Superbill)
        .filter(Superbill.patient_id == patient.id)
        .order_by(Superbill.created_at.desc(), Superbill.id.desc())
        .all()
    )


def get_superbill(s: "Session", patient: User, superbill_id: int) -> Superbill | None:
    sb = s.get(Superbill, superbill_id)
    if not sb or sb.patient_id != patient.id:
        return None
    return sb
