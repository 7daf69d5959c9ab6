from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from app.pms.audit import record_event
from app.pms.models import User
from app.pms.modules.insurance.models import InsuranceVerification
from app.pms.modules.insurance.schemas import VerificationRequest, VerificationResult
from app.pms.modules.notifications.service import create_for_user
from app.pms.validation import ValidationError, dollars_to_cents, parse_date, parse_payload

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


STATUSES = ("pending", "verified", "failed", "expired")
DEFAULT_COINSURANCE_PCT = 40  # patient share when the plan does not say
DEFAULT_ALLOWED_RATIO = 0.7

BENEFIT_FIELDS = (
    "oon_deductible",
    "oon_deductible_met",
    "oon_oop_max",
    "oon_oop_met",
    "inn_deductible",
    "inn_deductible_met",
    "inn_oop_max",
    "inn_oop_met",
)


@dataclass(frozen=True)
class OonBenefitsSummary:
    verification_id: int
    payer_name: str
    deductible_cents: int
    deductible_met_cents: int
    remaining_deductible_cents: int
    deductible_met_pct: int
    oop_max_cents: int
    oop_met_cents: int
    remaining_oop_cents: int
    oop_met_pct: int
    coinsurance_pct: int


@dataclass(frozen=True)
class ReimbursementEstimate:
    cost_cents: int
    allowed_cents: int
    deductible_applied_cents: int
    after_deductible_cents: int
    coinsurance_pct: int
    insurance_pays_cents: int
    patient_responsibility_cents: int


def request_verification(
    s: "Session", patient: User, payload: dict[str, Any]
) -> tuple[InsuranceVerification | None, list[ValidationError]]:
    from app.pms.modules.staff.service import create_task

    data, errors = parse_payload(VerificationRequest, payload)
    if errors:
        return None, errors

    now = datetime.utcnow()
    v = InsuranceVerification(
        patient_id=patient.id,
        **data.model_dump(),
        status="pending",
        created_at=now,
        updated_at=now,
    )
    s.add(v)
    s.flush()

    create_task(
        s,
        {
            "title": f"Verify insurance for {patient.full_name}",
            "description": f"{data.payer_name} member {data.member_id}",
            "category": "insurance_verification",
            "priority": "normal",
            "patient_id": patient.id,
            "related_entity_type": "InsuranceVerification",
            "related_entity_id": str(v.id),
        },
        patient,
    )
    record_event(
        s,
        actor=patient,
        action="insurance.request_verification",
        entity_type="InsuranceVerification",
        entity_id=str(v.id),
        metadata={"payer_name": v.payer_name, "plan_type": v.plan_type},
    )
    return v, []


def list_verifications(s: "Session", patient: User) -> list[InsuranceVerification]:
    return (
        s.query(InsuranceVerification)
        .filter(InsuranceVerification.patient_id == patient.id)
        .order_by(InsuranceVerification.created_at.desc(), InsuranceVerification.id.desc())
        .all()
    )


def get_verification(s: "Session", patient: User, verification_id: int) -> InsuranceVerification | None:
    v = s.get(InsuranceVerification, verification_id)
    if not v or v.patient_id != patient.id:
        return None
    return v


def list_pending_verifications(s: "Session") -> list[InsuranceVerification]:
    return (
        s.query(InsuranceVerification)
        .filter(InsuranceVerification.status == "pending")
        .order_by(InsuranceVerification.created_at.asc())
        .all()
    )


def record_verification_result(
    s: "Session", v: InsuranceVerification, payload: dict[str, Any], user: User
) -> list[ValidationError]:
    data, errors = parse_payload(VerificationResult, payload)
    if errors:
        return errors

    cents: dict[str, int | None] = {}
    for field in BENEFIT_FIELDS:
        try:
            value = dollars_to_cents(getattr(data, field))
        except ValueError:
            return [ValidationError(field, "Must be a dollar amount.")]
        if value is not None and value < 0:
            return [ValidationError(field, "Cannot be negative.")]
        cents[f"{field}_cents"] = value
    effective = parse_date(data.effective_date)
    termination = parse_date(data.termination_date)
    if effective and termination and termination < effective:
        return [ValidationError("termination_date", "Termination date must be after the effective date.")]

    old_status = v.status
    now = datetime.utcnow()
    for field, value in cents.items():
        setattr(v, field, value)
    v.oon_coinsurance_pct = data.oon_coinsurance_pct
    v.inn_coinsurance_pct = data.inn_coinsurance_pct
    v.effective_date = effective
    v.termination_date = termination
    v.status = data.status
    v.verified_at = now
    v.verified_by_user_id = user.id
    v.updated_at = now
    if data.notes:
        v.notes = data.notes
    s.flush()

    create_for_user(
        s,
        v.patient_id,
        title="Insurance verification updated",
        message=f"Your {v.payer_name} coverage was marked {v.status}.",
        notification_type="insurance",
        priority="high" if v.status == "failed" else "normal",
        action_url=f"/patient/insurance/{v.id}",
        action_label="View details",
        related_entity_type="InsuranceVerification",
        related_entity_id=v.id,
    )
    record_event(
        s,
        actor=user,
        action="insurance.record_result",
        entity_type="InsuranceVerification",
        entity_id=str(v.id),
        metadata={"old_status": old_status, "new_status": v.status},
    )
    return []


def latest_verified(s: "Session", patient: User) -> InsuranceVerification | None:
    return (
        s.query(InsuranceVerification)
        .filter(InsuranceVerification.patient_id == patient.id)
        .filter(InsuranceVerification.status == "verified")
        .order_by(InsuranceVerification.verified_at.desc(), InsuranceVerification.id.desc())
        .first()
    )


def _met_pct(met: int, total: int) -> int:
    if total <= 0:
        return 0
    return min(100, round(met / total * 100))


def oon_benefits_summary(s: "Session", patient: User) -> OonBenefitsSummary | None:
    v = latest_verified(s, patient)
    if not v:
        return None
    deductible = v.oon_deductible_cents or 0
    deductible_met = v.oon_deductible_met_cents or 0
    oop_max = v.oon_oop_max_cents or 0
    oop_met = v.oon_oop_met_cents or 0
    return OonBenefitsSummary(
        verification_id=v.id,
        payer_name=v.payer_name,
        deductible_cents=deductible,
        deductible_met_cents=deductible_met,
        remaining_deductible_cents=max(0, deductible - deductible_met),
        deductible_met_pct=_met_pct(deductible_met, deductible),
        oop_max_cents=oop_max,
        oop_met_cents=oop_met,
        remaining_oop_cents=max(0, oop_max - oop_met),
        oop_met_pct=_met_pct(oop_met, oop_max),
        coinsurance_pct=v.oon_coinsurance_pct if v.oon_coinsurance_pct is not None else DEFAULT_COINSURANCE_PCT,
    )


def reimbursement_estimate(
    s: "Session",
    patient: User,
    cost_cents: int,
    allowed_cents: int | None = None,
) -> ReimbursementEstimate:
    if cost_cents < 0:
        raise ValueError("Cost cannot be negative.")
    summary = oon_benefits_summary(s, patient)
    remaining_deductible = summary.remaining_deductible_cents if summary else 0
    coinsurance = summary.coinsurance_pct if summary else DEFAULT_COINSURANCE_PCT

    allowed = allowed_cents if allowed_cents is not None else round(cost_cents * DEFAULT_ALLOWED_RATIO)
    applied = min(remaining_deductible, allowed)
    after = max(0, allowed - applied)
    insurance_pays = round(after * (100 - coinsurance) / 100)
    return ReimbursementEstimate(
        cost_cents=cost_cents,
        allowed_cents=allowed,
        deductible_applied_cents=applied,
        after_deductible_cents=after,
        coinsurance_pct=coinsurance,
        insurance_pays_cents=insurance_pays,
        patient_responsibility_cents=max(0, cost_cents - insurance_pays),
    )
