from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.pms.audit import record_event
from app.pms.models import User
from app.pms.modules.appointments.models import Appointment
from app.pms.modules.encounters.models import Encounter
from app.pms.modules.encounters.schemas import SoapNotes
from app.pms.validation import ValidationError, parse_payload

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


STATUSES = ("checked_in", "in_progress", "completed", "cancelled")
CLOSED_STATUSES = ("completed", "cancelled")


@dataclass(frozen=True)
class PatientSummary:
    patient: User
    last_visit: datetime | None
    visit_count: int


def list_patient_encounters(s: "Session", patient: User) -> list[Encounter]:
    return (
        s.query(Encounter)
        .filter(Encounter.patient_id == patient.id)
        .order_by(Encounter.check_in_time.desc(), Encounter.id.desc())
        .all()
    )


def get_encounter_for_patient(s: "Session", patient: User, encounter_id: int) -> Encounter | None:
    enc = s.get(Encounter, encounter_id)
    if not enc or enc.patient_id != patient.id:
        return None
    return enc


def list_physician_encounters(s: "Session", physician: User, status: str | None = None) -> list[Encounter]:
    q = s.query(Encounter).filter(Encounter.physician_id == physician.id)
    if status:
        q = q.filter(Encounter.status == status)
    return q.order_by(Encounter.check_in_time.desc(), Encounter.id.desc()).all()


def get_encounter_for_physician(s: "Session", physician: User, encounter_id: int) -> Encounter | None:
    enc = s.get(Encounter, encounter_id)
    if not enc:
        return None
    if enc.physician_id != physician.id and not physician.has_role("admin"):
        return None
    return enc


def update_encounter_notes(s: "Session", physician: User, enc: Encounter, payload: dict[str, Any]) -> list[ValidationError]:
    if enc.status in CLOSED_STATUSES:
        return [ValidationError("form", f"Encounter is {enc.status} and can no longer be edited.")]
    data, errors = parse_payload(SoapNotes, payload)
    if errors:
        return errors

    changed = []
    for field in ("subjective", "objective", "assessment", "plan", "visit_notes", "diagnosis_codes", "procedure_codes"):
        new = getattr(data, field)
        if field.endswith("_codes"):
            new = new or None
        if new != getattr(enc, field):
            changed.append(field)
            setattr(enc, field, new)
    old_status = enc.status
    if enc.status == "checked_in":
        enc.status = "in_progress"
    enc.updated_at = datetime.utcnow()

    record_event(
        s,
        actor=physician,
        action="encounter.document",
        entity_type="Encounter",
        entity_id=str(enc.id),
        # field names only, no clinical text in the audit trail
        metadata={"fields": changed, "old_status": old_status, "new_status": enc.status},
    )
    return []


def complete_encounter(s: "Session", physician: User, enc: Encounter) -> Encounter:
    if enc.status in CLOSED_STATUSES:
        raise ValueError(f"Encounter is already {enc.status}.")
    now = datetime.utcnow()
    old_status = enc.status
    enc.status = "completed"
    enc.check_out_time = now
    enc.updated_at = now
    if enc.appointment_id:
        appt = s.get(Appointment, enc.appointment_id)
        if appt and appt.status not in ("cancelled", "completed"):
            appt.status = "completed"
            appt.updated_at = now
    record_event(
        s,
        actor=physician,
        action="encounter.complete",
        entity_type="Encounter",
        entity_id=str(enc.id),
        metadata={"old_status": old_status, "appointment_id": enc.appointment_id},
    )
    return enc


def physician_patients(s: "Session", physician: User, q: str | None = None) -> list[PatientSummary]:
    """Distinct patients with an appointment with this physician, most recent visit first."""
    rows = (
        s.query(
            Appointment.patient_id,
            func.max(Appointment.scheduled_start),
            func.count(Appointment.id),
        )
        .filter(Appointment.physician_id == physician.id)
        .group_by(Appointment.patient_id)
        .all()
    )
    out = []
    for patient_id, last_visit, n in rows:
        patient = s.get(User, patient_id)
        if not patient:
            continue
        if q and q.lower() not in f"{patient.full_name} {patient.email}".lower():
            continue
        out.append(PatientSummary(patient=patient, last_visit=last_visit, visit_count=int(n)))
    out.sort(key=lambda p: p.last_visit or datetime.min, reverse=True)
    return out


def physician_can_see_patient(s: "Session", physician: User, patient_id: int) -> bool:
    if physician.has_role("admin"):
        return True
    return (
        s.query(Appointment.id)
        .filter(Appointment.physician_id == physician.id)
        .filter(Appointment.patient_id == patient_id)
        .first()
        is not None
    )


def patient_history_for_physician(s: "Session", physician: User, patient_id: int) -> dict[str, Any] | None:
    if not physician_can_see_patient(s, physician, patient_id):
        return None
    patient = s.get(User, patient_id)
    if not patient:
        return None
    from app.pms.modules.profiles.service import get_patient_profile

    appts = (
        s.query(Appointment)
        .filter(Appointment.patient_id == patient_id)
        .filter(Appointment.physician_id == physician.id)
        .order_by(Appointment.scheduled_start.desc())
        .all()
    )
    encounters = (
        s.query(Encounter)
        .filter(Encounter.patient_id == patient_id)
        .filter(Encounter.physician_id == physician.id)
        .order_by(Encounter.check_in_time.desc())
        .all()
    )
    return {
        "patient": patient,
        "profile": get_patient_profile(s, patient),
        "appointments": appts,
        "encounters": encounters,
    }


def completed_encounter_count(s: "Session", physician: User, since: date | None = None) -> int:
    q = (
        s.query(Encounter)
        .filter(Encounter.physician_id == physician.id)
        .filter(Encounter.status == "completed")
    )
    if since:
        q = q.filter(Encounter.check_out_time >= datetime.combine(since, datetime.min.time()))
    return q.count()
