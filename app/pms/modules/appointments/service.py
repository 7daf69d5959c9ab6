from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import TYPE_CHECKING, Any

from app.pms.audit import record_event
from app.pms.models import User
from app.pms.modules.appointments.models import Appointment
from app.pms.modules.appointments.schemas import AppointmentBooking
from app.pms.modules.locations.models import Location, ProviderLocation, ProviderService, ServiceCatalog
from app.pms.modules.notifications.service import create_for_user
from app.pms.modules.profiles.models import PhysicianProfile
from app.pms.validation import ValidationError, parse_payload

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


STATUSES = ("scheduled", "confirmed", "in_progress", "completed", "cancelled", "no_show")
ACTIVE_STATUSES = ("scheduled", "confirmed", "in_progress")
UPCOMING_STATUSES = ("scheduled", "confirmed")
PAST_STATUSES = ("completed", "cancelled", "no_show")
CANCELLABLE_STATUSES = ("scheduled", "confirmed")

SLOT_MINUTES = 30
DAY_START = time(9, 0)
LAST_SLOT = time(16, 30)
DEFAULT_DURATION = 30


@dataclass(frozen=True)
class TimeSlot:
    time: str  # HH:MM
    start: datetime
    available: bool


def list_patient_appointments(s: "Session", patient: User, view: str = "upcoming", now: datetime | None = None) -> list[Appointment]:
    now = now or datetime.utcnow()
    q = s.query(Appointment).filter(Appointment.patient_id == patient.id)
    if view == "past":
        q = q.filter((Appointment.scheduled_start < now) | (Appointment.status.in_(PAST_STATUSES)))
        return q.order_by(Appointment.scheduled_start.desc()).all()
    q = q.filter(Appointment.scheduled_start >= now).filter(Appointment.status.in_(UPCOMING_STATUSES))
    return q.order_by(Appointment.scheduled_start.asc()).all()


def get_appointment_for_user(s: "Session", appointment_id: int, user: User) -> Appointment | None:
    """Visible to the patient, the physician, staff and admins. None otherwise."""
    appt = s.get(Appointment, appointment_id)
    if not appt:
        return None
    if user.has_role("admin", "staff"):
        return appt
    if appt.patient_id == user.id or appt.physician_id == user.id:
        return appt
    return None


def booking_locations(s: "Session") -> list[Location]:
    rows = (
        s.query(Location)
        .filter(Location.is_active.is_(True))
        .filter(Location.location_type.in_(("hub", "spoke")))
        .all()
    )
    # hub before spoke
    return sorted(rows, key=lambda loc: (0 if loc.location_type == "hub" else 1, loc.name))


def _location_physician_ids(s: "Session", location_id: int) -> set[int]:
    return {
        pid
        for (pid,) in s.query(ProviderLocation.physician_id).filter(ProviderLocation.location_id == location_id).all()
    }


def available_services(s: "Session", location_id: int | None) -> list[ServiceCatalog]:
    active = (
        s.query(ServiceCatalog)
        .filter(ServiceCatalog.is_active.is_(True))
        .order_by(ServiceCatalog.sort_order.asc(), ServiceCatalog.name.asc())
    )
    if not location_id:
        return active.all()
    physician_ids = _location_physician_ids(s, location_id)
    if not physician_ids:
        return active.all()
    offered = {
        sid
        for (sid,) in s.query(ProviderService.service_id).filter(ProviderService.physician_id.in_(physician_ids)).all()
    }
    if not offered:
        return active.all()
    return [svc for svc in active.all() if svc.id in offered]


def _bookable_physicians(s: "Session") -> list[PhysicianProfile]:
    return (
        s.query(PhysicianProfile)
        .join(User, User.id == PhysicianProfile.user_id)
        .filter(User.is_active.is_(True))
        .filter(PhysicianProfile.is_verified.is_(True))
        .filter(PhysicianProfile.accepting_new_patients.is_(True))
        .order_by(User.last_name.asc(), User.first_name.asc())
        .all()
    )


def available_providers(s: "Session", service_id: int | None, location_id: int | None) -> list[PhysicianProfile]:
    """
    Verified physicians accepting new patients, narrowed to those who offer the
    service and practice at the location. A filter with no matching links at
    all is skipped rather than returning nobody.
    """
    providers = _bookable_physicians(s)
    if service_id:
        offering = {
            pid
            for (pid,) in s.query(ProviderService.physician_id).filter(ProviderService.service_id == service_id).all()
        }
        if offering:
            providers = [p for p in providers if p.user_id in offering]
    if location_id:
        at_location = _location_physician_ids(s, location_id)
        if at_location:
            providers = [p for p in providers if p.user_id in at_location]
    return providers


def _conflicts(
    s: "Session",
    physician_id: int,
    start: datetime,
    end: datetime,
    location_id: int | None = None,
) -> list[Appointment]:
    q = (
        s.query(Appointment)
        .filter(Appointment.physician_id == physician_id)
        .filter(Appointment.status.in_(ACTIVE_STATUSES))
        .filter(Appointment.scheduled_start < end)
        .filter(Appointment.scheduled_end > start)
    )
    if location_id:
        q = q.filter(Appointment.location_id == location_id)
    return q.all()


def slot_starts(day: date) -> list[datetime]:
    starts = []
    cur = datetime.combine(day, DAY_START)
    last = datetime.combine(day, LAST_SLOT)
    while cur <= last:
        starts.append(cur)
        cur += timedelta(minutes=SLOT_MINUTES)
    return starts


def available_time_slots(
    s: "Session",
    provider_id: int,
    day: date,
    location_id: int | None = None,
    now: datetime | None = None,
) -> list[TimeSlot]:
    now = now or datetime.utcnow()
    day_start = datetime.combine(day, time.min)
    booked = _conflicts(s, provider_id, day_start, day_start + timedelta(days=1), location_id)
    slots = []
    for start in slot_starts(day):
        end = start + timedelta(minutes=SLOT_MINUTES)
        taken = any(a.scheduled_start < end and a.scheduled_end > start for a in booked)
        slots.append(TimeSlot(time=start.strftime("%H:%M"), start=start, available=not taken and start > now))
    return slots


def create_appointment(
    s: "Session",
    patient: User,
    payload: dict[str, Any],
    now: datetime | None = None,
) -> tuple[Appointment | None, list[ValidationError]]:
    now = now or datetime.utcnow()
    data, errors = parse_payload(AppointmentBooking, payload)
    if errors:
        return None, errors

    service = s.get(ServiceCatalog, data.service_id)
    if not service or not service.is_active:
        return None, [ValidationError("service_id", "Service not found.")]
    provider = s.get(User, data.provider_id)
    if not provider or not provider.is_active or not provider.has_role("physician"):
        return None, [ValidationError("provider_id", "Provider not found.")]
    location = None
    if data.location_id:
        location = s.get(Location, data.location_id)
        if not location or not location.is_active:
            return None, [ValidationError("location_id", "Location not found.")]

    try:
        day = date.fromisoformat(data.appointment_date)
    except ValueError:
        return None, [ValidationError("appointment_date", "Date must be YYYY-MM-DD.")]
    if day < now.date():
        return None, [ValidationError("appointment_date", "Appointment date cannot be in the past.")]

    hh, mm = (int(p) for p in data.appointment_time.split(":"))
    start = datetime.combine(day, time(hh, mm))
    duration = service.duration_minutes or DEFAULT_DURATION
    end = start + timedelta(minutes=duration)
    if start <= now:
        return None, [ValidationError("appointment_time", "This time slot has already passed.")]
    if start not in slot_starts(day):
        return None, [ValidationError("appointment_time", "Please choose one of the offered time slots.")]
    if _conflicts(s, provider.id, start, end):
        return None, [ValidationError("appointment_time", "This time slot is no longer available.")]

    appt = Appointment(
        patient_id=patient.id,
        physician_id=provider.id,
        location_id=location.id if location else None,
        service_id=service.id,
        appointment_type=service.category or "consultation",
        title=service.name,
        scheduled_start=start,
        scheduled_end=end,
        status="scheduled",
        is_telehealth=bool(service.is_telehealth_eligible),
        reason_for_visit=data.notes,
        notes=data.notes,
        created_at=now,
        updated_at=now,
        created_by_user_id=patient.id,
    )
    s.add(appt)
    s.flush()

    when = start.strftime("%b %d, %Y at %H:%M")
    create_for_user(
        s,
        patient.id,
        title="Appointment booked",
        message=f"{service.name} with {provider.full_name} on {when}.",
        notification_type="appointment",
        action_url=f"/patient/appointments/{appt.id}",
        action_label="View appointment",
        related_entity_type="Appointment",
        related_entity_id=appt.id,
    )
    create_for_user(
        s,
        provider.id,
        title="New appointment",
        message=f"{patient.full_name} booked {service.name} on {when}.",
        notification_type="appointment",
        action_url="/physician/schedule",
        action_label="View schedule",
        related_entity_type="Appointment",
        related_entity_id=appt.id,
    )
    record_event(
        s,
        actor=patient,
        action="appointment.create",
        entity_type="Appointment",
        entity_id=str(appt.id),
        metadata={
            "physician_id": provider.id,
            "service_id": service.id,
            "location_id": appt.location_id,
            "scheduled_start": start.isoformat(),
        },
    )
    return appt, []


def _cancel(s: "Session", appt: Appointment, user: User, reason: str, action: str) -> Appointment:
    old_status = appt.status
    now = datetime.utcnow()
    appt.status = "cancelled"
    appt.cancelled_at = now
    appt.cancelled_by_user_id = user.id
    appt.cancellation_reason = reason
    appt.updated_at = now
    record_event(
        s,
        actor=user,
        action=action,
        entity_type="Appointment",
        entity_id=str(appt.id),
        reason=reason,
        metadata={"old_status": old_status},
    )
    return appt


def cancel_appointment(s: "Session", patient: User, appointment_id: int, reason: str | None = None) -> Appointment:
    appt = s.get(Appointment, appointment_id)
    if not appt or appt.patient_id != patient.id:
        raise LookupError("Appointment not found.")
    if appt.status not in CANCELLABLE_STATUSES:
        raise ValueError(f"Cannot cancel an appointment that is {appt.status.replace('_', ' ')}.")
    reason = (reason or "").strip()[:500] or "Cancelled by patient"
    _cancel(s, appt, patient, reason, "appointment.cancel")
    create_for_user(
        s,
        appt.physician_id,
        title="Appointment cancelled",
        message=f"{patient.full_name} cancelled {appt.title} on {appt.scheduled_start.strftime('%b %d, %Y at %H:%M')}.",
        notification_type="appointment",
        related_entity_type="Appointment",
        related_entity_id=appt.id,
    )
    return appt


def physician_schedule(
    s: "Session",
    physician: User,
    date_from: date | None = None,
    date_to: date | None = None,
    status: str | None = None,
) -> list[Appointment]:
    q = s.query(Appointment).filter(Appointment.physician_id == physician.id)
    if date_from:
        q = q.filter(Appointment.scheduled_start >= datetime.combine(date_from, time.min))
    if date_to:
        q = q.filter(Appointment.scheduled_start < datetime.combine(date_to + timedelta(days=1), time.min))
    if status:
        q = q.filter(Appointment.status == status)
    return q.order_by(Appointment.scheduled_start.asc()).all()
