from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import TYPE_CHECKING, Any

from app.pms.audit import record_event
from app.pms.models import User
from app.pms.modules.appointments.models import Appointment
from app.pms.modules.encounters.models import Encounter
from app.pms.modules.notifications.service import create_for_user
from app.pms.modules.staff.models import StaffTask
from app.pms.modules.staff.schemas import CheckIn, StaffCancel, TaskCreate
from app.pms.validation import ValidationError, parse_date, parse_payload

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


TASK_STATUSES = ("pending", "in_progress", "completed", "cancelled")
CHECK_IN_STATUSES = ("scheduled", "confirmed")
TASK_LIST_LIMIT = 200


@dataclass(frozen=True)
class QueueEntry:
    appointment: Appointment
    encounter: Encounter | None
    check_in_time: datetime | None
    wait_minutes: int | None


@dataclass(frozen=True)
class StaffDashboard:
    queue: list[QueueEntry]
    checked_in: list[QueueEntry]
    metrics: dict[str, int]


def _day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


def todays_appointments(s: "Session", today: date | None = None, location_id: int | None = None) -> list[Appointment]:
    start, end = _day_bounds(today or date.today())
    q = (
        s.query(Appointment)
        .filter(Appointment.scheduled_start >= start)
        .filter(Appointment.scheduled_start < end)
    )
    if location_id:
        q = q.filter(Appointment.location_id == location_id)
    return q.order_by(Appointment.scheduled_start.asc()).all()


def staff_dashboard(
    s: "Session",
    today: date | None = None,
    now: datetime | None = None,
    location_id: int | None = None,
) -> StaffDashboard:
    now = now or datetime.utcnow()
    appts = todays_appointments(s, today or now.date(), location_id)
    encounters = {}
    if appts:
        for enc in s.query(Encounter).filter(Encounter.appointment_id.in_([a.id for a in appts])).all():
            encounters[enc.appointment_id] = enc

    queue = []
    for a in appts:
        enc = encounters.get(a.id)
        check_in = enc.check_in_time if enc else None
        wait = None
        if enc and enc.status == "checked_in" and check_in:
            wait = max(0, int((now - check_in).total_seconds() // 60))
        queue.append(QueueEntry(appointment=a, encounter=enc, check_in_time=check_in, wait_minutes=wait))
    checked_in = [e for e in queue if e.encounter and e.encounter.status == "checked_in"]

    pending_tasks = s.query(StaffTask).filter(StaffTask.status.in_(("pending", "in_progress"))).count()
    metrics = {
        "appointments_today": len(appts),
        "checked_in": len(checked_in),
        "no_show": sum(1 for a in appts if a.status == "no_show"),
        "cancelled": sum(1 for a in appts if a.status == "cancelled"),
        "confirmed": sum(1 for a in appts if a.status == "confirmed"),
        "pending_tasks": pending_tasks,
    }
    return StaffDashboard(queue=queue, checked_in=checked_in, metrics=metrics)


def scheduling_view(
    s: "Session",
    *,
    date_from: date | None = None,
    date_to: date | None = None,
    physician_id: int | None = None,
    location_id: int | None = None,
    status: str | None = None,
    limit: int = 500,
) -> list[Appointment]:
    q = s.query(Appointment)
    if date_from:
        q = q.filter(Appointment.scheduled_start >= datetime.combine(date_from, time.min))
    if date_to:
        q = q.filter(Appointment.scheduled_start < datetime.combine(date_to + timedelta(days=1), time.min))
    if physician_id:
        q = q.filter(Appointment.physician_id == physician_id)
    if location_id:
        q = q.filter(Appointment.location_id == location_id)
    if status:
        q = q.filter(Appointment.status == status)
    return q.order_by(Appointment.scheduled_start.asc()).limit(limit).all()


def _status_event(s: "Session", appt: Appointment, user: User, action: str, old_status: str, reason: str | None = None) -> None:
    record_event(
        s,
        actor=user,
        action=action,
        entity_type="Appointment",
        entity_id=str(appt.id),
        reason=reason,
        metadata={"changes": {"status": {"old": old_status, "new": appt.status}}},
    )


def confirm_appointment(s: "Session", appt: Appointment, user: User) -> Appointment:
    if appt.status != "scheduled":
        raise ValueError("Only scheduled appointments can be confirmed.")
    appt.status = "confirmed"
    appt.updated_at = datetime.utcnow()
    create_for_user(
        s,
        appt.patient_id,
        title="Appointment confirmed",
        message=f"Your {appt.title} on {appt.scheduled_start.strftime('%b %d, %Y at %H:%M')} is confirmed.",
        notification_type="appointment",
        action_url=f"/patient/appointments/{appt.id}",
        action_label="View appointment",
        related_entity_type="Appointment",
        related_entity_id=appt.id,
    )
    _status_event(s, appt, user, "appointment.confirm", "scheduled")
    return appt


def cancel_appointment_by_staff(s: "Session", appt: Appointment, user: User, payload: dict[str, Any]) -> Appointment:
    if appt.status in ("completed", "cancelled"):
        raise ValueError(f"Cannot cancel an appointment that is {appt.status}.")
    data, errors = parse_payload(StaffCancel, payload)
    if errors:
        raise ValueError("Cancellation reason is required (max 500 characters).")
    old_status = appt.status
    now = datetime.utcnow()
    appt.status = "cancelled"
    appt.cancelled_at = now
    appt.cancelled_by_user_id = user.id
    appt.cancellation_reason = data.reason
    appt.updated_at = now
    for user_id in (appt.patient_id, appt.physician_id):
        create_for_user(
            s,
            user_id,
            title="Appointment cancelled",
            message=f"{appt.title} on {appt.scheduled_start.strftime('%b %d, %Y at %H:%M')} was cancelled: {data.reason}",
            notification_type="appointment",
            priority="high",
            related_entity_type="Appointment",
            related_entity_id=appt.id,
        )
    _status_event(s, appt, user, "appointment.staff_cancel", old_status, reason=data.reason)
    return appt


def mark_no_show(s: "Session", appt: Appointment, user: User) -> Appointment:
    if appt.status not in CHECK_IN_STATUSES:
        raise ValueError("Only scheduled or confirmed appointments can be marked as no-show.")
    old_status = appt.status
    appt.status = "no_show"
    appt.updated_at = datetime.utcnow()
    _status_event(s, appt, user, "appointment.no_show", old_status)
    return appt


def check_in_patient(s: "Session", appt: Appointment, user: User, payload: dict[str, Any]) -> Encounter:
    if appt.status not in CHECK_IN_STATUSES:
        raise ValueError("Only scheduled or confirmed appointments can be checked in.")
    if s.query(Encounter).filter(Encounter.appointment_id == appt.id).first():
        raise ValueError("Patient is already checked in.")
    data, errors = parse_payload(CheckIn, payload)
    if errors:
        raise ValueError("; ".join(e.message for e in errors))

    now = datetime.utcnow()
    old_status = appt.status
    appt.status = "in_progress"
    appt.actual_start = now
    appt.updated_at = now
    enc = Encounter(
        appointment_id=appt.id,
        patient_id=appt.patient_id,
        physician_id=appt.physician_id,
        location_id=appt.location_id,
        status="checked_in",
        is_telehealth=appt.is_telehealth,
        check_in_time=now,
        chief_complaint=appt.reason_for_visit or appt.notes,
        visit_notes=data.notes,
        created_at=now,
        updated_at=now,
    )
    s.add(enc)
    s.flush()

    create_for_user(
        s,
        appt.physician_id,
        title="Patient checked in",
        message=f"{appt.patient.full_name if appt.patient else 'Patient'} is checked in for {appt.title}.",
        notification_type="appointment",
        action_url=f"/physician/encounters/{enc.id}",
        action_label="Open encounter",
        related_entity_type="Encounter",
        related_entity_id=enc.id,
    )
    _status_event(s, appt, user, "appointment.check_in", old_status)
    record_event(
        s,
        actor=user,
        action="encounter.create",
        entity_type="Encounter",
        entity_id=str(enc.id),
        metadata={"appointment_id": appt.id, "insurance_confirmed": data.insurance_confirmed},
    )
    return enc


def list_tasks(
    s: "Session",
    *,
    status: str | None = None,
    category: str | None = None,
    priority: str | None = None,
    assigned_to_user_id: int | None = None,
) -> list[StaffTask]:
    q = s.query(StaffTask)
    if status:
        q = q.filter(StaffTask.status == status)
    if category:
        q = q.filter(StaffTask.category == category)
    if priority:
        q = q.filter(StaffTask.priority == priority)
    if assigned_to_user_id:
        q = q.filter(StaffTask.assigned_to_user_id == assigned_to_user_id)
    return q.order_by(StaffTask.created_at.desc(), StaffTask.id.desc()).limit(TASK_LIST_LIMIT).all()


def create_task(s: "Session", payload: dict[str, Any], user: User) -> tuple[StaffTask | None, list[ValidationError]]:
    data, errors = parse_payload(TaskCreate, payload)
    if errors:
        return None, errors
    now = datetime.utcnow()
    values = data.model_dump()
    values["due_date"] = parse_date(data.due_date)
    task = StaffTask(**values, status="pending", created_at=now, updated_at=now, created_by_user_id=user.id)
    s.add(task)
    s.flush()
    record_event(
        s,
        actor=user,
        action="task.create",
        entity_type="StaffTask",
        entity_id=str(task.id),
        metadata={"title": task.title, "category": task.category, "priority": task.priority},
    )
    return task, []


def complete_task(s: "Session", task: StaffTask, user: User) -> StaffTask:
    if task.status == "completed":
        raise ValueError("Task is already completed.")
    if task.status == "cancelled":
        raise ValueError("Cannot complete a cancelled task.")
    now = datetime.utcnow()
    old_status = task.status
    task.status = "completed"
    task.completed_at = now
    task.completed_by_user_id = user.id
    task.updated_at = now
    record_event(
        s,
        actor=user,
        action="task.complete",
        entity_type="StaffTask",
        entity_id=str(task.id),
        metadata={"title": task.title, "old_status": old_status},
    )
    return task
