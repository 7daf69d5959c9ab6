from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.pms.audit import record_event
from app.pms.models import User
from app.pms.modules.notifications.service import create_for_user
from app.pms.modules.telemedicine.models import TelemedicineMessage, TelemedicineSession
from app.pms.modules.telemedicine.schemas import CancelSession, MessageInput, SessionRequest, StatusUpdate
from app.pms.validation import ValidationError, parse_payload

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


OPEN_STATUSES = ("waiting_room", "in_progress")
CLOSED_STATUSES = ("completed", "cancelled")
UPCOMING_STATUSES = ("scheduled", "waiting_room")
STAFF_ROLES = ("physician", "staff", "admin")


@dataclass(frozen=True)
class TelemedicineStats:
    total: int
    completed: int
    completion_rate: float
    average_duration_minutes: float
    pending_count: int
    per_physician: list[dict[str, Any]]


def parse_start(value: str | None) -> datetime | None:
    """Accepts 'YYYY-MM-DDTHH:MM' (datetime-local) or a full ISO timestamp."""
    raw = (value or "").strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1]
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError:
        return None
    return dt.replace(tzinfo=None) if dt.tzinfo else dt


def request_session(
    s: "Session", patient: User, payload: dict[str, Any]
) -> tuple[TelemedicineSession | None, list[ValidationError]]:
    data, errors = parse_payload(SessionRequest, payload)
    if errors:
        return None, errors
    physician = s.get(User, data.physician_id)
    if not physician or not physician.is_active or not physician.has_role("physician"):
        return None, [ValidationError("physician_id", "Physician not found.")]
    start = parse_start(data.scheduled_start)
    if start is None:
        return None, [ValidationError("scheduled_start", "Start time must be a valid date and time.")]

    now = datetime.utcnow()
    ts = TelemedicineSession(
        patient_id=patient.id,
        physician_id=physician.id,
        session_type=data.session_type,
        status="scheduled",
        scheduled_start=start,
        duration_minutes=data.duration_minutes,
        chief_complaint=data.chief_complaint,
        patient_state=data.patient_state,
        created_at=now,
        updated_at=now,
    )
    s.add(ts)
    s.flush()

    create_for_user(
        s,
        physician.id,
        title="Telemedicine request",
        message=f"{patient.full_name} requested a {data.session_type.replace('_', ' ')} on {start.strftime('%b %d, %Y at %H:%M')}.",
        notification_type="telemedicine",
        action_url=f"/physician/telemedicine/{ts.id}",
        action_label="Open session",
        related_entity_type="TelemedicineSession",
        related_entity_id=ts.id,
    )
    record_event(
        s,
        actor=patient,
        action="telemedicine.request",
        entity_type="TelemedicineSession",
        entity_id=str(ts.id),
        metadata={"physician_id": physician.id, "session_type": ts.session_type, "scheduled_start": start.isoformat()},
    )
    return ts, []


def _apply_filters(q, *, status=None, session_type=None, date_from: date | None = None, date_to: date | None = None):
    if status:
        q = q.filter(TelemedicineSession.status == status)
    if session_type:
        q = q.filter(TelemedicineSession.session_type == session_type)
    if date_from:
        q = q.filter(TelemedicineSession.scheduled_start >= datetime.combine(date_from, time.min))
    if date_to:
        q = q.filter(TelemedicineSession.scheduled_start < datetime.combine(date_to + timedelta(days=1), time.min))
    return q


def list_patient_sessions(s: "Session", patient: User, **filters) -> list[TelemedicineSession]:
    q = s.query(TelemedicineSession).filter(TelemedicineSession.patient_id == patient.id)
    q = _apply_filters(q, **filters)
    return q.order_by(TelemedicineSession.scheduled_start.desc()).all()


def list_physician_sessions(s: "Session", physician: User, **filters) -> list[TelemedicineSession]:
    q = s.query(TelemedicineSession).filter(TelemedicineSession.physician_id == physician.id)
    q = _apply_filters(q, **filters)
    return q.order_by(TelemedicineSession.scheduled_start.asc()).all()


def upcoming_sessions(s: "Session", user: User, limit: int = 5, now: datetime | None = None) -> list[TelemedicineSession]:
    now = now or datetime.utcnow()
    column = TelemedicineSession.physician_id if user.primary_role == "physician" else TelemedicineSession.patient_id
    return (
        s.query(TelemedicineSession)
        .filter(column == user.id)
        .filter(TelemedicineSession.status.in_(UPCOMING_STATUSES))
        .filter(TelemedicineSession.scheduled_start >= now - timedelta(hours=1))
        .order_by(TelemedicineSession.scheduled_start.asc())
        .limit(limit)
        .all()
    )


def can_view(user: User, ts: TelemedicineSession) -> bool:
    return user.id in (ts.patient_id, ts.physician_id) or user.has_role("staff", "admin")


def get_session_detail(s: "Session", user: User, session_id: int) -> TelemedicineSession | None:
    ts = s.get(TelemedicineSession, session_id)
    if not ts or not can_view(user, ts):
        return None
    return ts


def join_waiting_room(s: "Session", patient: User, ts: TelemedicineSession, consent: bool) -> TelemedicineSession:
    if ts.patient_id != patient.id:
        raise LookupError("Session not found.")
    if ts.status != "scheduled":
        raise ValueError(f"Cannot join the waiting room of a session that is {ts.status.replace('_', ' ')}.")
    if not consent:
        raise ValueError("Telehealth consent is required to join.")
    now = datetime.utcnow()
    ts.status = "waiting_room"
    ts.consent_given = True
    ts.consent_at = now
    ts.updated_at = now
    create_for_user(
        s,
        ts.physician_id,
        title="Patient in waiting room",
        message=f"{patient.full_name} is waiting for the session.",
        notification_type="telemedicine",
        priority="high",
        action_url=f"/physician/telemedicine/{ts.id}",
        action_label="Start session",
        related_entity_type="TelemedicineSession",
        related_entity_id=ts.id,
    )
    record_event(s, actor=patient, action="telemedicine.join", entity_type="TelemedicineSession", entity_id=str(ts.id))
    return ts


def update_session_status(s: "Session", actor: User, ts: TelemedicineSession, payload: dict[str, Any]) -> TelemedicineSession:
    if not actor.has_role(*STAFF_ROLES):
        raise PermissionError("Only physicians and staff can change session status.")
    if actor.primary_role == "physician" and ts.physician_id != actor.id:
        raise LookupError("Session not found.")
    data, errors = parse_payload(StatusUpdate, payload)
    if errors:
        raise ValueError("; ".join(f"{e.field}: {e.message}" for e in errors))

    now = datetime.utcnow()
    old_status = ts.status
    ts.status = data.status
    if data.status == "in_progress" and not ts.actual_start:
        ts.actual_start = now
    if data.status == "completed":
        ts.actual_end = now
        if not ts.actual_start:
            ts.actual_start = now
    if data.clinical_notes is not None:
        ts.clinical_notes = data.clinical_notes
    if data.follow_up_instructions is not None:
        ts.follow_up_instructions = data.follow_up_instructions
    ts.updated_at = now

    if old_status != ts.status:
        create_for_user(
            s,
            ts.patient_id,
            title="Telemedicine session updated",
            message=f"Your session is now {ts.status.replace('_', ' ')}.",
            notification_type="telemedicine",
            action_url=f"/patient/telemedicine/{ts.id}",
            action_label="Open session",
            related_entity_type="TelemedicineSession",
            related_entity_id=ts.id,
        )
    record_event(
        s,
        actor=actor,
        action="telemedicine.status_change",
        entity_type="TelemedicineSession",
        entity_id=str(ts.id),
        metadata={"changes": {"status": {"old": old_status, "new": ts.status}}},
    )
    return ts


def send_message(s: "Session", actor: User, ts: TelemedicineSession, payload: dict[str, Any]) -> TelemedicineMessage:
    if not can_view(actor, ts):
        raise LookupError("Session not found.")
    if ts.status not in OPEN_STATUSES:
        raise ValueError("Messages can only be sent while the session is open.")
    data, errors = parse_payload(MessageInput, payload)
    if errors:
        raise ValueError("; ".join(e.message for e in errors))
    msg = TelemedicineMessage(
        session_id=ts.id,
        sender_id=actor.id,
        message_type=data.message_type,
        content=data.content,
    )
    s.add(msg)
    s.flush()
    return msg


def end_session(s: "Session", actor: User, ts: TelemedicineSession) -> TelemedicineSession:
    if ts.status in CLOSED_STATUSES:
        raise ValueError(f"Session is already {ts.status}.")
    if ts.status not in OPEN_STATUSES:
        raise ValueError("Only an open session can be ended.")
    return update_session_status(s, actor, ts, {"status": "completed"})


def list_all_sessions(s: "Session", *, physician_id: int | None = None, limit: int = 200, **filters) -> list[TelemedicineSession]:
    q = _apply_filters(s.query(TelemedicineSession), **filters)
    if physician_id:
        q = q.filter(TelemedicineSession.physician_id == physician_id)
    return q.order_by(TelemedicineSession.scheduled_start.desc()).limit(limit).all()


def pending_session_requests(s: "Session") -> list[TelemedicineSession]:
    return (
        s.query(TelemedicineSession)
        .filter(TelemedicineSession.status == "waiting_room")
        .order_by(TelemedicineSession.scheduled_start.asc())
        .all()
    )


def telemedicine_stats(s: "Session", date_from: date | None = None, date_to: date | None = None) -> TelemedicineStats:
    rows = _apply_filters(s.query(TelemedicineSession), date_from=date_from, date_to=date_to).all()
    total = len(rows)
    completed = [r for r in rows if r.status == "completed"]
    durations = [r.actual_duration_minutes for r in completed if r.actual_duration_minutes is not None]
    pending = sum(1 for r in rows if r.status == "waiting_room")

    per: dict[int, dict[str, Any]] = {}
    for r in rows:
        entry = per.setdefault(
            r.physician_id,
            {"physician_id": r.physician_id, "name": r.physician.full_name if r.physician else "", "total": 0, "completed": 0},
        )
        entry["total"] += 1
        if r.status == "completed":
            entry["completed"] += 1
    return TelemedicineStats(
        total=total,
        completed=len(completed),
        completion_rate=round(len(completed) / total * 100, 1) if total else 0.0,
        average_duration_minutes=round(sum(durations) / len(durations), 1) if durations else 0.0,
        pending_count=pending,
        per_physician=sorted(per.values(), key=lambda e: e["total"], reverse=True),
    )


def approve_session(s: "Session", actor: User, ts: TelemedicineSession) -> TelemedicineSession:
    if ts.status != "waiting_room":
        raise ValueError("Only sessions in the waiting room can be approved.")
    now = datetime.utcnow()
    ts.status = "in_progress"
    ts.actual_start = ts.actual_start or now
    ts.updated_at = now
    record_event(
        s,
        actor=actor,
        action="telemedicine.approve",
        entity_type="TelemedicineSession",
        entity_id=str(ts.id),
        metadata={"changes": {"status": {"old": "waiting_room", "new": "in_progress"}}},
    )
    return ts


def cancel_session(s: "Session", actor: User, ts: TelemedicineSession, payload: dict[str, Any]) -> TelemedicineSession:
    if ts.status in CLOSED_STATUSES:
        raise ValueError(f"Session is already {ts.status}.")
    data, errors = parse_payload(CancelSession, payload)
    if errors:
        raise ValueError("Cancellation reason is required (max 500 characters).")
    old_status = ts.status
    ts.status = "cancelled"
    ts.cancellation_reason = data.reason
    ts.updated_at = datetime.utcnow()
    for user_id in (ts.patient_id, ts.physician_id):
        create_for_user(
            s,
            user_id,
            title="Telemedicine session cancelled",
            message=f"The session on {ts.scheduled_start.strftime('%b %d, %Y at %H:%M')} was cancelled: {data.reason}",
            notification_type="telemedicine",
            priority="high",
            related_entity_type="TelemedicineSession",
            related_entity_id=ts.id,
        )
    record_event(
        s,
        actor=actor,
        action="telemedicine.cancel",
        entity_type="TelemedicineSession",
        entity_id=str(ts.id),
        reason=data.reason,
        metadata={"old_status": old_status},
    )
    return ts


def session_counts_by_status(s: "Session") -> dict[str, int]:
    rows = s.query(TelemedicineSession.status, func.count(TelemedicineSession.id)).group_by(TelemedicineSession.status).all()
    return {status: int(n) for status, n in rows}
