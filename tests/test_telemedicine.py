from datetime import datetime, timedelta

import pytest

from app.pms.db import session_scope
from app.pms.models import AuditEvent, User
from app.pms.modules.notifications.models import Notification
from app.pms.modules.telemedicine.models import TelemedicineMessage, TelemedicineSession
from app.pms.modules.telemedicine.service import (
    approve_session,
    cancel_session,
    end_session,
    join_waiting_room,
    parse_start,
    request_session,
    send_message,
    telemedicine_stats,
    update_session_status,
)
from conftest import csrf, login, make_user


def _start(days: int = 1) -> str:
    return (datetime.utcnow() + timedelta(days=days)).strftime("%Y-%m-%dT10:00")


def _request(s, ids, **overrides):
    payload = {
        "physician_id": ids.physician,
        "session_type": "post_op_followup",
        "scheduled_start": _start(),
        "duration_minutes": "30",
        "chief_complaint": "Incision check",
        **overrides,
    }
    ts, errors = request_session(s, s.get(User, ids.patient), payload)
    assert errors == []
    return ts


def test_parse_start_formats():
    assert parse_start("2026-11-02T09:30") == datetime(2026, 11, 2, 9, 30)
    assert parse_start("2026-11-02T09:30:00Z") == datetime(2026, 11, 2, 9, 30)
    assert parse_start("2026-11-02T09:30:00+00:00").tzinfo is None
    assert parse_start("next tuesday") is None
    assert parse_start("") is None


def test_request_session_notifies_physician(app, seeded):
    with session_scope(app) as s:
        ts = _request(s, seeded)
        assert ts.status == "scheduled"
        assert ts.duration_minutes == 30
        ts_id = ts.id

    with session_scope(app) as s:
        note = s.query(Notification).filter(Notification.user_id == seeded.physician).one()
        assert note.title == "Telemedicine request"
        assert note.action_url == f"/physician/telemedicine/{ts_id}"


def test_request_session_validation(app, seeded):
    with session_scope(app) as s:
        patient = s.get(User, seeded.patient)
        base = {"physician_id": seeded.physician, "scheduled_start": _start()}
        _, errors = request_session(s, patient, {**base, "physician_id": seeded.staff})
        assert errors[0].field == "physician_id"
        _, errors = request_session(s, patient, {**base, "scheduled_start": "soon"})
        assert errors[0].field == "scheduled_start"
        _, errors = request_session(s, patient, {**base, "session_type": "house_call"})
        assert errors[0].field == "session_type"
        _, errors = request_session(s, patient, {**base, "duration_minutes": "5"})
        assert errors[0].field == "duration_minutes"


def test_join_requires_consent_and_scheduled(app, seeded):
    with session_scope(app) as s:
        patient = s.get(User, seeded.patient)
        ts = _request(s, seeded)
        with pytest.raises(ValueError):
            join_waiting_room(s, patient, ts, consent=False)
        other = make_user(s, "other@example.com", "patient")
        with pytest.raises(LookupError):
            join_waiting_room(s, other, ts, consent=True)

        join_waiting_room(s, patient, ts, consent=True)
        assert ts.status == "waiting_room"
        assert ts.consent_given is True
        with pytest.raises(ValueError):
            join_waiting_room(s, patient, ts, consent=True)


def test_full_session_lifecycle(app, seeded):
    with session_scope(app) as s:
        patient = s.get(User, seeded.patient)
        physician = s.get(User, seeded.physician)
        ts = _request(s, seeded)

        with pytest.raises(ValueError):
            send_message(s, patient, ts, {"content": "Hello?"})
        with pytest.raises(ValueError):
            end_session(s, physician, ts)

        join_waiting_room(s, patient, ts, consent=True)
        send_message(s, patient, ts, {"content": "I'm here"})
        update_session_status(s, physician, ts, {"status": "in_progress"})
        assert ts.actual_start is not None
        send_message(s, physician, ts, {"content": "Incision looks good"})
        update_session_status(s, physician, ts, {"status": "in_progress", "clinical_notes": "Healing well"})
        end_session(s, physician, ts)

        assert ts.status == "completed"
        assert ts.actual_end is not None
        assert ts.clinical_notes == "Healing well"
        with pytest.raises(ValueError):
            end_session(s, physician, ts)
        with pytest.raises(ValueError):
            cancel_session(s, physician, ts, {"reason": "Too late"})
        ts_id = ts.id

    with session_scope(app) as s:
        messages = s.query(TelemedicineMessage).filter(TelemedicineMessage.session_id == ts_id).order_by(TelemedicineMessage.id).all()
        assert [m.content for m in messages] == ["I'm here", "Incision looks good"]
        updates = s.query(Notification).filter(Notification.title == "Telemedicine session updated").count()
        assert updates == 2


def test_status_changes_are_restricted(app, seeded):
    with session_scope(app) as s:
        patient = s.get(User, seeded.patient)
        ts = _request(s, seeded)
        with pytest.raises(PermissionError):
            update_session_status(s, patient, ts, {"status": "completed"})
        other = make_user(s, "other.doc@example.com", "physician")
        with pytest.raises(LookupError):
            update_session_status(s, other, ts, {"status": "in_progress"})
        with pytest.raises(ValueError):
            update_session_status(s, s.get(User, seeded.physician), ts, {"status": "teleported"})
        stranger = make_user(s, "stranger@example.com", "patient")
        with pytest.raises(LookupError):
            send_message(s, stranger, ts, {"content": "hi"})


def test_approve_and_cancel(app, seeded):
    with session_scope(app) as s:
        staff = s.get(User, seeded.staff)
        patient = s.get(User, seeded.patient)
        ts = _request(s, seeded)
        with pytest.raises(ValueError):
            approve_session(s, staff, ts)
        join_waiting_room(s, patient, ts, consent=True)
        approve_session(s, staff, ts)
        assert ts.status == "in_progress"

        other = _request(s, seeded)
        with pytest.raises(ValueError):
            cancel_session(s, staff, other, {"reason": ""})
        cancel_session(s, staff, other, {"reason": "Physician unavailable"})
        assert other.status == "cancelled"
        assert other.cancellation_reason == "Physician unavailable"

    with session_scope(app) as s:
        cancelled = s.query(Notification).filter(Notification.title == "Telemedicine session cancelled").all()
        assert sorted(n.user_id for n in cancelled) == sorted([seeded.patient, seeded.physician])
        assert {n.priority for n in cancelled} == {"high"}
        assert s.query(AuditEvent).filter(AuditEvent.action == "telemedicine.cancel").one().reason == "Physician unavailable"


def test_stats(app, seeded):
    with session_scope(app) as s:
        patient = s.get(User, seeded.patient)
        physician = s.get(User, seeded.physician)
        done = _request(s, seeded)
        join_waiting_room(s, patient, done, consent=True)
        update_session_status(s, physician, done, {"status": "in_progress"})
        end_session(s, physician, done)
        waiting = _request(s, seeded)
        join_waiting_room(s, patient, waiting, consent=True)
        _request(s, seeded)
        _request(s, seeded)

        stats = telemedicine_stats(s)
        assert stats.total == 4
        assert stats.completed == 1
        assert stats.completion_rate == 25.0
        assert stats.pending_count == 1
        assert stats.per_physician == [
            {"physician_id": seeded.physician, "name": "Dana Reyes", "total": 4, "completed": 1}
        ]


def test_patient_telemedicine_flow(client, app, seeded):
    login(client, "patient@example.com")
    token = csrf(client)
    assert client.get("/patient/telemedicine/request").status_code == 200

    r = client.post(
        "/patient/telemedicine/request",
        data={"physician_id": str(seeded.physician), "session_type": "general_consult", "scheduled_start": _start(), "csrf_token": token},
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        ts_id = s.query(TelemedicineSession).one().id

    client.post(f"/patient/telemedicine/{ts_id}/join", data={"csrf_token": token})
    with session_scope(app) as s:
        assert s.get(TelemedicineSession, ts_id).status == "scheduled"

    client.post(f"/patient/telemedicine/{ts_id}/join", data={"consent": "on", "csrf_token": token})
    client.post(f"/patient/telemedicine/{ts_id}/messages", data={"content": "Ready when you are", "csrf_token": token})
    r = client.get(f"/patient/telemedicine/{ts_id}")
    assert r.status_code == 200
    assert b"Ready when you are" in r.data
    assert client.get("/patient/telemedicine?status=waiting_room").status_code == 200

    r = client.post(
        "/patient/telemedicine/request",
        data={"physician_id": str(seeded.physician), "scheduled_start": "", "csrf_token": token},
    )
    assert r.status_code == 400


def test_physician_and_staff_telemedicine_consoles(client, app, seeded):
    with session_scope(app) as s:
        ts = _request(s, seeded)
        join_waiting_room(s, s.get(User, seeded.patient), ts, consent=True)
        second = _request(s, seeded)
        ts_id, second_id = ts.id, second.id

    staff = app.test_client()
    login(staff, "staff@example.com")
    token = csrf(staff)
    assert staff.get("/staff/telemedicine").status_code == 200
    staff.post(f"/staff/telemedicine/{ts_id}/approve", data={"csrf_token": token})
    staff.post(f"/staff/telemedicine/{second_id}/cancel", data={"reason": "Duplicate request", "csrf_token": token})

    login(client, "doctor@example.com")
    token = csrf(client)
    assert client.get(f"/physician/telemedicine/{ts_id}").status_code == 200
    client.post(f"/physician/telemedicine/{ts_id}/messages", data={"content": "Starting now", "csrf_token": token})
    client.post(f"/physician/telemedicine/{ts_id}/end", data={"csrf_token": token})

    with session_scope(app) as s:
        assert s.get(TelemedicineSession, ts_id).status == "completed"
        assert s.get(TelemedicineSession, second_id).status == "cancelled"


def test_admin_telemedicine_pages(client, app, seeded):
    with session_scope(app) as s:
        ts = _request(s, seeded)
        join_waiting_room(s, s.get(User, seeded.patient), ts, consent=True)
        ts_id = ts.id
    login(client, "admin@example.com")
    token = csrf(client)
    assert client.get("/admin/telemedicine/").status_code == 200
    assert client.get("/admin/telemedicine/stats").status_code == 200
    assert client.get(f"/admin/telemedicine/{ts_id}").status_code == 200
    client.post(f"/admin/telemedicine/{ts_id}/approve", data={"csrf_token": token})
    with session_scope(app) as s:
        assert s.get(TelemedicineSession, ts_id).status == "in_progress"
    assert client.get("/admin/telemedicine/9999").status_code == 404
