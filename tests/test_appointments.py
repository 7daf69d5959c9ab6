from datetime import datetime, time, timedelta

import pytest

from app.pms.db import session_scope
from app.pms.models import User
from app.pms.modules.appointments.models import Appointment
from app.pms.modules.appointments.service import (
    available_providers,
    available_time_slots,
    cancel_appointment,
    create_appointment,
    slot_starts,
)
from app.pms.modules.notifications.models import Notification
from app.pms.modules.profiles.models import PhysicianProfile
from conftest import csrf, future_day, login, make_user


def _payload(ids, day, at="10:00", **overrides):
    payload = {
        "service_id": ids.service,
        "provider_id": ids.physician,
        "location_id": ids.location,
        "appointment_date": day.isoformat(),
        "appointment_time": at,
        "notes": "Knee pain",
    }
    payload.update(overrides)
    return payload


def _book(app, ids, day, at="10:00", now=None):
    with session_scope(app) as s:
        patient = s.get(User, ids.patient)
        appt, errors = create_appointment(s, patient, _payload(ids, day, at), now=now)
        assert errors == []
        return appt.id


def test_slot_grid_runs_nine_to_four_thirty():
    starts = slot_starts(future_day())
    assert len(starts) == 16
    assert starts[0].time() == time(9, 0)
    assert starts[-1].time() == time(16, 30)


def test_booked_slot_is_unavailable(app, seeded):
    day = future_day()
    _book(app, seeded, day, "10:00")
    with session_scope(app) as s:
        slots = {sl.time: sl.available for sl in available_time_slots(s, seeded.physician, day, seeded.location)}
    assert slots["10:00"] is False
    assert slots["09:30"] is True
    assert slots["10:30"] is True


def test_slots_before_now_are_unavailable(app, seeded):
    day = future_day()
    now = datetime.combine(day, time(12, 0))
    with session_scope(app) as s:
        slots = {sl.time: sl.available for sl in available_time_slots(s, seeded.physician, day, now=now)}
    assert slots["11:30"] is False
    assert slots["12:00"] is False
    assert slots["12:30"] is True


def test_create_appointment_notifies_both_parties(app, seeded):
    day = future_day()
    appt_id = _book(app, seeded, day, "11:00")
    with session_scope(app) as s:
        appt = s.get(Appointment, appt_id)
        assert appt.status == "scheduled"
        assert appt.title == "Office Visit"
        assert appt.scheduled_start == datetime.combine(day, time(11, 0))
        assert appt.duration_minutes == 30
        assert appt.reason_for_visit == "Knee pain"
        recipients = {n.user_id for n in s.query(Notification).filter(Notification.related_entity_id == str(appt_id)).all()}
        assert recipients == {seeded.patient, seeded.physician}


def test_create_appointment_rejects_past_date(app, seeded):
    today = datetime.utcnow().date()
    with session_scope(app) as s:
        appt, errors = create_appointment(s, s.get(User, seeded.patient), _payload(seeded, today - timedelta(days=1)))
        assert appt is None
        assert errors[0].field == "appointment_date"


def test_create_appointment_rejects_passed_slot(app, seeded):
    day = future_day()
    now = datetime.combine(day, time(13, 5))
    with session_scope(app) as s:
        appt, errors = create_appointment(s, s.get(User, seeded.patient), _payload(seeded, day, "13:00"), now=now)
        assert appt is None
        assert errors[0].field == "appointment_time"
        assert "already passed" in errors[0].message


def test_create_appointment_rejects_off_grid_time(app, seeded):
    with session_scope(app) as s:
        appt, errors = create_appointment(s, s.get(User, seeded.patient), _payload(seeded, future_day(), "10:15"))
        assert appt is None
        assert errors[0].field == "appointment_time"


def test_create_appointment_rejects_malformed_time(app, seeded):
    with session_scope(app) as s:
        appt, errors = create_appointment(s, s.get(User, seeded.patient), _payload(seeded, future_day(), "25:00"))
        assert appt is None
        assert errors[0].field == "appointment_time"


def test_create_appointment_rejects_conflict(app, seeded):
    day = future_day()
    _book(app, seeded, day, "14:00")
    with session_scope(app) as s:
        other = make_user(s, "other@example.com", "patient")
        appt, errors = create_appointment(s, other, _payload(seeded, day, "14:00"))
        assert appt is None
        assert errors[0].field == "appointment_time"
        assert "no longer available" in errors[0].message


def test_create_appointment_rejects_unknown_provider(app, seeded):
    with session_scope(app) as s:
        appt, errors = create_appointment(
            s, s.get(User, seeded.patient), _payload(seeded, future_day(), provider_id=seeded.staff)
        )
        assert appt is None
        assert errors[0].field == "provider_id"


def test_cancel_appointment_by_patient(app, seeded):
    appt_id = _book(app, seeded, future_day())
    with session_scope(app) as s:
        appt = cancel_appointment(s, s.get(User, seeded.patient), appt_id, "  ")
        assert appt.status == "cancelled"
        assert appt.cancellation_reason == "Cancelled by patient"
        assert appt.cancelled_by_user_id == seeded.patient

    with session_scope(app) as s:
        with pytest.raises(ValueError):
            cancel_appointment(s, s.get(User, seeded.patient), appt_id)


def test_cancel_someone_elses_appointment_is_not_found(app, seeded):
    appt_id = _book(app, seeded, future_day())
    with session_scope(app) as s:
        other = make_user(s, "other@example.com", "patient")
        with pytest.raises(LookupError):
            cancel_appointment(s, other, appt_id)


def test_available_providers_skips_unverified_and_closed_panels(app, seeded):
    with session_scope(app) as s:
        make_user(s, "newdoc@example.com", "physician")
        for p in s.query(PhysicianProfile).all():
            if p.user_id != seeded.physician:
                p.is_verified = False
    with session_scope(app) as s:
        assert [p.user_id for p in available_providers(s, seeded.service, seeded.location)] == [seeded.physician]
        s.query(PhysicianProfile).filter(PhysicianProfile.user_id == seeded.physician).one().accepting_new_patients = False
        s.flush()
        assert available_providers(s, seeded.service, seeded.location) == []


def test_booking_through_the_portal(client, app, seeded):
    login(client, "patient@example.com")
    day = future_day()
    r = client.get(
        f"/patient/appointments/book?location_id={seeded.location}&service_id={seeded.service}"
        f"&provider_id={seeded.physician}&date={day.isoformat()}"
    )
    assert r.status_code == 200
    assert b"10:00" in r.data

    data = _payload(seeded, day, "10:00")
    data["csrf_token"] = csrf(client)
    r = client.post("/patient/appointments/book", data=data)
    assert r.status_code == 302
    assert "/patient/appointments/" in r.headers["Location"]

    # The same slot again sends the patient back to time selection.
    r = client.post("/patient/appointments/book", data=data)
    assert r.status_code == 400
    assert b"no longer available" in r.data

    with session_scope(app) as s:
        assert s.query(Appointment).count() == 1


def test_slots_api(client, seeded):
    login(client, "patient@example.com")
    day = future_day()
    r = client.get(f"/api/appointments/slots?provider_id={seeded.physician}&date={day.isoformat()}")
    assert r.status_code == 200
    assert r.json["date"] == day.isoformat()
    assert len(r.json["slots"]) == 16

    r = client.get(f"/api/appointments/slots?provider_id={seeded.physician}")
    assert r.status_code == 400


def test_patient_cancels_from_portal(client, app, seeded):
    appt_id = _book(app, seeded, future_day())
    login(client, "patient@example.com")
    r = client.post(
        f"/patient/appointments/{appt_id}/cancel",
        data={"reason": "Feeling better", "csrf_token": csrf(client)},
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        appt = s.get(Appointment, appt_id)
        assert appt.status == "cancelled"
        assert appt.cancellation_reason == "Feeling better"
