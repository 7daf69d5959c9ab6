import pytest

from app.pms.db import session_scope
from app.pms.models import User
from app.pms.modules.appointments.models import Appointment
from app.pms.modules.encounters.models import Encounter
from app.pms.modules.encounters.schemas import split_codes
from app.pms.modules.encounters.service import (
    complete_encounter,
    get_encounter_for_physician,
    patient_history_for_physician,
    physician_patients,
    update_encounter_notes,
)
from app.pms.modules.staff.service import check_in_patient
from conftest import add_appointment, csrf, login, make_user


def _checked_in(app, ids):
    with session_scope(app) as s:
        appt = add_appointment(s, ids)
        enc = check_in_patient(s, appt, s.get(User, ids.staff), {})
        return appt.id, enc.id


def test_split_codes_normalizes_and_dedupes():
    assert split_codes(" m17.11, 99213 ,M17.11,,") == ["M17.11", "99213"]
    assert split_codes(None) == []
    assert split_codes(["z00.00"]) == ["Z00.00"]


def test_notes_move_encounter_in_progress(app, seeded):
    _, enc_id = _checked_in(app, seeded)
    with session_scope(app) as s:
        enc = s.get(Encounter, enc_id)
        errors = update_encounter_notes(
            s,
            s.get(User, seeded.physician),
            enc,
            {"subjective": "Knee pain for 3 weeks", "assessment": "OA", "diagnosis_codes": "m17.11", "procedure_codes": "99213"},
        )
        assert errors == []
        assert enc.status == "in_progress"
        assert enc.diagnosis_codes == ["M17.11"]
        assert enc.procedure_codes == ["99213"]


def test_complete_encounter_completes_appointment(app, seeded):
    appt_id, enc_id = _checked_in(app, seeded)
    with session_scope(app) as s:
        enc = complete_encounter(s, s.get(User, seeded.physician), s.get(Encounter, enc_id))
        assert enc.status == "completed"
        assert enc.check_out_time is not None
        assert s.get(Appointment, appt_id).status == "completed"


def test_closed_encounter_is_read_only(app, seeded):
    _, enc_id = _checked_in(app, seeded)
    with session_scope(app) as s:
        physician = s.get(User, seeded.physician)
        enc = s.get(Encounter, enc_id)
        complete_encounter(s, physician, enc)
        errors = update_encounter_notes(s, physician, enc, {"plan": "PT twice weekly"})
        assert errors[0].field == "form"
        with pytest.raises(ValueError):
            complete_encounter(s, physician, enc)


def test_other_physician_cannot_open_encounter(app, seeded):
    _, enc_id = _checked_in(app, seeded)
    with session_scope(app) as s:
        other = make_user(s, "other.doc@example.com", "physician")
        assert get_encounter_for_physician(s, other, enc_id) is None
        assert get_encounter_for_physician(s, s.get(User, seeded.physician), enc_id) is not None
        assert get_encounter_for_physician(s, s.get(User, seeded.admin), enc_id) is not None


def test_physician_patient_panel(app, seeded):
    _checked_in(app, seeded)
    with session_scope(app) as s:
        physician = s.get(User, seeded.physician)
        panel = physician_patients(s, physician)
        assert [p.patient.id for p in panel] == [seeded.patient]
        assert panel[0].visit_count == 1
        assert physician_patients(s, physician, q="nobody") == []

        history = patient_history_for_physician(s, physician, seeded.patient)
        assert history["patient"].id == seeded.patient
        assert len(history["encounters"]) == 1

        other = make_user(s, "other.doc@example.com", "physician")
        assert patient_history_for_physician(s, other, seeded.patient) is None


def test_physician_documents_through_portal(client, app, seeded):
    _, enc_id = _checked_in(app, seeded)
    login(client, "doctor@example.com")
    token = csrf(client)

    r = client.get(f"/physician/encounters/{enc_id}")
    assert r.status_code == 200

    r = client.post(
        f"/physician/encounters/{enc_id}/notes",
        data={"subjective": "Better", "plan": "Home exercise", "procedure_codes": "99213", "csrf_token": token},
    )
    assert r.status_code == 302

    r = client.post(f"/physician/encounters/{enc_id}/complete", data={"csrf_token": token})
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/physician/encounters")

    r = client.post(f"/physician/encounters/{enc_id}/notes", data={"plan": "Too late", "csrf_token": token})
    assert r.status_code == 400

    with session_scope(app) as s:
        enc = s.get(Encounter, enc_id)
        assert enc.status == "completed"
        assert enc.plan == "Home exercise"


def test_physician_portal_pages(client, app, seeded):
    _checked_in(app, seeded)
    login(client, "doctor@example.com")
    for path in (
        "/physician/dashboard",
        "/physician/schedule",
        "/physician/patients",
        f"/physician/patients/{seeded.patient}",
        "/physician/encounters",
        "/physician/telemedicine",
        "/physician/profile",
    ):
        r = client.get(path)
        assert r.status_code == 200, path


def test_patient_sees_only_own_encounters(client, app, seeded):
    _, enc_id = _checked_in(app, seeded)
    login(client, "patient@example.com")
    assert client.get("/patient/encounters").status_code == 200
    assert client.get(f"/patient/encounters/{enc_id}").status_code == 200

    with session_scope(app) as s:
        make_user(s, "other@example.com", "patient")
    other = app.test_client()
    login(other, "other@example.com")
    assert other.get(f"/patient/encounters/{enc_id}").status_code == 404


def test_physician_profile_update(client, app, seeded):
    login(client, "doctor@example.com")
    r = client.post(
        "/physician/profile",
        data={
            "specialty": "Sports Medicine",
            "consultation_fee": "250.00",
            "languages": "English, Spanish",
            "csrf_token": csrf(client),
        },
    )
    assert r.status_code == 302
    from app.pms.modules.profiles.models import PhysicianProfile

    with session_scope(app) as s:
        p = s.query(PhysicianProfile).filter(PhysicianProfile.user_id == seeded.physician).one()
        assert p.specialty == "Sports Medicine"
        assert p.consultation_fee_cents == 25000
        assert p.accepting_new_patients is False
