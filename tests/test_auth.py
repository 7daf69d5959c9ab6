from app.pms.db import session_scope
from app.pms.models import AuditEvent, User
from app.pms.modules.profiles.models import PatientProfile, PhysicianProfile
from app.pms.modules.profiles.service import register_patient, register_physician
from conftest import csrf, login


def _patient_form(**overrides):
    form = {
        "first_name": "Riley",
        "last_name": "Patel",
        "email": "Riley@Example.com",
        "password": "Str0ngpass",
        "confirm_password": "Str0ngpass",
        "hipaa_consent": "on",
    }
    form.update(overrides)
    return form


def test_register_patient_creates_profile_and_signs_in(client, app, seeded):
    r = client.post("/auth/register/patient", data=_patient_form())
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/patient/dashboard")
    assert client.get("/patient/dashboard").status_code == 200

    with session_scope(app) as s:
        u = s.query(User).filter(User.email == "riley@example.com").one()
        assert u.role_keys == {"patient"}
        profile = s.query(PatientProfile).filter(PatientProfile.user_id == u.id).one()
        assert profile.mrn.startswith("MRN-")
        assert profile.hipaa_consent_at is not None


def test_register_patient_requires_hipaa_consent(client, app, seeded):
    form = _patient_form()
    form.pop("hipaa_consent")
    r = client.post("/auth/register/patient", data=form)
    assert r.status_code == 400
    assert b"HIPAA" in r.data
    with session_scope(app) as s:
        assert s.query(User).filter(User.email == "riley@example.com").one_or_none() is None


def test_register_patient_rejects_weak_password(app, seeded):
    with session_scope(app) as s:
        user, errors = register_patient(s, _patient_form(password="weakpass", confirm_password="weakpass"))
        assert user is None
        assert errors[0].field == "password"


def test_register_patient_rejects_mismatched_confirmation(app, seeded):
    with session_scope(app) as s:
        user, errors = register_patient(s, _patient_form(confirm_password="Str0ngpass2"))
        assert user is None
        assert [e.field for e in errors] == ["confirm_password"]


def test_register_patient_rejects_duplicate_email(app, seeded):
    with session_scope(app) as s:
        user, errors = register_patient(s, _patient_form(email="patient@example.com"))
        assert user is None
        assert errors[0].field == "email"


def test_register_physician_starts_unverified(client, app, seeded):
    form = _patient_form(
        email="newdoc@example.com",
        npi="1234567890",
        license_number="TX-99",
        license_state="tx",
        specialty="Cardiology",
    )
    r = client.post("/auth/register/physician", data=form)
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/physician/dashboard")
    with session_scope(app) as s:
        u = s.query(User).filter(User.email == "newdoc@example.com").one()
        profile = s.query(PhysicianProfile).filter(PhysicianProfile.user_id == u.id).one()
        assert profile.is_verified is False
        assert profile.license_state == "TX"


def test_register_physician_validates_npi(app, seeded):
    with session_scope(app) as s:
        user, errors = register_physician(
            s,
            _patient_form(
                email="newdoc@example.com",
                npi="12345",
                license_number="TX-99",
                license_state="TX",
                specialty="Cardiology",
            ),
        )
        assert user is None
        assert errors[0].field == "npi"


def test_forgot_password_answers_the_same_for_unknown_email(client, app, seeded):
    r = client.post("/auth/forgot-password", data={"email": "nobody@example.com"}, follow_redirects=True)
    assert r.status_code == 200
    assert b"If an account exists" in r.data
    with session_scope(app) as s:
        assert s.query(AuditEvent).filter(AuditEvent.action == "auth.password_reset_requested").count() == 1


def test_post_without_csrf_token_is_rejected(client, seeded):
    login(client, "patient@example.com")
    r = client.post("/notifications/read-all")
    assert r.status_code == 400
    assert b"CSRF" in r.data


def test_api_post_without_csrf_token_gets_json_error(client, seeded):
    login(client, "patient@example.com")
    r = client.post("/api/billing/checkout", json={"invoice_id": 1})
    assert r.status_code == 400
    assert r.json["error"] == "CSRF token missing or invalid."


def test_post_with_csrf_header_is_accepted(client, seeded):
    login(client, "patient@example.com")
    r = client.post("/notifications/read-all", headers={"X-CSRF-Token": csrf(client)})
    assert r.status_code == 302


def test_login_records_audit_events(client, app, seeded):
    login(client, "patient@example.com", "nope")
    login(client, "patient@example.com")
    with session_scope(app) as s:
        actions = [e.action for e in s.query(AuditEvent).order_by(AuditEvent.id.asc()).all()]
        assert "auth.login_failed" in actions
        assert "auth.login" in actions
