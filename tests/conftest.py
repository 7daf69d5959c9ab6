from datetime import date, datetime, time, timedelta
from types import SimpleNamespace

import pytest
from werkzeug.security import generate_password_hash

from app.pms import auth, create_app
from app.pms.db import session_scope
from app.pms.models import Base, Role, User
from app.pms.modules.appointments.models import Appointment
from app.pms.modules.billing.payments_client import PaymentsError
from app.pms.modules.locations.models import Location, ProviderLocation, ProviderService, ServiceCatalog
from app.pms.modules.profiles.models import PatientProfile, PhysicianProfile
from app.pms.permissions import seed_roles_and_permissions
from scripts.init_db import seed_membership_tiers

PASSWORD = "Passw0rd1"
WEBHOOK_SECRET = "whsec_test"


class FakePaymentsClient:
    """In-memory stand-in for the processor client; records what was sent."""

    def __init__(self):
        self.customers: dict[str, dict] = {}
        self.sessions: dict[str, dict] = {}
        self.created: list[dict] = []
        self.portals: list[dict] = []

    def find_customer_by_email(self, email):
        return self.customers.get(email)

    def create_customer(self, *, email, name=None, metadata=None):
        customer = {"id": f"cus_{len(self.customers) + 1}", "email": email, "name": name}
        self.customers[email] = customer
        return customer

    def create_checkout_session(self, params):
        session_id = f"cs_test_{len(self.created) + 1}"
        self.created.append(params)
        self.sessions[session_id] = {
            "id": session_id,
            "url": f"https://checkout.example.com/{session_id}",
            "mode": params.get("mode"),
            "customer": params.get("customer"),
            "metadata": {k: str(v) for k, v in (params.get("metadata") or {}).items()},
            "status": "open",
            "payment_status": "unpaid",
            "amount_total": None,
            "currency": "usd",
        }
        return {"id": session_id, "url": self.sessions[session_id]["url"]}

    def retrieve_checkout_session(self, session_id):
        if session_id not in self.sessions:
            raise PaymentsError(f"No such checkout session: {session_id}")
        return self.sessions[session_id]

    def create_billing_portal_session(self, *, customer, return_url):
        self.portals.append({"customer": customer, "return_url": return_url})
        return {"url": f"https://billing.example.com/{customer}"}

    def complete(self, session_id, amount_total, payment_intent="pi_test_1"):
        self.sessions[session_id].update(
            status="complete",
            payment_status="paid",
            amount_total=amount_total,
            payment_intent=payment_intent,
        )


@pytest.fixture(autouse=True)
def _reset_login_attempts():
    auth._login_attempts.clear()
    yield
    auth._login_attempts.clear()


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("APP_BASE_URL", "http://localhost:5000")
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)

    app = create_app()
    app.config["TESTING"] = True
    app.extensions["payments_client"] = FakePaymentsClient()

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        seed_roles_and_permissions(s)
        seed_membership_tiers(s)
    return app


@pytest.fixture()
def payments(app):
    return app.extensions["payments_client"]


def make_user(s, email: str, role_key: str, first_name: str = "Test", last_name: str = "User") -> User:
    role = s.query(Role).filter(Role.key == role_key).one()
    u = User(
        email=email,
        password_hash=generate_password_hash(PASSWORD),
        first_name=first_name,
        last_name=last_name,
        is_active=True,
    )
    u.roles.append(role)
    s.add(u)
    s.flush()
    if role_key == "patient":
        s.add(PatientProfile(user_id=u.id, mrn=f"MRN-TEST-{u.id:06d}"))
    if role_key == "physician":
        s.add(
            PhysicianProfile(
                user_id=u.id,
                npi=f"{1000000000 + u.id}",
                license_number=f"LIC-{u.id}",
                license_state="TX",
                specialty="Orthopedic Surgery",
                consultation_fee_cents=20000,
                accepting_new_patients=True,
                is_verified=True,
            )
        )
    s.flush()
    return u


@pytest.fixture()
def seeded(app):
    """One user per role plus a location and a service the physician offers there."""
    with session_scope(app) as s:
        patient = make_user(s, "patient@example.com", "patient", "Pat", "Jones")
        physician = make_user(s, "doctor@example.com", "physician", "Dana", "Reyes")
        staff = make_user(s, "staff@example.com", "staff", "Sam", "Lee")
        admin = make_user(s, "admin@example.com", "admin", "Alex", "Admin")
        hub = Location(name="Main Hospital", slug="main-hospital", location_type="hub", city="Austin", state="TX")
        s.add(hub)
        svc = ServiceCatalog(
            name="Office Visit",
            category="consultation",
            cpt_code="99213",
            base_price_cents=15000,
            duration_minutes=30,
            is_telehealth_eligible=False,
        )
        s.add(svc)
        s.flush()
        s.add(ProviderLocation(physician_id=physician.id, location_id=hub.id, is_primary=True))
        s.add(ProviderService(physician_id=physician.id, service_id=svc.id))
        ids = SimpleNamespace(
            patient=patient.id,
            physician=physician.id,
            staff=staff.id,
            admin=admin.id,
            location=hub.id,
            service=svc.id,
        )
    return ids


@pytest.fixture()
def client(app):
    return app.test_client()


def login(client, email: str, password: str = PASSWORD):
    return client.post("/auth/login", data={"email": email, "password": password}, follow_redirects=False)


def csrf(client) -> str:
    """The session's CSRF token; any prior request creates one."""
    with client.session_transaction() as sess:
        token = sess.get("csrf_token")
    if not token:
        client.get("/")
        with client.session_transaction() as sess:
            token = sess["csrf_token"]
    return token


def future_day(days: int = 2) -> date:
    return date.today() + timedelta(days=days)


def utc_today() -> date:
    return datetime.utcnow().date()


def add_appointment(s, ids, *, status="scheduled", start=None, reason="Follow-up"):
    """Insert an appointment directly, 10:00 today unless `start` is given."""
    start = start or datetime.combine(utc_today(), time(10, 0))
    appt = Appointment(
        patient_id=ids.patient,
        physician_id=ids.physician,
        location_id=ids.location,
        service_id=ids.service,
        title="Office Visit",
        scheduled_start=start,
        scheduled_end=start.replace(minute=30),
        status=status,
        reason_for_visit=reason,
    )
    s.add(appt)
    s.flush()
    return appt
