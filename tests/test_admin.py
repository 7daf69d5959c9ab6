from app.pms.db import session_scope
from app.pms.models import AuditEvent, User
from app.pms.modules.locations.models import Location, ProviderLocation, ProviderService, ServiceCatalog
from app.pms.modules.locations.service import create_location, slugify, update_location
from app.pms.modules.profiles.models import PhysicianProfile
from conftest import csrf, login, make_user


def test_admin_pages_render(client, app, seeded):
    login(client, "admin@example.com")
    for path in (
        "/admin/",
        "/admin/users",
        "/admin/users?role=physician&q=reyes",
        f"/admin/users/{seeded.physician}",
        "/admin/audit",
        "/admin/audit?action=auth&date_from=bad",
        "/admin/memberships",
        "/admin/locations",
        f"/admin/locations/{seeded.location}",
        f"/admin/locations/{seeded.location}/edit",
        "/admin/locations/new",
        "/admin/services",
        "/admin/services/new",
        f"/admin/services/{seeded.service}/edit",
    ):
        assert client.get(path).status_code == 200, path


def test_non_admins_are_turned_away(client, app, seeded):
    login(client, "staff@example.com")
    r = client.get("/admin/users")
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/dashboard")


def test_toggle_active_and_self_protection(client, app, seeded):
    login(client, "admin@example.com")
    token = csrf(client)
    client.post(f"/admin/users/{seeded.patient}/active", data={"reason": "Left practice", "csrf_token": token})
    client.post(f"/admin/users/{seeded.admin}/active", data={"csrf_token": token})

    with session_scope(app) as s:
        assert s.get(User, seeded.patient).is_active is False
        assert s.get(User, seeded.admin).is_active is True
        ev = s.query(AuditEvent).filter(AuditEvent.action == "user.deactivate").one()
        assert ev.reason == "Left practice"

    patient = app.test_client()
    r = login(patient, "patient@example.com")
    assert r.headers["Location"].endswith("/auth/login")


def test_role_updates(client, app, seeded):
    login(client, "admin@example.com")
    token = csrf(client)
    client.post(f"/admin/users/{seeded.staff}/roles", data={"roles": ["staff", "admin"], "csrf_token": token})
    client.post(f"/admin/users/{seeded.admin}/roles", data={"roles": ["staff"], "csrf_token": token})
    client.post(f"/admin/users/{seeded.patient}/roles", data={"csrf_token": token})

    with session_scope(app) as s:
        assert sorted(s.get(User, seeded.staff).role_keys) == ["admin", "staff"]
        assert s.get(User, seeded.admin).role_keys == {"admin"}
        assert s.get(User, seeded.patient).role_keys == {"patient"}
        assert s.query(AuditEvent).filter(AuditEvent.action == "user.roles_update").count() == 1


def test_physician_verification_toggle(client, app, seeded):
    with session_scope(app) as s:
        new_doc = make_user(s, "new.doc@example.com", "physician")
        profile = s.query(PhysicianProfile).filter(PhysicianProfile.user_id == new_doc.id).one()
        profile.is_verified = False
        doc_id = new_doc.id

    login(client, "admin@example.com")
    token = csrf(client)
    client.post(f"/admin/users/{doc_id}/verify", data={"csrf_token": token})
    with session_scope(app) as s:
        assert s.query(PhysicianProfile).filter(PhysicianProfile.user_id == doc_id).one().is_verified is True
    assert client.post(f"/admin/users/{seeded.patient}/verify", data={"csrf_token": token}).status_code == 404


def test_slugify():
    assert slugify("  St. Mary's Spoke #2 ") == "st-mary-s-spoke-2"
    assert slugify("!!!") == "location"


def test_create_location_dedupes_slug(app, seeded):
    with session_scope(app) as s:
        admin = s.get(User, seeded.admin)
        loc, errors = create_location(s, {"name": "Main Hospital", "location_type": "spoke", "state": "tx"}, admin)
        assert errors == []
        assert loc.slug == "main-hospital-2"
        assert loc.state == "TX"
        _, errors = create_location(s, {"name": "Clinic", "slug": "main-hospital"}, admin)
        assert errors[0].field == "slug"
        _, errors = create_location(s, {"name": "Clinic", "location_type": "moon_base"}, admin)
        assert errors[0].field == "location_type"
        assert update_location(s, loc, {"name": "North", "parent_location_id": loc.id}, admin)[0].field == "parent_location_id"


def test_location_admin_workflow(client, app, seeded):
    with session_scope(app) as s:
        doc_id = make_user(s, "north.doc@example.com", "physician").id

    login(client, "admin@example.com")
    token = csrf(client)
    r = client.post(
        "/admin/locations/new",
        data={"name": "North Clinic", "location_type": "spoke", "city": "Round Rock", "state": "TX", "csrf_token": token},
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        loc = s.query(Location).filter(Location.slug == "north-clinic").one()
        loc_id = loc.id

    r = client.post(
        f"/admin/locations/{loc_id}/edit",
        data={"name": "North Clinic", "location_type": "spoke", "parent_location_id": str(seeded.location), "csrf_token": token},
    )
    assert r.status_code == 302
    client.post(f"/admin/locations/{loc_id}/providers", data={"physician_id": str(doc_id), "is_primary": "on", "csrf_token": token})
    client.post(f"/admin/locations/{loc_id}/providers", data={"physician_id": str(seeded.patient), "csrf_token": token})
    client.post(f"/admin/locations/{loc_id}/toggle", data={"csrf_token": token})

    with session_scope(app) as s:
        loc = s.get(Location, loc_id)
        assert loc.parent_location_id == seeded.location
        assert loc.is_active is False
        links = s.query(ProviderLocation).filter(ProviderLocation.location_id == loc_id).all()
        assert [(link.physician_id, link.is_primary) for link in links] == [(doc_id, True)]

    assert client.get("/locations/north-clinic").status_code == 404
    r = client.post("/admin/locations/new", data={"name": "", "csrf_token": token})
    assert r.status_code == 400


def test_service_catalog_admin(client, app, seeded):
    with session_scope(app) as s:
        doc_id = make_user(s, "svc.doc@example.com", "physician").id

    login(client, "admin@example.com")
    token = csrf(client)
    r = client.post(
        "/admin/services/new",
        data={
            "name": "MRI Review",
            "category": "diagnostic",
            "cpt_code": "76140",
            "base_price": "225.50",
            "duration_minutes": "20",
            "is_telehealth_eligible": "on",
            "csrf_token": token,
        },
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        svc = s.query(ServiceCatalog).filter(ServiceCatalog.name == "MRI Review").one()
        assert svc.base_price_cents == 22550
        assert svc.is_telehealth_eligible is True
        svc_id = svc.id

    assert client.post("/admin/services/new", data={"name": "Bad", "base_price": "free", "csrf_token": token}).status_code == 400

    client.post(
        f"/admin/services/{svc_id}/edit",
        data={"name": "MRI Review", "base_price": "250", "csrf_token": token},
    )
    client.post(f"/admin/services/{svc_id}/providers", data={"physician_id": str(doc_id), "csrf_token": token})
    client.post(f"/admin/services/{svc_id}/providers", data={"physician_id": str(doc_id), "csrf_token": token})

    with session_scope(app) as s:
        svc = s.get(ServiceCatalog, svc_id)
        assert svc.base_price_cents == 25000
        assert svc.is_active is False
        assert svc.is_telehealth_eligible is False
        assert s.query(ProviderService).filter(ProviderService.service_id == svc_id).count() == 1
