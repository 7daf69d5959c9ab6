import pytest

from app.pms.db import session_scope
from app.pms.models import User
from app.pms.modules.notifications.models import Notification
from app.pms.modules.notifications.service import (
    create_for_user,
    delete_notification,
    get_preferences,
    list_notifications,
    mark_all_read,
    mark_read,
    unread_count,
    update_preferences,
)
from conftest import csrf, login


def _notify(s, user_id, n=1, notification_type="system", **kwargs):
    out = []
    for i in range(n):
        out.append(create_for_user(s, user_id, title=f"Note {i}", message="Body", notification_type=notification_type, **kwargs))
        s.flush()
    return out


def test_create_validates_type_and_priority(app, seeded):
    with session_scope(app) as s:
        with pytest.raises(ValueError):
            create_for_user(s, seeded.patient, title="x", message="y", notification_type="carrier_pigeon")
        with pytest.raises(ValueError):
            create_for_user(s, seeded.patient, title="x", message="y", priority="meh")
        n = create_for_user(s, seeded.patient, title="T" * 300, message="y", related_entity_id=42)
        assert len(n.title) == 255
        assert n.related_entity_id == "42"


def test_disabled_type_is_suppressed_unless_urgent(app, seeded):
    with session_scope(app) as s:
        patient = s.get(User, seeded.patient)
        prefs = update_preferences(s, patient, {"billing": False})
        assert prefs["billing"] is False
        assert prefs["appointment"] is True

        assert create_for_user(s, patient.id, title="Invoice", message="m", notification_type="billing") is None
        assert create_for_user(s, patient.id, title="Invoice", message="m", notification_type="billing", priority="urgent")
        assert create_for_user(s, patient.id, title="Visit", message="m", notification_type="appointment")

        update_preferences(s, patient, {"billing": True})
        assert get_preferences(s, patient)["billing"] is True


def test_list_filters_and_pages(app, seeded):
    with session_scope(app) as s:
        patient = s.get(User, seeded.patient)
        _notify(s, patient.id, 3, "claim")
        _notify(s, patient.id, 2, "billing")
        _notify(s, seeded.physician, 4)

        page = list_notifications(s, patient, page_size=2)
        assert page.total_count == 5
        assert page.has_more is True
        assert len(page.notifications) == 2

        last = list_notifications(s, patient, page=3, page_size=2)
        assert len(last.notifications) == 1
        assert last.has_more is False

        claims = list_notifications(s, patient, notification_type="claim")
        assert claims.total_count == 3
        assert {n.notification_type for n in claims.notifications} == {"claim"}


def test_read_state(app, seeded):
    with session_scope(app) as s:
        patient = s.get(User, seeded.patient)
        physician = s.get(User, seeded.physician)
        first, second, third = _notify(s, patient.id, 3)
        assert unread_count(s, patient) == 3

        n = mark_read(s, patient, first.id)
        assert n.is_read is True
        assert n.read_at is not None
        s.flush()
        assert mark_read(s, physician, second.id) is None
        assert unread_count(s, patient) == 2
        assert list_notifications(s, patient, read_status="read").total_count == 1

        assert mark_all_read(s, patient) == 2
        s.flush()
        assert unread_count(s, patient) == 0
        assert mark_all_read(s, patient) == 0

        assert delete_notification(s, physician, third.id) is False
        assert delete_notification(s, patient, third.id) is True
        s.flush()
        assert list_notifications(s, patient).total_count == 2


def test_notification_pages_and_json(client, app, seeded):
    with session_scope(app) as s:
        ids = [n.id for n in _notify(s, seeded.patient, 2, action_url="/patient/billing")]

    login(client, "patient@example.com")
    token = csrf(client)
    r = client.get("/notifications")
    assert r.status_code == 200
    assert b"Note 0" in r.data
    assert client.get("/notifications?status=unread&type=system&sort=asc").status_code == 200

    assert client.get("/api/notifications/unread-count").get_json() == {"count": 2}
    body = client.get("/api/notifications?page_size=1").get_json()
    assert body["total_count"] == 2
    assert body["has_more"] is True
    assert body["notifications"][0]["type"] == "system"

    r = client.post(f"/notifications/{ids[0]}/read", data={"follow": "1", "csrf_token": token})
    assert r.headers["Location"].endswith("/patient/billing")
    assert client.get("/api/notifications/unread-count").get_json() == {"count": 1}

    client.post("/notifications/read-all", data={"csrf_token": token})
    assert client.get("/api/notifications/unread-count").get_json() == {"count": 0}

    r = client.post(f"/notifications/{ids[1]}/delete", data={"csrf_token": token})
    assert r.status_code == 302
    assert client.post(f"/notifications/{ids[1]}/delete", data={"csrf_token": token}).status_code == 404


def test_notifications_are_private(client, app, seeded):
    with session_scope(app) as s:
        (theirs,) = _notify(s, seeded.physician)
        theirs_id = theirs.id
    login(client, "patient@example.com")
    token = csrf(client)
    assert client.post(f"/notifications/{theirs_id}/read", data={"csrf_token": token}).status_code == 404
    r = client.post(f"/api/notifications/{theirs_id}/read", headers={"X-CSRF-Token": token})
    assert r.status_code == 404
    with session_scope(app) as s:
        assert s.get(Notification, theirs_id).is_read is False


def test_preferences_form(client, app, seeded):
    login(client, "patient@example.com")
    assert client.get("/notifications/preferences").status_code == 200
    r = client.post(
        "/notifications/preferences",
        data={"type_appointment": "on", "type_claim": "on", "csrf_token": csrf(client)},
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        prefs = get_preferences(s, s.get(User, seeded.patient))
        assert prefs["appointment"] is True
        assert prefs["billing"] is False
        assert prefs["telemedicine"] is False
