from datetime import date, datetime, time, timedelta

import pytest

from app.pms.db import session_scope
from app.pms.modules.analytics.network import network_overview, network_stats, node_status, utilization
from app.pms.modules.analytics.ranges import (
    DateRange,
    default_revenue_range,
    months_in_range,
    pct,
    resolve_range,
)
from app.pms.modules.analytics.revenue import (
    aging_bucket,
    ar_aging_report,
    claims_analytics,
    revenue_overview,
    revenue_time_series,
)
from app.pms.modules.billing.models import Invoice
from app.pms.modules.claims.models import InsuranceClaim
from app.pms.modules.locations.models import Location
from conftest import add_appointment, login, utc_today

TODAY = date(2026, 3, 15)


def test_resolve_range_presets():
    assert resolve_range("today", today=TODAY) == DateRange(TODAY, TODAY)
    assert resolve_range("7d", today=TODAY) == DateRange(date(2026, 3, 9), TODAY)
    assert resolve_range(None, today=TODAY) == DateRange(date(2026, 2, 14), TODAY)
    assert len(resolve_range("90d", today=TODAY).days) == 90


def test_custom_range_swaps_reversed_dates():
    r = resolve_range("custom", date(2026, 3, 10), date(2026, 3, 1), today=TODAY)
    assert r == DateRange(date(2026, 3, 1), date(2026, 3, 10))
    # incomplete custom range falls back to the default window
    assert resolve_range("custom", date(2026, 3, 1), None, today=TODAY) == resolve_range("30d", today=TODAY)


def test_range_bounds_and_previous():
    r = DateRange(date(2026, 3, 9), TODAY)
    assert r.start == datetime(2026, 3, 9)
    assert r.end == datetime(2026, 3, 16)
    assert r.previous() == DateRange(date(2026, 3, 2), date(2026, 3, 8))


def test_default_revenue_range_is_one_year_back():
    assert default_revenue_range(TODAY) == DateRange(date(2025, 3, 15), TODAY)
    assert default_revenue_range(date(2024, 2, 29)).date_from == date(2023, 2, 28)


def test_months_and_pct():
    assert months_in_range(DateRange(date(2026, 1, 5), date(2026, 1, 20))) == 1
    assert months_in_range(DateRange(date(2025, 3, 15), TODAY)) == 12
    assert pct(1, 3) == 33.3
    assert pct(5, 0) == 0.0


@pytest.mark.parametrize(
    "days,bucket",
    [(0, "0-30"), (30, "0-30"), (31, "31-60"), (60, "31-60"), (61, "61-90"), (90, "61-90"), (91, "90+")],
)
def test_aging_bucket_boundaries(days, bucket):
    assert aging_bucket(days) == bucket


def test_utilization_and_node_status():
    assert utilization(4, 1) == 50
    assert utilization(20, 1) == 100
    assert utilization(3, 0) == 0
    assert node_status(0, 5) == "critical"
    assert node_status(2, 0) == "warning"
    assert node_status(2, 3) == "healthy"


def test_network_overview_counts_today(app, seeded):
    today = utc_today()
    with session_scope(app) as s:
        s.add(Location(name="North Clinic", slug="north-clinic", location_type="spoke"))
        add_appointment(s, seeded)
        add_appointment(s, seeded, start=datetime.combine(today, time(11, 0)))
        add_appointment(s, seeded, status="cancelled", start=datetime.combine(today, time(13, 0)))
        add_appointment(s, seeded, start=datetime.combine(today + timedelta(days=1), time(9, 0)))

    with session_scope(app) as s:
        overview = network_overview(s, today)
        assert overview.hub.location.name == "Main Hospital"
        assert overview.hub.provider_count == 1
        assert overview.hub.today_appointments == 2
        assert overview.hub.status == "healthy"
        assert overview.hub.utilization == 25
        assert [n.location.name for n in overview.spokes] == ["North Clinic"]
        assert overview.spokes[0].status == "critical"
        assert overview.total_appointments_today == 2
        assert overview.network_utilization == 25

        stats = network_stats(s, DateRange(today, today + timedelta(days=1)))
        by_name = {row["location_name"]: row for row in stats["appointments_by_location"]}
        assert by_name["Main Hospital"]["appointment_count"] == 3
        assert by_name["North Clinic"]["appointment_count"] == 0
        assert len(stats["patient_volume_trends"]) == 2
        util = {row["location_name"]: row for row in stats["provider_utilization"]}
        assert util["Main Hospital"]["utilization_percent"] == 100
        assert util["North Clinic"]["utilization_percent"] == 0


def _paid_invoice(s, patient_id: int, number: str, cents: int, **kw) -> Invoice:
    inv = Invoice(
        invoice_number=number,
        patient_id=patient_id,
        status="paid",
        subtotal_cents=cents,
        total_cents=cents,
        amount_paid_cents=cents,
        amount_due_cents=0,
        **kw,
    )
    s.add(inv)
    s.flush()
    return inv


def test_revenue_overview_splits_surgical(app, seeded):
    today = utc_today()
    with session_scope(app) as s:
        _paid_invoice(s, seeded.patient, "INV-T-1", 150000)
        _paid_invoice(s, seeded.patient, "INV-T-2", 5000)
        s.add(
            Invoice(
                invoice_number="INV-T-3",
                patient_id=seeded.patient,
                status="sent",
                total_cents=9000,
                amount_due_cents=9000,
            )
        )

    with session_scope(app) as s:
        r = DateRange(today - timedelta(days=29), today)
        ov = revenue_overview(s, r)
        assert ov.total_revenue_cents == 155000
        assert ov.surgical_revenue_cents == 150000
        assert ov.membership_revenue_cents == 0
        assert ov.diagnostic_revenue_cents == 5000
        assert ov.patient_count == 1
        assert ov.average_per_patient_cents == 155000
        assert ov.revenue_growth_pct == 0.0

        series = revenue_time_series(s, r)
        assert sum(p["total_revenue_cents"] for p in series) == 155000
        assert sum(p["surgical_revenue_cents"] for p in series) == 150000
        with pytest.raises(ValueError):
            revenue_time_series(s, r, "daily")


def test_claims_analytics_and_aging(app, seeded):
    today = utc_today()
    midnight = datetime.combine(today, time.min)
    with session_scope(app) as s:
        s.add_all(
            [
                InsuranceClaim(
                    claim_number="CLM-T-1",
                    patient_id=seeded.patient,
                    status="submitted",
                    billed_amount_cents=10000,
                    submitted_at=midnight - timedelta(days=10),
                ),
                InsuranceClaim(
                    claim_number="CLM-T-2",
                    patient_id=seeded.patient,
                    status="appealed",
                    was_appealed=True,
                    billed_amount_cents=20000,
                    paid_amount_cents=5000,
                    submitted_at=midnight - timedelta(days=45),
                ),
                InsuranceClaim(
                    claim_number="CLM-T-3",
                    patient_id=seeded.patient,
                    status="pending",
                    billed_amount_cents=7000,
                    submitted_at=midnight - timedelta(days=100),
                ),
                InsuranceClaim(
                    claim_number="CLM-T-4",
                    patient_id=seeded.patient,
                    status="paid",
                    billed_amount_cents=3000,
                    paid_amount_cents=3000,
                    submitted_at=midnight - timedelta(days=5),
                    paid_at=midnight - timedelta(days=2),
                ),
                InsuranceClaim(
                    claim_number="CLM-T-5",
                    patient_id=seeded.patient,
                    status="denied",
                    billed_amount_cents=4000,
                    denial_reason="Not covered",
                ),
            ]
        )

    with session_scope(app) as s:
        aging = {row["bucket"]: row for row in ar_aging_report(s, today)}
        assert aging["0-30"] == {"bucket": "0-30", "claim_count": 1, "total_amount_cents": 10000}
        assert aging["31-60"]["total_amount_cents"] == 15000
        assert aging["61-90"]["claim_count"] == 0
        assert aging["90+"]["total_amount_cents"] == 7000

        stats = claims_analytics(s, DateRange(today - timedelta(days=29), today))
        assert stats["total_submitted"] == 5
        assert stats["total_paid"] == 1
        assert stats["total_denied"] == 1
        assert stats["total_in_appeal"] == 1
        assert stats["denial_rate"] == 20.0
        assert stats["average_days_to_payment"] == 3
        assert stats["appeal_success_rate"] == 0.0
        assert stats["total_pending_cents"] == 17000


def test_network_json(client, seeded, app):
    with session_scope(app) as s:
        add_appointment(s, seeded, start=datetime.combine(date.today(), time(10, 0)))
    login(client, "admin@example.com")
    resp = client.get("/admin/analytics/network.json?range=7d")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["range"] == {
        "date_from": (date.today() - timedelta(days=6)).isoformat(),
        "date_to": date.today().isoformat(),
    }
    assert body["overview"]["hub"]["name"] == "Main Hospital"
    assert body["overview"]["hub"]["today_appointments"] == 1
    assert len(body["stats"]["patient_volume_trends"]) == 7

    body = client.get("/admin/analytics/network.json?range=bogus").get_json()
    assert body["range"]["date_from"] == (date.today() - timedelta(days=29)).isoformat()


def test_revenue_json_custom_range(client, seeded):
    login(client, "admin@example.com")
    resp = client.get("/admin/analytics/revenue.json?date_from=2026-01-10&date_to=2026-01-01&interval=weekly")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["range"] == {"date_from": "2026-01-01", "date_to": "2026-01-10"}
    assert body["overview"]["total_revenue_cents"] == 0
    assert [row["bucket"] for row in body["ar_aging"]] == ["0-30", "31-60", "61-90", "90+"]
    assert {row["tier_name"] for row in body["memberships"]} == {"platinum", "gold", "silver"}
    assert all("-W" in p["period"] for p in body["time_series"])


def test_analytics_pages(client, seeded):
    login(client, "admin@example.com")
    assert client.get("/admin/analytics/network?range=today").status_code == 200
    assert client.get("/admin/analytics/revenue?interval=weekly").status_code == 200


def test_analytics_hidden_from_physicians(client, seeded):
    login(client, "doctor@example.com")
    r = client.get("/admin/analytics/revenue.json")
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/dashboard")
