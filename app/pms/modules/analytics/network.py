from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import TYPE_CHECKING, Any

from app.pms.modules.analytics.ranges import DateRange
from app.pms.modules.appointments.models import Appointment
from app.pms.modules.billing.models import Invoice
from app.pms.modules.encounters.models import Encounter
from app.pms.modules.locations.models import Location, ProviderLocation

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


COUNTED_STATUSES = ("scheduled", "confirmed", "in_progress", "completed")
SLOTS_PER_PROVIDER = 8


@dataclass(frozen=True)
class NetworkNode:
    location: Location
    provider_count: int
    today_appointments: int
    status: str  # healthy | warning | critical
    utilization: int


@dataclass(frozen=True)
class NetworkOverview:
    hub: NetworkNode | None
    spokes: list[NetworkNode]
    nodes: list[NetworkNode] = field(default_factory=list)
    total_providers: int = 0
    total_appointments_today: int = 0
    network_utilization: int = 0


def node_status(providers: int, appointments: int) -> str:
    if providers == 0:
        return "critical"
    if appointments == 0:
        return "warning"
    return "healthy"


def utilization(appointments: int, providers: int) -> int:
    slots = providers * SLOTS_PER_PROVIDER
    if slots <= 0:
        return 0
    return min(100, round(appointments / slots * 100))


def _active_locations(s: "Session") -> list[Location]:
    return (
        s.query(Location)
        .filter(Location.is_active.is_(True))
        .order_by(Location.location_type.asc(), Location.name.asc())
        .all()
    )


def _provider_sets(s: "Session") -> dict[int, set[int]]:
    out: dict[int, set[int]] = defaultdict(set)
    for loc_id, physician_id in s.query(ProviderLocation.location_id, ProviderLocation.physician_id).all():
        out[loc_id].add(physician_id)
    return out


def _appointments_in(s: "Session", r: DateRange) -> list[Appointment]:
    return (
        s.query(Appointment)
        .filter(Appointment.scheduled_start >= r.start)
        .filter(Appointment.scheduled_start < r.end)
        .filter(Appointment.status.in_(COUNTED_STATUSES))
        .all()
    )


def network_overview(s: "Session", today: date | None = None) -> NetworkOverview:
    today = today or date.today()
    locations = _active_locations(s)
    providers = _provider_sets(s)
    appt_counts: dict[int, int] = defaultdict(int)
    for a in _appointments_in(s, DateRange(today, today)):
        if a.location_id:
            appt_counts[a.location_id] += 1

    nodes = []
    for loc in locations:
        n_providers = len(providers.get(loc.id, ()))
        n_appts = appt_counts.get(loc.id, 0)
        nodes.append(
            NetworkNode(
                location=loc,
                provider_count=n_providers,
                today_appointments=n_appts,
                status=node_status(n_providers, n_appts),
                utilization=utilization(n_appts, n_providers),
            )
        )

    total_providers = sum(n.provider_count for n in nodes)
    total_appts = sum(n.today_appointments for n in nodes)
    return NetworkOverview(
        hub=next((n for n in nodes if n.location.location_type == "hub"), None),
        spokes=[n for n in nodes if n.location.location_type == "spoke"],
        nodes=nodes,
        total_providers=total_providers,
        total_appointments_today=total_appts,
        network_utilization=utilization(total_appts, total_providers),
    )


def location_appointment_stats(s: "Session", r: DateRange) -> list[dict[str, Any]]:
    counts: dict[int, int] = defaultdict(int)
    for a in _appointments_in(s, r):
        if a.location_id:
            counts[a.location_id] += 1
    return [
        {
            "location_id": loc.id,
            "location_name": loc.name,
            "location_type": loc.location_type,
            "appointment_count": counts.get(loc.id, 0),
        }
        for loc in _active_locations(s)
    ]


def patient_volume_trends(s: "Session", r: DateRange) -> list[dict[str, Any]]:
    """One point per day in range, one key per active location name, zero-filled."""
    locations = _active_locations(s)
    names = {loc.id: loc.name for loc in locations}
    by_day: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
    for a in _appointments_in(s, r):
        if a.location_id in names:
            by_day[a.scheduled_start.date().isoformat()][names[a.location_id]] += 1

    points = []
    for day in r.days:
        key = day.isoformat()
        point: dict[str, Any] = {"date": key}
        for loc in locations:
            point[loc.name] = by_day.get(key, {}).get(loc.name, 0)
        points.append(point)
    return points


def network_revenue_by_location(s: "Session", r: DateRange) -> list[dict[str, Any]]:
    rows = (
        s.query(Encounter.location_id, Invoice.total_cents)
        .join(Invoice, Invoice.encounter_id == Encounter.id)
        .filter(Encounter.created_at >= r.start)
        .filter(Encounter.created_at < r.end)
        .filter(Invoice.status.in_(("paid", "partially_paid")))
        .all()
    )
    revenue: dict[int, int] = defaultdict(int)
    for loc_id, total in rows:
        if loc_id:
            revenue[loc_id] += total or 0
    return [
        {
            "location_id": loc.id,
            "location_name": loc.name,
            "location_type": loc.location_type,
            "total_revenue_cents": revenue.get(loc.id, 0),
        }
        for loc in _active_locations(s)
    ]


def provider_utilization(s: "Session", r: DateRange) -> list[dict[str, Any]]:
    linked = _provider_sets(s)
    active: dict[int, set[int]] = defaultdict(set)
    for a in _appointments_in(s, r):
        if a.location_id:
            active[a.location_id].add(a.physician_id)
    out = []
    for loc in _active_locations(s):
        total = len(linked.get(loc.id, ()))
        n_active = len(active.get(loc.id, ()))
        out.append(
            {
                "location_id": loc.id,
                "location_name": loc.name,
                "location_type": loc.location_type,
                "total_providers": total,
                "active_providers": n_active,
                "utilization_percent": round(n_active / total * 100) if total else 0,
            }
        )
    return out


def network_stats(s: "Session", r: DateRange) -> dict[str, Any]:
    return {
        "appointments_by_location": location_appointment_stats(s, r),
        "patient_volume_trends": patient_volume_trends(s, r),
        "revenue_by_location": network_revenue_by_location(s, r),
        "provider_utilization": provider_utilization(s, r),
    }
