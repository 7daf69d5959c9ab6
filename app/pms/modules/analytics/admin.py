from dataclasses import asdict
from datetime import date

from flask import Blueprint, render_template, request

from app.pms.db import db_session
from app.pms.modules.analytics.network import network_overview, network_stats
from app.pms.modules.analytics.ranges import PRESETS, DateRange, default_revenue_range, resolve_range
from app.pms.modules.analytics.revenue import (
    ar_aging_report,
    claims_analytics,
    collection_rate_by_payer,
    collection_rate_trend,
    membership_revenue,
    revenue_by_location,
    revenue_overview,
    revenue_time_series,
)
from app.pms.rbac import require_permission
from app.pms.validation import parse_date

bp = Blueprint("analytics_admin", __name__)


def _network_range() -> tuple[str, DateRange]:
    preset = (request.args.get("range") or "30d").strip()
    if preset not in PRESETS:
        preset = "30d"
    r = resolve_range(preset, parse_date(request.args.get("date_from")), parse_date(request.args.get("date_to")))
    return preset, r


def _revenue_range() -> DateRange:
    date_from = parse_date(request.args.get("date_from"))
    date_to = parse_date(request.args.get("date_to"))
    if date_from and date_to:
        return resolve_range("custom", date_from, date_to)
    return default_revenue_range()


def _interval() -> str:
    return "weekly" if (request.args.get("interval") or "").strip() == "weekly" else "monthly"


def _revenue_report(s, r: DateRange, interval: str) -> dict:
    return {
        "overview": asdict(revenue_overview(s, r)),
        "by_location": revenue_by_location(s, r),
        "time_series": revenue_time_series(s, r, interval),
        "claims": claims_analytics(s, r),
        "by_payer": collection_rate_by_payer(s, r),
        "memberships": membership_revenue(s, r),
        "ar_aging": ar_aging_report(s, date.today()),
        "collection_trend": collection_rate_trend(s, r),
    }


def _overview_dict(overview) -> dict:
    def node(n):
        return {
            "location_id": n.location.id,
            "name": n.location.name,
            "location_type": n.location.location_type,
            "provider_count": n.provider_count,
            "today_appointments": n.today_appointments,
            "status": n.status,
            "utilization": n.utilization,
        }

    return {
        "hub": node(overview.hub) if overview.hub else None,
        "spokes": [node(n) for n in overview.spokes],
        "total_providers": overview.total_providers,
        "total_appointments_today": overview.total_appointments_today,
        "network_utilization": overview.network_utilization,
    }


@bp.get("/network")
@require_permission("analytics.view")
def network():
    s = db_session()
    preset, r = _network_range()
    return render_template(
        "admin/analytics/network.html",
        overview=network_overview(s),
        stats=network_stats(s, r),
        preset=preset,
        presets=PRESETS,
        date_range=r,
    )


@bp.get("/network.json")
@require_permission("analytics.view")
def network_json():
    s = db_session()
    _, r = _network_range()
    return {
        "range": {"date_from": r.date_from.isoformat(), "date_to": r.date_to.isoformat()},
        "overview": _overview_dict(network_overview(s)),
        "stats": network_stats(s, r),
    }


@bp.get("/revenue")
@require_permission("analytics.view")
def revenue():
    s = db_session()
    r = _revenue_range()
    interval = _interval()
    return render_template(
        "admin/analytics/revenue.html",
        report=_revenue_report(s, r, interval),
        date_range=r,
        interval=interval,
    )


@bp.get("/revenue.json")
@require_permission("analytics.view")
def revenue_json():
    s = db_session()
    r = _revenue_range()
    report = _revenue_report(s, r, _interval())
    report["range"] = {"date_from": r.date_from.isoformat(), "date_to": r.date_to.isoformat()}
    return report
