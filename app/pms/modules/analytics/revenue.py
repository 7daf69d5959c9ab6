"""
Revenue analytics for the admin console.

All amounts are integer cents. Ranges are inclusive calendar days; the
default is the last 12 months.
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Any

from app.pms.modules.analytics.ranges import DateRange, months_in_range, pct
from app.pms.modules.billing.models import Invoice, MembershipTier, PatientMembership
from app.pms.modules.claims.models import InsuranceClaim, InsurancePayer
from app.pms.modules.encounters.models import Encounter
from app.pms.modules.locations.models import Location

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


PAID_INVOICE_STATUSES = ("paid", "partially_paid")
PAID_CLAIM_STATUSES = ("paid", "partially_paid")
PENDING_CLAIM_STATUSES = ("submitted", "acknowledged", "pending")
OUTSTANDING_CLAIM_STATUSES = ("submitted", "acknowledged", "pending", "appealed")
SURGICAL_THRESHOLD_CENTS = 100000  # invoices over $1,000

TARGET_REVENUE_CENTS = {
    "hub": 500_000_000,  # $5M
    "spoke": 250_000_000,  # $2.5M
    "mobile": 100_000_000,  # $1M
    "virtual": 50_000_000,  # $500K
}

AGING_BUCKETS = ("0-30", "31-60", "61-90", "90+")


@dataclass(frozen=True)
class RevenueOverview:
    total_revenue_cents: int
    membership_revenue_cents: int
    surgical_revenue_cents: int
    diagnostic_revenue_cents: int
    patient_count: int
    average_per_patient_cents: int
    revenue_growth_pct: float


def _paid_invoices(s: "Session", r: DateRange) -> list[Invoice]:
    return (
        s.query(Invoice)
        .filter(Invoice.status.in_(PAID_INVOICE_STATUSES))
        .filter(Invoice.created_at >= r.start)
        .filter(Invoice.created_at < r.end)
        .all()
    )


def _claims_in(s: "Session", r: DateRange) -> list[InsuranceClaim]:
    return (
        s.query(InsuranceClaim)
        .filter(InsuranceClaim.created_at >= r.start)
        .filter(InsuranceClaim.created_at < r.end)
        .all()
    )


def _tier_monthly_cents(tier: MembershipTier) -> int:
    return tier.monthly_price_cents or 0


def _membership_mrr_cents(s: "Session") -> int:
    memberships = s.query(PatientMembership).filter(PatientMembership.status == "active").all()
    return sum(_tier_monthly_cents(m.tier) for m in memberships if m.tier)


def revenue_overview(s: "Session", r: DateRange) -> RevenueOverview:
    invoices = _paid_invoices(s, r)
    total = sum(inv.amount_paid_cents or 0 for inv in invoices)
    membership = _membership_mrr_cents(s) * months_in_range(r)
    surgical = sum(inv.amount_paid_cents or 0 for inv in invoices if (inv.total_cents or 0) > SURGICAL_THRESHOLD_CENTS)
    patients = {inv.patient_id for inv in invoices}

    prev_total = sum(inv.amount_paid_cents or 0 for inv in _paid_invoices(s, r.previous()))
    growth = round((total - prev_total) / prev_total * 100, 1) if prev_total > 0 else 0.0
    return RevenueOverview(
        total_revenue_cents=total,
        membership_revenue_cents=membership,
        surgical_revenue_cents=surgical,
        diagnostic_revenue_cents=max(0, total - membership - surgical),
        patient_count=len(patients),
        average_per_patient_cents=round(total / len(patients)) if patients else 0,
        revenue_growth_pct=growth,
    )


def revenue_by_location(s: "Session", r: DateRange) -> list[dict[str, Any]]:
    encounter_locations = {
        enc_id: loc_id
        for enc_id, loc_id in s.query(Encounter.id, Encounter.location_id)
        .filter(Encounter.created_at >= r.start)
        .filter(Encounter.created_at < r.end)
        .all()
        if loc_id
    }
    revenue: dict[int, int] = defaultdict(int)
    billed: dict[int, int] = defaultdict(int)
    collected: dict[int, int] = defaultdict(int)
    claim_count: dict[int, int] = defaultdict(int)
    if encounter_locations:
        ids = list(encounter_locations)
        for inv in (
            s.query(Invoice)
            .filter(Invoice.encounter_id.in_(ids))
            .filter(Invoice.status.in_(PAID_INVOICE_STATUSES))
            .all()
        ):
            revenue[encounter_locations[inv.encounter_id]] += inv.amount_paid_cents or 0
        for claim in s.query(InsuranceClaim).filter(InsuranceClaim.encounter_id.in_(ids)).all():
            loc_id = encounter_locations[claim.encounter_id]
            claim_count[loc_id] += 1
            billed[loc_id] += claim.billed_amount_cents or 0
            collected[loc_id] += claim.paid_amount_cents or 0

    out = []
    for loc in s.query(Location).filter(Location.is_active.is_(True)).order_by(Location.name.asc()).all():
        target = TARGET_REVENUE_CENTS.get(loc.location_type, TARGET_REVENUE_CENTS["spoke"])
        out.append(
            {
                "location_id": loc.id,
                "location_name": loc.name,
                "location_type": loc.location_type,
                "total_revenue_cents": revenue.get(loc.id, 0),
                "claim_count": claim_count.get(loc.id, 0),
                "collection_rate": pct(collected.get(loc.id, 0), billed.get(loc.id, 0)),
                "target_revenue_cents": target,
                "percent_of_target": pct(revenue.get(loc.id, 0), target),
            }
        )
    return out


def period_key(d: date | datetime, interval: str) -> str:
    if interval == "weekly":
        year, week, _ = d.isocalendar()
        return f"{year}-W{week:02d}"
    return f"{d.year}-{d.month:02d}"


def _period_keys(r: DateRange, interval: str) -> list[str]:
    keys: list[str] = []
    cur = r.date_from
    step = timedelta(days=7 if interval == "weekly" else 1)
    while cur <= r.date_to:
        key = period_key(cur, interval)
        if key not in keys:
            keys.append(key)
        cur += step
    last = period_key(r.date_to, interval)
    if last not in keys:
        keys.append(last)
    return keys


def revenue_time_series(s: "Session", r: DateRange, interval: str = "monthly") -> list[dict[str, Any]]:
    if interval not in ("monthly", "weekly"):
        raise ValueError("Interval must be monthly or weekly.")
    buckets: dict[str, dict[str, int]] = {
        key: {"total": 0, "membership": 0, "surgical": 0, "claims": 0} for key in _period_keys(r, interval)
    }
    for inv in _paid_invoices(s, r):
        entry = buckets.setdefault(
            period_key(inv.created_at, interval), {"total": 0, "membership": 0, "surgical": 0, "claims": 0}
        )
        amount = inv.amount_paid_cents or 0
        entry["total"] += amount
        if inv.membership_tier_applied:
            entry["membership"] += amount
        elif (inv.total_cents or 0) > SURGICAL_THRESHOLD_CENTS:
            entry["surgical"] += amount
    for claim in _claims_in(s, r):
        if claim.status != "paid":
            continue
        key = period_key(claim.paid_at or claim.created_at, interval)
        if key in buckets:
            buckets[key]["claims"] += claim.paid_amount_cents or 0

    return [
        {
            "period": key,
            "total_revenue_cents": buckets[key]["total"],
            "membership_revenue_cents": buckets[key]["membership"],
            "surgical_revenue_cents": buckets[key]["surgical"],
            "claims_paid_cents": buckets[key]["claims"],
        }
        for key in sorted(buckets)
    ]


def _days_to_payment(claim: InsuranceClaim) -> int | None:
    if claim.status not in PAID_CLAIM_STATUSES or not claim.submitted_at or not claim.paid_at:
        return None
    days = round((claim.paid_at - claim.submitted_at).total_seconds() / 86400)
    return days if days >= 0 else None


def claims_analytics(s: "Session", r: DateRange) -> dict[str, Any]:
    claims = _claims_in(s, r)
    paid = [c for c in claims if c.status in PAID_CLAIM_STATUSES]
    denied = [c for c in claims if c.status == "denied"]
    in_appeal = [c for c in claims if c.status == "appealed"]
    billed = sum(c.billed_amount_cents or 0 for c in claims)
    collected = sum(c.paid_amount_cents or 0 for c in claims)
    pending = sum(c.billed_amount_cents or 0 for c in claims if c.status in PENDING_CLAIM_STATUSES)
    days = [d for d in (_days_to_payment(c) for c in claims) if d is not None]
    appealed = [c for c in claims if c.was_appealed]
    appeal_wins = [c for c in appealed if c.status in PAID_CLAIM_STATUSES]
    return {
        "total_submitted": len(claims),
        "total_paid": len(paid),
        "total_denied": len(denied),
        "total_in_appeal": len(in_appeal),
        "collection_rate": pct(collected, billed),
        "average_days_to_payment": round(sum(days) / len(days)) if days else 0,
        "denial_rate": pct(len(denied), len(claims)),
        "appeal_success_rate": pct(len(appeal_wins), len(appealed)),
        "total_billed_cents": billed,
        "total_collected_cents": collected,
        "total_pending_cents": pending,
    }


def collection_rate_by_payer(s: "Session", r: DateRange) -> list[dict[str, Any]]:
    payers = {p.id: p.name for p in s.query(InsurancePayer).filter(InsurancePayer.is_active.is_(True)).all()}
    if not payers:
        return []
    stats: dict[int, dict[str, Any]] = {}
    for c in _claims_in(s, r):
        if not c.payer_id:
            continue
        e = stats.setdefault(c.payer_id, {"count": 0, "billed": 0, "paid": 0, "denied": 0, "days": []})
        e["count"] += 1
        e["billed"] += c.billed_amount_cents or 0
        e["paid"] += c.paid_amount_cents or 0
        if c.status == "denied":
            e["denied"] += 1
        d = _days_to_payment(c)
        if d is not None:
            e["days"].append(d)

    out = [
        {
            "payer_name": payers.get(payer_id, "Unknown Payer"),
            "claim_count": e["count"],
            "collection_rate": pct(e["paid"], e["billed"]),
            "average_days_to_payment": round(sum(e["days"]) / len(e["days"])) if e["days"] else 0,
            "denial_rate": pct(e["denied"], e["count"]),
            "total_billed_cents": e["billed"],
            "total_paid_cents": e["paid"],
        }
        for payer_id, e in stats.items()
    ]
    out.sort(key=lambda row: row["collection_rate"], reverse=True)
    return out


def membership_revenue(s: "Session", r: DateRange) -> list[dict[str, Any]]:
    tiers = (
        s.query(MembershipTier)
        .filter(MembershipTier.is_active.is_(True))
        .order_by(MembershipTier.sort_order.asc())
        .all()
    )
    counts: dict[int, int] = defaultdict(int)
    for m in s.query(PatientMembership).filter(PatientMembership.status == "active").all():
        counts[m.tier_id] += 1
    months = months_in_range(r)

    rows = []
    for tier in tiers:
        members = counts.get(tier.id, 0)
        monthly = members * _tier_monthly_cents(tier)
        rows.append(
            {
                "tier_name": tier.name,
                "display_name": tier.display_name,
                "active_members": members,
                "monthly_revenue_cents": monthly,
                "total_revenue_cents": monthly * months,
            }
        )
    grand_total = sum(row["total_revenue_cents"] for row in rows)
    for row in rows:
        row["percent_of_total"] = pct(row["total_revenue_cents"], grand_total)
    return rows


def aging_bucket(days_old: int) -> str:
    if days_old <= 30:
        return "0-30"
    if days_old <= 60:
        return "31-60"
    if days_old <= 90:
        return "61-90"
    return "90+"


def ar_aging_report(s: "Session", today: date | None = None) -> list[dict[str, Any]]:
    now = datetime.combine(today or date.today(), datetime.min.time())
    buckets = {b: {"count": 0, "amount": 0} for b in AGING_BUCKETS}
    for c in s.query(InsuranceClaim).filter(InsuranceClaim.status.in_(OUTSTANDING_CLAIM_STATUSES)).all():
        ref = c.submitted_at or c.created_at
        days_old = round((now - ref).total_seconds() / 86400)
        entry = buckets[aging_bucket(days_old)]
        entry["count"] += 1
        entry["amount"] += max(0, (c.billed_amount_cents or 0) - (c.paid_amount_cents or 0))
    return [
        {"bucket": b, "claim_count": buckets[b]["count"], "total_amount_cents": buckets[b]["amount"]}
        for b in AGING_BUCKETS
    ]


def collection_rate_trend(s: "Session", r: DateRange) -> list[dict[str, Any]]:
    months = {key: {"billed": 0, "collected": 0, "count": 0} for key in _period_keys(r, "monthly")}
    for c in _claims_in(s, r):
        e = months.setdefault(period_key(c.created_at, "monthly"), {"billed": 0, "collected": 0, "count": 0})
        e["billed"] += c.billed_amount_cents or 0
        e["collected"] += c.paid_amount_cents or 0
        e["count"] += 1
    return [
        {"period": key, "collection_rate": pct(months[key]["collected"], months[key]["billed"]), "claim_count": months[key]["count"]}
        for key in sorted(months)
    ]
