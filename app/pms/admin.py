from datetime import date, datetime, time, timedelta

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for
from sqlalchemy import func

from app.pms.audit import audit_stats, record_event, search_events, user_activity
from app.pms.db import db_session
from app.pms.models import ROLE_KEYS, Role, User
from app.pms.modules.appointments.models import Appointment
from app.pms.modules.billing.service import list_membership_tiers
from app.pms.modules.claims.models import InsuranceClaim
from app.pms.modules.claims.service import PENDING_STATUSES as OPEN_CLAIM_STATUSES
from app.pms.modules.locations.models import Location
from app.pms.modules.profiles.models import PatientProfile, PhysicianProfile
from app.pms.modules.telemedicine.service import pending_session_requests
from app.pms.rbac import require_permission
from app.pms.validation import parse_date

bp = Blueprint("admin", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _users_by_role(s) -> dict[str, int]:
    rows = (
        s.query(Role.key, func.count(User.id))
        .join(Role.users)
        .filter(User.is_active.is_(True))
        .group_by(Role.key)
        .all()
    )
    counts = {key: 0 for key in ROLE_KEYS}
    counts.update({key: int(n) for key, n in rows})
    return counts


@bp.get("/")
@require_permission("admin.view")
def index():
    s = db_session()
    today = date.today()
    start = datetime.combine(today, time.min)
    counts = {
        "users_by_role": _users_by_role(s),
        "active_locations": s.query(Location).filter(Location.is_active.is_(True)).count(),
        "appointments_today": (
            s.query(Appointment)
            .filter(Appointment.scheduled_start >= start)
            .filter(Appointment.scheduled_start < start + timedelta(days=1))
            .filter(Appointment.status != "cancelled")
            .count()
        ),
        "open_claims": s.query(InsuranceClaim).filter(InsuranceClaim.status.in_(OPEN_CLAIM_STATUSES)).count(),
        "pending_telemedicine": len(pending_session_requests(s)),
        "unverified_physicians": s.query(PhysicianProfile).filter(PhysicianProfile.is_verified.is_(False)).count(),
    }
    return render_template("admin/index.html", counts=counts)


@bp.get("/users")
@require_permission("users.manage")
def users_list():
    s = db_session()
    role = (request.args.get("role") or "").strip()
    q = (request.args.get("q") or "").strip()
    query = s.query(User)
    if role in ROLE_KEYS:
        query = query.filter(User.roles.any(Role.key == role))
    if q:
        like = f"%{q}%"
        query = query.filter(User.email.ilike(like) | User.first_name.ilike(like) | User.last_name.ilike(like))
    users = query.order_by(User.created_at.desc(), User.id.desc()).limit(500).all()
    return render_template("admin/users/list.html", users=users, role=role, q=q, role_keys=ROLE_KEYS)


def _get_user_or_404(s, user_id: int) -> User:
    user = s.get(User, user_id)
    if not user:
        abort(404)
    return user


@bp.get("/users/<int:user_id>")
@require_permission("users.manage")
def user_detail(user_id: int):
    s = db_session()
    user = _get_user_or_404(s, user_id)
    return render_template(
        "admin/users/detail.html",
        user=user,
        roles=s.query(Role).order_by(Role.key.asc()).all(),
        patient_profile=s.query(PatientProfile).filter(PatientProfile.user_id == user.id).one_or_none(),
        physician_profile=s.query(PhysicianProfile).filter(PhysicianProfile.user_id == user.id).one_or_none(),
        events=user_activity(s, user),
    )


@bp.post("/users/<int:user_id>/active")
@require_permission("users.manage")
def user_toggle_active(user_id: int):
    s = db_session()
    actor = _current_user()
    user = _get_user_or_404(s, user_id)
    if user.id == actor.id:
        flash("You cannot deactivate your own account.", "danger")
        return redirect(url_for("admin.user_detail", user_id=user.id))
    user.is_active = not user.is_active
    record_event(
        s,
        actor=actor,
        action="user.activate" if user.is_active else "user.deactivate",
        entity_type="User",
        entity_id=str(user.id),
        reason=(request.form.get("reason") or "").strip() or None,
    )
    s.commit()
    flash(f"{user.email} is now {'active' if user.is_active else 'inactive'}.", "success")
    return redirect(url_for("admin.user_detail", user_id=user.id))


@bp.post("/users/<int:user_id>/roles")
@require_permission("users.manage")
def user_roles(user_id: int):
    s = db_session()
    actor = _current_user()
    user = _get_user_or_404(s, user_id)
    wanted = set(request.form.getlist("roles"))
    if not wanted:
        flash("A user needs at least one role.", "danger")
        return redirect(url_for("admin.user_detail", user_id=user.id))
    if user.id == actor.id and "admin" not in wanted:
        flash("You cannot remove your own admin role.", "danger")
        return redirect(url_for("admin.user_detail", user_id=user.id))

    before = sorted(user.role_keys)
    user.roles = s.query(Role).filter(Role.key.in_(wanted)).all()
    record_event(
        s,
        actor=actor,
        action="user.roles_update",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"before": before, "after": sorted(user.role_keys)},
    )
    s.commit()
    flash("Roles updated.", "success")
    return redirect(url_for("admin.user_detail", user_id=user.id))


@bp.post("/users/<int:user_id>/verify")
@require_permission("users.manage")
def physician_verify(user_id: int):
    s = db_session()
    actor = _current_user()
    user = _get_user_or_404(s, user_id)
    profile = s.query(PhysicianProfile).filter(PhysicianProfile.user_id == user.id).one_or_none()
    if not profile:
        abort(404)
    profile.is_verified = not profile.is_verified
    record_event(
        s,
        actor=actor,
        action="physician.verify" if profile.is_verified else "physician.unverify",
        entity_type="PhysicianProfile",
        entity_id=str(profile.id),
        metadata={"user_id": user.id, "npi": profile.npi},
    )
    s.commit()
    flash(f"Physician {'verified' if profile.is_verified else 'marked unverified'}.", "success")
    return redirect(url_for("admin.user_detail", user_id=user.id))


@bp.get("/audit")
@require_permission("audit.view")
def audit_list():
    """
    Audit trail UI (last 200 events) with filters:
    - action (contains)
    - actor_email (contains)
    - entity_type (exact)
    - date range (YYYY-MM-DD, inclusive)
    """
    s = db_session()
    action = (request.args.get("action") or "").strip()
    actor_email = (request.args.get("actor_email") or "").strip()
    entity_type = (request.args.get("entity_type") or "").strip()
    date_from = parse_date(request.args.get("date_from"))
    date_to = parse_date(request.args.get("date_to"))

    if (request.args.get("date_from") or "").strip() and not date_from:
        flash("date_from must be YYYY-MM-DD", "danger")
    if (request.args.get("date_to") or "").strip() and not date_to:
        flash("date_to must be YYYY-MM-DD", "danger")

    return render_template(
        "admin/audit/list.html",
        events=search_events(
            s,
            action=action,
            actor_email=actor_email,
            entity_type=entity_type,
            date_from=date_from,
            date_to=date_to,
        ),
        stats=audit_stats(s),
        action=action,
        actor_email=actor_email,
        entity_type=entity_type,
        date_from=(request.args.get("date_from") or "").strip(),
        date_to=(request.args.get("date_to") or "").strip(),
    )


@bp.get("/memberships")
@require_permission("memberships.view")
def memberships():
    s = db_session()
    return render_template("admin/memberships.html", tiers=list_membership_tiers(s, include_inactive=True))
