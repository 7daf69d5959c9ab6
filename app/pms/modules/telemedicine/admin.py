from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for

from app.pms.db import db_session
from app.pms.modules.locations.service import list_physician_users
from app.pms.modules.telemedicine.models import TelemedicineSession
from app.pms.modules.telemedicine.schemas import SESSION_STATUSES, SESSION_TYPES
from app.pms.modules.telemedicine.service import (
    approve_session,
    cancel_session,
    list_all_sessions,
    pending_session_requests,
    session_counts_by_status,
    telemedicine_stats,
)
from app.pms.rbac import require_permission
from app.pms.validation import parse_date, parse_int

bp = Blueprint("telemedicine_admin", __name__)


def session_filters() -> dict:
    """Query-string filters shared by the admin and staff session lists."""
    status = (request.args.get("status") or "").strip() or None
    session_type = (request.args.get("session_type") or "").strip() or None
    return {
        "status": status if status in SESSION_STATUSES else None,
        "session_type": session_type if session_type in SESSION_TYPES else None,
        "date_from": parse_date(request.args.get("date_from")),
        "date_to": parse_date(request.args.get("date_to")),
        "physician_id": parse_int(request.args.get("physician_id")),
    }


def _get_session(s, session_id: int) -> TelemedicineSession:
    ts = s.get(TelemedicineSession, session_id)
    if not ts:
        abort(404)
    return ts


@bp.get("/")
@require_permission("telemedicine.manage")
def index():
    s = db_session()
    filters = session_filters()
    return render_template(
        "admin/telemedicine/list.html",
        sessions=list_all_sessions(s, **filters),
        pending=pending_session_requests(s),
        counts=session_counts_by_status(s),
        filters=filters,
        physicians=list_physician_users(s),
        statuses=SESSION_STATUSES,
        session_types=SESSION_TYPES,
    )


@bp.get("/stats")
@require_permission("telemedicine.manage")
def stats():
    s = db_session()
    date_from = parse_date(request.args.get("date_from"))
    date_to = parse_date(request.args.get("date_to"))
    return render_template(
        "admin/telemedicine/stats.html",
        stats=telemedicine_stats(s, date_from, date_to),
        date_from=date_from,
        date_to=date_to,
    )


@bp.get("/<int:session_id>")
@require_permission("telemedicine.manage")
def detail(session_id: int):
    s = db_session()
    return render_template("admin/telemedicine/detail.html", session=_get_session(s, session_id))


@bp.post("/<int:session_id>/approve")
@require_permission("telemedicine.manage")
def approve(session_id: int):
    s = db_session()
    ts = _get_session(s, session_id)
    try:
        approve_session(s, g.current_user, ts)
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("telemedicine_admin.detail", session_id=ts.id))
    s.commit()
    flash("Session approved.", "success")
    return redirect(url_for("telemedicine_admin.index"))


@bp.post("/<int:session_id>/cancel")
@require_permission("telemedicine.manage")
def cancel(session_id: int):
    s = db_session()
    ts = _get_session(s, session_id)
    try:
        cancel_session(s, g.current_user, ts, request.form.to_dict())
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("telemedicine_admin.detail", session_id=ts.id))
    s.commit()
    flash("Session cancelled.", "success")
    return redirect(url_for("telemedicine_admin.index"))
