"""
Physician portal: schedule, patient panel, encounter documentation and
telemedicine sessions.
"""
from datetime import date, datetime, timedelta

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for

from app.pms.db import db_session
from app.pms.modules.appointments.service import STATUSES as APPOINTMENT_STATUSES
from app.pms.modules.appointments.service import physician_schedule
from app.pms.modules.encounters.service import (
    STATUSES as ENCOUNTER_STATUSES,
    complete_encounter,
    completed_encounter_count,
    get_encounter_for_physician,
    list_physician_encounters,
    patient_history_for_physician,
    physician_patients,
    update_encounter_notes,
)
from app.pms.modules.profiles.service import get_physician_profile, update_physician_profile
from app.pms.modules.telemedicine.schemas import SESSION_STATUSES, SESSION_TYPES
from app.pms.modules.telemedicine.service import (
    end_session,
    get_session_detail,
    list_physician_sessions,
    send_message,
    update_session_status,
    upcoming_sessions,
)
from app.pms.rbac import require_permission
from app.pms.validation import errors_to_dict, parse_date

bp = Blueprint("physician", __name__)


@bp.get("/dashboard")
def dashboard():
    s = db_session()
    user = g.current_user
    today = date.today()
    month_start = today.replace(day=1)
    month_appts = physician_schedule(s, user, month_start, today + timedelta(days=31))
    month_appts = [a for a in month_appts if a.scheduled_start.month == today.month]
    stats = {
        "appointments_this_month": len(month_appts),
        "patients": len(physician_patients(s, user)),
        "completed_encounters": completed_encounter_count(s, user, month_start),
        "upcoming_sessions": len(upcoming_sessions(s, user)),
    }
    return render_template(
        "physician/dashboard.html",
        today=today,
        schedule=physician_schedule(s, user, today, today),
        stats=stats,
        pending=[e for e in list_physician_encounters(s, user) if e.status in ("checked_in", "in_progress")],
        sessions=upcoming_sessions(s, user),
    )


@bp.get("/schedule")
@require_permission("schedule.view")
def schedule():
    s = db_session()
    date_from = parse_date(request.args.get("date_from")) or date.today()
    date_to = parse_date(request.args.get("date_to")) or date_from + timedelta(days=6)
    if date_to < date_from:
        date_to = date_from
    status = (request.args.get("status") or "").strip() or None
    appts = physician_schedule(
        s, g.current_user, date_from, date_to, status if status in APPOINTMENT_STATUSES else None
    )
    days: dict[date, list] = {}
    for a in appts:
        days.setdefault(a.scheduled_start.date(), []).append(a)
    return render_template(
        "physician/schedule.html",
        days=days,
        date_from=date_from,
        date_to=date_to,
        status=status or "",
        statuses=APPOINTMENT_STATUSES,
    )


@bp.get("/patients")
@require_permission("patients.view")
def patients():
    s = db_session()
    q = (request.args.get("q") or "").strip() or None
    return render_template("physician/patients/list.html", patients=physician_patients(s, g.current_user, q), q=q or "")


@bp.get("/patients/<int:patient_id>")
@require_permission("patients.view")
def patient_detail(patient_id: int):
    s = db_session()
    history = patient_history_for_physician(s, g.current_user, patient_id)
    if not history:
        abort(404)
    return render_template("physician/patients/detail.html", **history)


# Encounters


@bp.get("/encounters")
@require_permission("encounters.document")
def encounters():
    s = db_session()
    status = (request.args.get("status") or "").strip() or None
    return render_template(
        "physician/encounters/list.html",
        encounters=list_physician_encounters(s, g.current_user, status if status in ENCOUNTER_STATUSES else None),
        statuses=ENCOUNTER_STATUSES,
        status=status or "",
    )


def _encounter_page(enc, form: dict | None = None, field_errors: dict | None = None, status: int = 200):
    return (
        render_template("physician/encounters/detail.html", encounter=enc, form=form or {}, field_errors=field_errors or {}),
        status,
    )


def _get_encounter(s, encounter_id: int):
    enc = get_encounter_for_physician(s, g.current_user, encounter_id)
    if not enc:
        abort(404)
    return enc


@bp.get("/encounters/<int:encounter_id>")
@require_permission("encounters.document")
def encounter_detail(encounter_id: int):
    s = db_session()
    return _encounter_page(_get_encounter(s, encounter_id))


@bp.post("/encounters/<int:encounter_id>/notes")
@require_permission("encounters.document")
def encounter_notes(encounter_id: int):
    s = db_session()
    enc = _get_encounter(s, encounter_id)
    form = request.form.to_dict()
    errors = update_encounter_notes(s, g.current_user, enc, form)
    if errors:
        s.rollback()
        flash(errors[0].message if errors[0].field == "form" else "Please correct the errors below.", "danger")
        return _encounter_page(enc, form, errors_to_dict(errors), 400)
    s.commit()
    flash("Notes saved.", "success")
    return redirect(url_for("physician.encounter_detail", encounter_id=enc.id))


@bp.post("/encounters/<int:encounter_id>/complete")
@require_permission("encounters.document")
def encounter_complete(encounter_id: int):
    s = db_session()
    enc = _get_encounter(s, encounter_id)
    try:
        complete_encounter(s, g.current_user, enc)
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("physician.encounter_detail", encounter_id=enc.id))
    s.commit()
    flash("Encounter completed.", "success")
    return redirect(url_for("physician.encounters"))


# Telemedicine


@bp.get("/telemedicine")
@require_permission("telemedicine.conduct")
def telemedicine():
    s = db_session()
    status = (request.args.get("status") or "").strip() or None
    session_type = (request.args.get("session_type") or "").strip() or None
    filters = {
        "status": status if status in SESSION_STATUSES else None,
        "session_type": session_type if session_type in SESSION_TYPES else None,
        "date_from": parse_date(request.args.get("date_from")),
        "date_to": parse_date(request.args.get("date_to")),
    }
    return render_template(
        "physician/telemedicine/list.html",
        sessions=list_physician_sessions(s, g.current_user, **filters),
        filters=filters,
        statuses=SESSION_STATUSES,
        session_types=SESSION_TYPES,
    )


def _own_session(s, session_id: int):
    ts = get_session_detail(s, g.current_user, session_id)
    if not ts or ts.physician_id != g.current_user.id:
        abort(404)
    return ts


@bp.get("/telemedicine/<int:session_id>")
@require_permission("telemedicine.conduct")
def telemedicine_detail(session_id: int):
    s = db_session()
    return render_template(
        "physician/telemedicine/detail.html",
        session=_own_session(s, session_id),
        statuses=SESSION_STATUSES,
        now=datetime.utcnow(),
    )


def _session_action(session_id: int, action, success: str):
    s = db_session()
    ts = _own_session(s, session_id)
    try:
        action(s, ts)
    except (ValueError, PermissionError) as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("physician.telemedicine_detail", session_id=ts.id))
    except LookupError:
        s.rollback()
        abort(404)
    s.commit()
    if success:
        flash(success, "success")
    return redirect(url_for("physician.telemedicine_detail", session_id=ts.id))


@bp.post("/telemedicine/<int:session_id>/status")
@require_permission("telemedicine.conduct")
def telemedicine_status(session_id: int):
    payload = request.form.to_dict()
    return _session_action(
        session_id,
        lambda s, ts: update_session_status(s, g.current_user, ts, payload),
        "Session updated.",
    )


@bp.post("/telemedicine/<int:session_id>/messages")
@require_permission("telemedicine.conduct")
def telemedicine_message(session_id: int):
    content = request.form.get("content")
    return _session_action(
        session_id,
        lambda s, ts: send_message(s, g.current_user, ts, {"content": content, "message_type": "text"}),
        "",
    )


@bp.post("/telemedicine/<int:session_id>/end")
@require_permission("telemedicine.conduct")
def telemedicine_end(session_id: int):
    return _session_action(session_id, lambda s, ts: end_session(s, g.current_user, ts), "Session ended.")


# Profile


def _profile_page(form: dict | None = None, field_errors: dict | None = None, status: int = 200):
    s = db_session()
    return (
        render_template(
            "physician/profile.html",
            profile=get_physician_profile(s, g.current_user.id),
            form=form or {},
            field_errors=field_errors or {},
        ),
        status,
    )


@bp.get("/profile")
def profile():
    return _profile_page()


@bp.post("/profile")
def profile_post():
    s = db_session()
    form = request.form.to_dict()
    errors = update_physician_profile(s, g.current_user, form)
    if errors:
        s.rollback()
        flash("Please correct the errors below.", "danger")
        return _profile_page(form, errors_to_dict(errors), 400)
    s.commit()
    flash("Profile saved.", "success")
    return redirect(url_for("physician.profile"))
