"""
Staff console: front desk queue, scheduling, tasks, invoicing, insurance
verification, claims and telemedicine requests.
"""
from datetime import date

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for

from app.pms.db import db_session
from app.pms.modules.appointments.models import Appointment
from app.pms.modules.appointments.service import STATUSES as APPOINTMENT_STATUSES
from app.pms.modules.billing.models import Invoice
from app.pms.modules.billing.service import (
    INVOICE_STATUSES,
    create_invoice,
    list_all_invoices,
    mark_overdue,
    send_invoice,
    void_invoice,
)
from app.pms.modules.claims.models import InsuranceClaim
from app.pms.modules.claims.service import (
    CLAIM_STATUSES,
    STATUS_TRANSITIONS,
    change_claim_status,
    create_claim,
    create_payer,
    list_all_claims,
    list_payers,
)
from app.pms.modules.insurance.models import InsuranceVerification
from app.pms.modules.insurance.schemas import RESULT_STATUSES
from app.pms.modules.insurance.service import list_pending_verifications, record_verification_result
from app.pms.modules.locations.service import list_locations, list_physician_users, list_services
from app.pms.modules.staff.models import StaffTask
from app.pms.modules.staff.schemas import TASK_CATEGORIES, TASK_PRIORITIES
from app.pms.modules.staff.service import (
    TASK_STATUSES,
    cancel_appointment_by_staff,
    check_in_patient,
    complete_task,
    confirm_appointment,
    create_task,
    list_tasks,
    mark_no_show,
    scheduling_view,
    staff_dashboard,
)
from app.pms.modules.telemedicine.models import TelemedicineSession
from app.pms.modules.telemedicine.schemas import SESSION_STATUSES, SESSION_TYPES
from app.pms.modules.telemedicine.service import approve_session, cancel_session, list_all_sessions, pending_session_requests
from app.pms.modules.telemedicine.admin import session_filters
from app.pms.rbac import require_permission
from app.pms.validation import dollars_to_cents, errors_to_dict, parse_date, parse_int

bp = Blueprint("staff", __name__)

MAX_INVOICE_LINES = 10


def _get_or_404(s, model, obj_id: int):
    obj = s.get(model, obj_id)
    if not obj:
        abort(404)
    return obj


def _back(default_endpoint: str, **kwargs):
    # Return to the page the action was posted from when it is local.
    nxt = (request.form.get("next") or "").strip()
    if nxt.startswith("/") and not nxt.startswith("//"):
        return redirect(nxt)
    return redirect(url_for(default_endpoint, **kwargs))


@bp.get("/dashboard")
@require_permission("appointments.manage")
def dashboard():
    s = db_session()
    location_id = parse_int(request.args.get("location_id"))
    return render_template(
        "staff/dashboard.html",
        board=staff_dashboard(s, location_id=location_id),
        locations=list_locations(s),
        location_id=location_id,
    )


@bp.get("/scheduling")
@require_permission("appointments.manage")
def scheduling():
    s = db_session()
    today = date.today()
    date_from = parse_date(request.args.get("date_from")) or today
    date_to = parse_date(request.args.get("date_to")) or date_from
    status = (request.args.get("status") or "").strip() or None
    physician_id = parse_int(request.args.get("physician_id"))
    location_id = parse_int(request.args.get("location_id"))
    appointments = scheduling_view(
        s,
        date_from=date_from,
        date_to=date_to,
        physician_id=physician_id,
        location_id=location_id,
        status=status if status in APPOINTMENT_STATUSES else None,
    )
    return render_template(
        "staff/scheduling.html",
        appointments=appointments,
        date_from=date_from,
        date_to=date_to,
        status=status or "",
        physician_id=physician_id,
        location_id=location_id,
        physicians=list_physician_users(s),
        locations=list_locations(s),
        statuses=APPOINTMENT_STATUSES,
    )


def _appointment_action(appointment_id: int, action, success: str, *args):
    s = db_session()
    appt = _get_or_404(s, Appointment, appointment_id)
    try:
        action(s, appt, g.current_user, *args)
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return _back("staff.dashboard")
    s.commit()
    flash(success, "success")
    return _back("staff.dashboard")


@bp.post("/appointments/<int:appointment_id>/confirm")
@require_permission("appointments.manage")
def appointment_confirm(appointment_id: int):
    return _appointment_action(appointment_id, confirm_appointment, "Appointment confirmed.")


@bp.post("/appointments/<int:appointment_id>/cancel")
@require_permission("appointments.manage")
def appointment_cancel(appointment_id: int):
    return _appointment_action(appointment_id, cancel_appointment_by_staff, "Appointment cancelled.", request.form.to_dict())


@bp.post("/appointments/<int:appointment_id>/no-show")
@require_permission("appointments.manage")
def appointment_no_show(appointment_id: int):
    return _appointment_action(appointment_id, mark_no_show, "Marked as no-show.")


@bp.post("/appointments/<int:appointment_id>/check-in")
@require_permission("appointments.manage")
def appointment_check_in(appointment_id: int):
    return _appointment_action(appointment_id, check_in_patient, "Patient checked in.", request.form.to_dict())


# Tasks


@bp.get("/tasks")
@require_permission("tasks.manage")
def tasks():
    s = db_session()
    filters = {
        "status": (request.args.get("status") or "").strip() or None,
        "category": (request.args.get("category") or "").strip() or None,
        "priority": (request.args.get("priority") or "").strip() or None,
    }
    if request.args.get("mine") == "1":
        filters["assigned_to_user_id"] = g.current_user.id
    return render_template(
        "staff/tasks.html",
        tasks=list_tasks(s, **filters),
        filters=filters,
        statuses=TASK_STATUSES,
        categories=TASK_CATEGORIES,
        priorities=TASK_PRIORITIES,
        form={},
        field_errors={},
    )


@bp.post("/tasks")
@require_permission("tasks.manage")
def tasks_create():
    s = db_session()
    form = request.form.to_dict()
    task, errors = create_task(s, form, g.current_user)
    if errors:
        s.rollback()
        flash("Please correct the errors below.", "danger")
        return (
            render_template(
                "staff/tasks.html",
                tasks=list_tasks(s),
                filters={},
                statuses=TASK_STATUSES,
                categories=TASK_CATEGORIES,
                priorities=TASK_PRIORITIES,
                form=form,
                field_errors=errors_to_dict(errors),
            ),
            400,
        )
    s.commit()
    flash(f"Task '{task.title}' created.", "success")
    return redirect(url_for("staff.tasks"))


@bp.post("/tasks/<int:task_id>/complete")
@require_permission("tasks.manage")
def tasks_complete(task_id: int):
    s = db_session()
    task = _get_or_404(s, StaffTask, task_id)
    try:
        complete_task(s, task, g.current_user)
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("staff.tasks"))
    s.commit()
    flash("Task completed.", "success")
    return redirect(url_for("staff.tasks"))


# Invoices


def _invoice_payload(form) -> dict:
    """Flatten the repeated line_* form fields into the invoice payload."""
    lines = []
    service_ids = form.getlist("line_service_id")
    descriptions = form.getlist("line_description")
    qtys = form.getlist("line_qty")
    prices = form.getlist("line_unit_price")
    for i in range(min(MAX_INVOICE_LINES, max(len(service_ids), len(descriptions)))):
        service_id = parse_int(service_ids[i]) if i < len(service_ids) else None
        description = (descriptions[i] if i < len(descriptions) else "").strip() or None
        raw_price = prices[i] if i < len(prices) else ""
        if service_id is None and description is None:
            continue
        try:
            unit = dollars_to_cents(raw_price)
        except ValueError:
            unit = -1  # rejected by the schema
        lines.append(
            {
                "service_id": service_id,
                "description": description,
                "qty": parse_int(qtys[i]) if i < len(qtys) and qtys[i].strip() else 1,
                "unit_price_cents": unit,
            }
        )
    return {
        "patient_id": parse_int(form.get("patient_id")),
        "encounter_id": parse_int(form.get("encounter_id")),
        "line_items": lines,
        "notes": (form.get("notes") or "").strip() or None,
    }


@bp.get("/invoices")
@require_permission("invoices.manage")
def invoices():
    s = db_session()
    status = (request.args.get("status") or "").strip() or None
    q = (request.args.get("q") or "").strip() or None
    return render_template(
        "staff/invoices/list.html",
        invoices=list_all_invoices(s, status=status if status in INVOICE_STATUSES else None, q=q),
        status=status or "",
        q=q or "",
        statuses=INVOICE_STATUSES,
    )


def _invoice_form(form: dict | None = None, field_errors: dict | None = None, status: int = 200):
    s = db_session()
    return (
        render_template(
            "staff/invoices/form.html",
            form=form or {},
            field_errors=field_errors or {},
            services=list_services(s),
            max_lines=MAX_INVOICE_LINES,
        ),
        status,
    )


@bp.get("/invoices/new")
@require_permission("invoices.manage")
def invoices_new_get():
    return _invoice_form({"encounter_id": request.args.get("encounter_id"), "patient_id": request.args.get("patient_id")})


@bp.post("/invoices/new")
@require_permission("invoices.manage")
def invoices_new_post():
    s = db_session()
    inv, errors = create_invoice(s, _invoice_payload(request.form), g.current_user)
    if errors:
        s.rollback()
        flash("; ".join(e.message for e in errors), "danger")
        return _invoice_form(request.form.to_dict(), errors_to_dict(errors), 400)
    s.commit()
    flash(f"Invoice {inv.invoice_number} created as draft.", "success")
    return redirect(url_for("staff.invoices_detail", invoice_id=inv.id))


@bp.get("/invoices/<int:invoice_id>")
@require_permission("invoices.manage")
def invoices_detail(invoice_id: int):
    s = db_session()
    inv = _get_or_404(s, Invoice, invoice_id)
    return render_template("staff/invoices/detail.html", invoice=inv, payers=list_payers(s))


def _invoice_action(invoice_id: int, action, success: str, **kwargs):
    s = db_session()
    inv = _get_or_404(s, Invoice, invoice_id)
    try:
        action(s, inv, g.current_user, **kwargs)
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("staff.invoices_detail", invoice_id=inv.id))
    s.commit()
    flash(success, "success")
    return redirect(url_for("staff.invoices_detail", invoice_id=inv.id))


@bp.post("/invoices/<int:invoice_id>/send")
@require_permission("invoices.manage")
def invoices_send(invoice_id: int):
    return _invoice_action(invoice_id, send_invoice, "Invoice sent to patient.")


@bp.post("/invoices/<int:invoice_id>/void")
@require_permission("invoices.manage")
def invoices_void(invoice_id: int):
    reason = (request.form.get("reason") or "").strip() or None
    return _invoice_action(invoice_id, void_invoice, "Invoice voided.", reason=reason)


@bp.post("/invoices/mark-overdue")
@require_permission("invoices.manage")
def invoices_mark_overdue():
    s = db_session()
    count = mark_overdue(s)
    s.commit()
    flash(f"{count} invoice(s) marked overdue.", "success")
    return redirect(url_for("staff.invoices"))


# Insurance verification


@bp.get("/insurance")
@require_permission("insurance.verify")
def insurance():
    s = db_session()
    return render_template("staff/insurance/list.html", verifications=list_pending_verifications(s))


@bp.get("/insurance/<int:verification_id>")
@require_permission("insurance.verify")
def insurance_detail(verification_id: int):
    s = db_session()
    v = _get_or_404(s, InsuranceVerification, verification_id)
    return render_template(
        "staff/insurance/detail.html",
        verification=v,
        result_statuses=RESULT_STATUSES,
        form={},
        field_errors={},
    )


@bp.post("/insurance/<int:verification_id>/result")
@require_permission("insurance.verify")
def insurance_result(verification_id: int):
    s = db_session()
    v = _get_or_404(s, InsuranceVerification, verification_id)
    form = request.form.to_dict()
    errors = record_verification_result(s, v, form, g.current_user)
    if errors:
        s.rollback()
        flash("Please correct the errors below.", "danger")
        return (
            render_template(
                "staff/insurance/detail.html",
                verification=v,
                result_statuses=RESULT_STATUSES,
                form=form,
                field_errors=errors_to_dict(errors),
            ),
            400,
        )
    s.commit()
    flash("Verification result recorded.", "success")
    return redirect(url_for("staff.insurance"))


# Claims


@bp.get("/claims")
@require_permission("claims.manage")
def claims():
    s = db_session()
    status = (request.args.get("status") or "").strip() or None
    return render_template(
        "staff/claims/list.html",
        claims=list_all_claims(s, status=status if status in CLAIM_STATUSES else None),
        status=status or "",
        statuses=CLAIM_STATUSES,
    )


@bp.post("/claims")
@require_permission("claims.manage")
def claims_create():
    s = db_session()
    claim, errors = create_claim(s, request.form.to_dict(), g.current_user)
    if errors:
        s.rollback()
        flash("; ".join(e.message for e in errors), "danger")
        invoice_id = parse_int(request.form.get("invoice_id"))
        if invoice_id:
            return redirect(url_for("staff.invoices_detail", invoice_id=invoice_id))
        return redirect(url_for("staff.claims"))
    s.commit()
    flash(f"Claim {claim.claim_number} created.", "success")
    return redirect(url_for("staff.claims_detail", claim_id=claim.id))


@bp.get("/claims/<int:claim_id>")
@require_permission("claims.manage")
def claims_detail(claim_id: int):
    s = db_session()
    claim = _get_or_404(s, InsuranceClaim, claim_id)
    return render_template(
        "staff/claims/detail.html",
        claim=claim,
        next_statuses=STATUS_TRANSITIONS.get(claim.status, ()),
    )


@bp.post("/claims/<int:claim_id>/status")
@require_permission("claims.manage")
def claims_status(claim_id: int):
    s = db_session()
    claim = _get_or_404(s, InsuranceClaim, claim_id)
    try:
        change_claim_status(s, claim, request.form.to_dict(), g.current_user)
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("staff.claims_detail", claim_id=claim.id))
    s.commit()
    flash("Claim updated.", "success")
    return redirect(url_for("staff.claims_detail", claim_id=claim.id))


@bp.get("/payers")
@require_permission("claims.manage")
def payers():
    s = db_session()
    return render_template("staff/claims/payers.html", payers=list_payers(s), form={}, field_errors={})


@bp.post("/payers")
@require_permission("claims.manage")
def payers_create():
    s = db_session()
    form = request.form.to_dict()
    payer, errors = create_payer(s, form, g.current_user)
    if errors:
        s.rollback()
        flash("Please correct the errors below.", "danger")
        return (
            render_template("staff/claims/payers.html", payers=list_payers(s), form=form, field_errors=errors_to_dict(errors)),
            400,
        )
    s.commit()
    flash(f"Payer '{payer.name}' added.", "success")
    return redirect(url_for("staff.payers"))


# Telemedicine requests


@bp.get("/telemedicine")
@require_permission("telemedicine.manage")
def telemedicine():
    s = db_session()
    filters = session_filters()
    return render_template(
        "staff/telemedicine.html",
        sessions=list_all_sessions(s, **filters),
        pending=pending_session_requests(s),
        filters=filters,
        statuses=SESSION_STATUSES,
        session_types=SESSION_TYPES,
    )


@bp.post("/telemedicine/<int:session_id>/approve")
@require_permission("telemedicine.manage")
def telemedicine_approve(session_id: int):
    s = db_session()
    ts = _get_or_404(s, TelemedicineSession, session_id)
    try:
        approve_session(s, g.current_user, ts)
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("staff.telemedicine"))
    s.commit()
    flash("Session approved.", "success")
    return redirect(url_for("staff.telemedicine"))


@bp.post("/telemedicine/<int:session_id>/cancel")
@require_permission("telemedicine.manage")
def telemedicine_cancel(session_id: int):
    s = db_session()
    ts = _get_or_404(s, TelemedicineSession, session_id)
    try:
        cancel_session(s, g.current_user, ts, request.form.to_dict())
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("staff.telemedicine"))
    s.commit()
    flash("Session cancelled.", "success")
    return redirect(url_for("staff.telemedicine"))
