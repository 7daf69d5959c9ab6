"""
Patient portal: appointments and booking, visits, billing and payments,
membership, insurance, claims, superbills, telemedicine and profile.
"""
from datetime import date, datetime

from flask import Blueprint, abort, current_app, flash, g, redirect, render_template, request, url_for

from app.pms.db import db_session
from app.pms.modules.appointments.service import (
    available_providers,
    available_services,
    available_time_slots,
    booking_locations,
    cancel_appointment,
    create_appointment,
    get_appointment_for_user,
    list_patient_appointments,
)
from app.pms.modules.billing.checkout import CheckoutError, verify_payment_session
from app.pms.modules.billing.payments_client import PaymentsError, payments_client_from_config
from app.pms.modules.billing.service import (
    INVOICE_STATUSES,
    MEMBERSHIP_PRICING,
    PAYMENT_STATUSES,
    active_membership,
    billing_summary,
    get_invoice_for_patient,
    invoice_summary,
    is_payable,
    list_invoices,
    list_membership_tiers,
    payment_history,
    recent_invoices,
    recent_payments,
    recent_superbills,
)
from app.pms.modules.claims.service import (
    CLAIM_STATUSES,
    add_claim_note,
    claims_summary,
    generate_superbill,
    get_claim_detail,
    get_superbill,
    list_patient_claims,
    list_superbills,
)
from app.pms.modules.encounters.service import get_encounter_for_patient, list_patient_encounters
from app.pms.modules.insurance.schemas import PLAN_TYPES
from app.pms.modules.insurance.service import (
    get_verification,
    list_verifications,
    oon_benefits_summary,
    reimbursement_estimate,
    request_verification,
)
from app.pms.modules.locations.models import Location, ServiceCatalog
from app.pms.modules.locations.service import list_locations, list_providers
from app.pms.modules.notifications.service import list_notifications
from app.pms.modules.profiles.service import get_patient_profile, update_patient_profile
from app.pms.modules.telemedicine.schemas import SESSION_STATUSES, SESSION_TYPES
from app.pms.modules.telemedicine.service import (
    get_session_detail,
    join_waiting_room,
    list_patient_sessions,
    request_session,
    send_message,
    upcoming_sessions,
)
from app.pms.rbac import require_permission
from app.pms.validation import dollars_to_cents, errors_to_dict, parse_date, parse_int

bp = Blueprint("patient", __name__)


@bp.get("/dashboard")
def dashboard():
    s = db_session()
    user = g.current_user
    return render_template(
        "patient/dashboard.html",
        appointments=list_patient_appointments(s, user, "upcoming")[:3],
        billing=billing_summary(s, user),
        notifications=list_notifications(s, user, page_size=5, read_status="unread"),
        sessions=upcoming_sessions(s, user),
    )


# Appointments


@bp.get("/appointments")
@require_permission("appointments.book")
def appointments():
    s = db_session()
    view = "past" if request.args.get("view") == "past" else "upcoming"
    return render_template(
        "patient/appointments/list.html",
        appointments=list_patient_appointments(s, g.current_user, view),
        view=view,
    )


@bp.get("/appointments/<int:appointment_id>")
@require_permission("appointments.book")
def appointment_detail(appointment_id: int):
    s = db_session()
    appt = get_appointment_for_user(s, appointment_id, g.current_user)
    if not appt:
        abort(404)
    return render_template("patient/appointments/detail.html", appointment=appt)


@bp.post("/appointments/<int:appointment_id>/cancel")
@require_permission("appointments.book")
def appointment_cancel(appointment_id: int):
    s = db_session()
    try:
        cancel_appointment(s, g.current_user, appointment_id, request.form.get("reason"))
    except LookupError:
        abort(404)
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("patient.appointment_detail", appointment_id=appointment_id))
    s.commit()
    flash("Appointment cancelled.", "success")
    return redirect(url_for("patient.appointments"))


def _booking_state(args) -> dict:
    """Booking wizard state carried in query parameters."""
    return {
        "location_id": parse_int(args.get("location_id")),
        "service_id": parse_int(args.get("service_id")),
        "provider_id": parse_int(args.get("provider_id")),
        "date": parse_date(args.get("date") or args.get("appointment_date")),
        "time": (args.get("time") or args.get("appointment_time") or "").strip() or None,
    }


def _booking_page(state: dict, form: dict | None = None, field_errors: dict | None = None, status: int = 200):
    s = db_session()
    ctx: dict = {"state": state, "form": form or {}, "field_errors": field_errors or {}, "today": date.today()}
    if not state["location_id"]:
        ctx["step"] = "location"
        ctx["locations"] = booking_locations(s)
    elif not state["service_id"]:
        ctx["step"] = "service"
        ctx["services"] = available_services(s, state["location_id"])
    elif not state["provider_id"]:
        ctx["step"] = "provider"
        ctx["providers"] = available_providers(s, state["service_id"], state["location_id"])
    elif not state["date"] or not state["time"]:
        ctx["step"] = "datetime"
        if state["date"]:
            ctx["slots"] = available_time_slots(s, state["provider_id"], state["date"], state["location_id"])
    else:
        ctx["step"] = "confirm"
    ctx["location"] = s.get(Location, state["location_id"]) if state["location_id"] else None
    ctx["service"] = s.get(ServiceCatalog, state["service_id"]) if state["service_id"] else None
    ctx["provider"] = next(
        (p for p in available_providers(s, state["service_id"], state["location_id"]) if p.user_id == state["provider_id"]),
        None,
    ) if state["provider_id"] else None
    return render_template("patient/appointments/book.html", **ctx), status


@bp.get("/appointments/book")
@require_permission("appointments.book")
def book_get():
    return _booking_page(_booking_state(request.args))


@bp.post("/appointments/book")
@require_permission("appointments.book")
def book_post():
    s = db_session()
    form = request.form.to_dict()
    appt, errors = create_appointment(s, g.current_user, form)
    if errors:
        s.rollback()
        flash("; ".join(e.message for e in errors), "danger")
        state = _booking_state(request.form)
        # A taken or stale slot sends the patient back to time selection.
        if any(e.field in ("appointment_time", "appointment_date") for e in errors):
            state["time"] = None
        return _booking_page(state, form, errors_to_dict(errors), 400)
    s.commit()
    flash(f"Booked {appt.title} on {appt.scheduled_start.strftime('%b %d, %Y at %H:%M')}.", "success")
    return redirect(url_for("patient.appointment_detail", appointment_id=appt.id))


@bp.get("/providers")
def providers():
    s = db_session()
    specialty = (request.args.get("specialty") or "").strip() or None
    location_id = parse_int(request.args.get("location_id"))
    return render_template(
        "patient/providers.html",
        providers=list_providers(s, specialty=specialty, location_id=location_id),
        locations=list_locations(s),
        specialty=specialty or "",
        location_id=location_id,
    )


# Visits


@bp.get("/encounters")
@require_permission("encounters.view_own")
def encounters():
    s = db_session()
    return render_template("patient/encounters/list.html", encounters=list_patient_encounters(s, g.current_user))


@bp.get("/encounters/<int:encounter_id>")
@require_permission("encounters.view_own")
def encounter_detail(encounter_id: int):
    s = db_session()
    enc = get_encounter_for_patient(s, g.current_user, encounter_id)
    if not enc:
        abort(404)
    return render_template("patient/encounters/detail.html", encounter=enc)


@bp.post("/encounters/<int:encounter_id>/superbill")
@require_permission("claims.view_own")
def encounter_superbill(encounter_id: int):
    s = db_session()
    enc = get_encounter_for_patient(s, g.current_user, encounter_id)
    if not enc:
        abort(404)
    try:
        sb = generate_superbill(s, g.current_user, enc)
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("patient.encounter_detail", encounter_id=enc.id))
    s.commit()
    flash(f"Superbill {sb.superbill_number} generated.", "success")
    return redirect(url_for("patient.superbill_detail", superbill_id=sb.id))


# Billing


@bp.get("/billing")
@require_permission("billing.view_own")
def billing():
    s = db_session()
    user = g.current_user
    return render_template(
        "patient/billing/index.html",
        summary=billing_summary(s, user),
        invoices=recent_invoices(s, user),
        payments=recent_payments(s, user),
        superbills=recent_superbills(s, user),
        membership=active_membership(s, user.id),
    )


@bp.get("/billing/invoices")
@require_permission("billing.view_own")
def invoices():
    s = db_session()
    status = (request.args.get("status") or "").strip() or None
    date_from = parse_date(request.args.get("date_from"))
    date_to = parse_date(request.args.get("date_to"))
    return render_template(
        "patient/billing/invoices.html",
        invoices=list_invoices(
            s,
            g.current_user,
            status=status if status in INVOICE_STATUSES else None,
            date_from=date_from,
            date_to=date_to,
        ),
        summary=invoice_summary(s, g.current_user),
        statuses=INVOICE_STATUSES,
        status=status or "",
        date_from=date_from,
        date_to=date_to,
    )


@bp.get("/billing/invoices/<int:invoice_id>")
@require_permission("billing.view_own")
def invoice_detail(invoice_id: int):
    s = db_session()
    inv = get_invoice_for_patient(s, g.current_user, invoice_id)
    if not inv:
        abort(404)
    return render_template("patient/billing/invoice_detail.html", invoice=inv, payable=is_payable(inv))


@bp.get("/billing/payments")
@require_permission("billing.view_own")
def payments():
    s = db_session()
    status = (request.args.get("status") or "").strip() or None
    date_from = parse_date(request.args.get("date_from"))
    date_to = parse_date(request.args.get("date_to"))
    rows, summary = payment_history(
        s,
        g.current_user,
        status=status if status in PAYMENT_STATUSES else None,
        date_from=date_from,
        date_to=date_to,
    )
    return render_template(
        "patient/billing/payments.html",
        payments=rows,
        summary=summary,
        statuses=PAYMENT_STATUSES,
        status=status or "",
        date_from=date_from,
        date_to=date_to,
    )


@bp.get("/billing/checkout/success")
@require_permission("billing.pay")
def checkout_success():
    s = db_session()
    session_id = (request.args.get("session_id") or "").strip()
    verified = None
    error = None
    try:
        verified = verify_payment_session(s, payments_client_from_config(current_app), g.current_user, session_id)
        s.commit()
    except LookupError:
        s.rollback()
        error = "We could not find that payment."
    except CheckoutError as e:
        s.rollback()
        error = str(e)
    except PaymentsError as e:
        s.rollback()
        current_app.logger.warning("Payment verification failed session=%s: %s", session_id, e)
        error = "We could not confirm your payment yet. It will appear once the processor confirms it."
    return render_template("patient/billing/checkout_success.html", verified=verified, error=error)


@bp.get("/billing/checkout/cancelled")
@require_permission("billing.pay")
def checkout_cancelled():
    return render_template("patient/billing/checkout_cancelled.html")


@bp.get("/membership")
@require_permission("billing.view_own")
def membership():
    s = db_session()
    checkout = (request.args.get("checkout") or "").strip()
    if checkout == "success":
        flash("Thanks! Your membership will be active once payment is confirmed.", "success")
    elif checkout == "cancelled":
        flash("Membership checkout was cancelled.", "info")
    return render_template(
        "patient/membership.html",
        tiers=list_membership_tiers(s),
        pricing=MEMBERSHIP_PRICING,
        membership=active_membership(s, g.current_user.id),
    )


# Insurance


def _insurance_page(form: dict | None = None, field_errors: dict | None = None, status: int = 200):
    s = db_session()
    return (
        render_template(
            "patient/insurance/index.html",
            verifications=list_verifications(s, g.current_user),
            benefits=oon_benefits_summary(s, g.current_user),
            plan_types=PLAN_TYPES,
            form=form or {},
            field_errors=field_errors or {},
        ),
        status,
    )


@bp.get("/insurance")
@require_permission("insurance.request")
def insurance():
    return _insurance_page()


@bp.post("/insurance")
@require_permission("insurance.request")
def insurance_request():
    s = db_session()
    form = request.form.to_dict()
    v, errors = request_verification(s, g.current_user, form)
    if errors:
        s.rollback()
        flash("Please correct the errors below.", "danger")
        return _insurance_page(form, errors_to_dict(errors), 400)
    s.commit()
    flash("Verification requested. Our team will follow up.", "success")
    return redirect(url_for("patient.insurance_detail", verification_id=v.id))


@bp.get("/insurance/<int:verification_id>")
@require_permission("insurance.request")
def insurance_detail(verification_id: int):
    s = db_session()
    v = get_verification(s, g.current_user, verification_id)
    if not v:
        abort(404)
    return render_template("patient/insurance/detail.html", verification=v)


@bp.get("/insurance/estimate")
@require_permission("insurance.request")
def insurance_estimate():
    s = db_session()
    estimate = None
    error = None
    raw_cost = request.args.get("cost")
    if raw_cost:
        try:
            cost = dollars_to_cents(raw_cost)
            allowed = dollars_to_cents(request.args.get("allowed"))
            if cost is not None:
                estimate = reimbursement_estimate(s, g.current_user, cost, allowed)
        except ValueError as e:
            error = str(e)
    return render_template(
        "patient/insurance/estimate.html",
        estimate=estimate,
        error=error,
        benefits=oon_benefits_summary(s, g.current_user),
        cost=raw_cost or "",
        allowed=request.args.get("allowed") or "",
    )


# Claims and superbills


@bp.get("/claims")
@require_permission("claims.view_own")
def claims():
    s = db_session()
    status = (request.args.get("status") or "").strip() or None
    return render_template(
        "patient/claims/list.html",
        claims=list_patient_claims(s, g.current_user, status if status in CLAIM_STATUSES else None),
        summary=claims_summary(s, g.current_user),
        statuses=CLAIM_STATUSES,
        status=status or "",
    )


@bp.get("/claims/<int:claim_id>")
@require_permission("claims.view_own")
def claim_detail(claim_id: int):
    s = db_session()
    claim = get_claim_detail(s, g.current_user, claim_id)
    if not claim:
        abort(404)
    return render_template("patient/claims/detail.html", claim=claim, field_errors={})


@bp.post("/claims/<int:claim_id>/notes")
@require_permission("claims.view_own")
def claim_note(claim_id: int):
    s = db_session()
    claim = get_claim_detail(s, g.current_user, claim_id)
    if not claim:
        abort(404)
    errors = add_claim_note(s, g.current_user, claim, request.form.to_dict())
    if errors:
        s.rollback()
        flash(errors[0].message, "danger")
        return redirect(url_for("patient.claim_detail", claim_id=claim.id))
    s.commit()
    flash("Note added.", "success")
    return redirect(url_for("patient.claim_detail", claim_id=claim.id))


@bp.get("/superbills")
@require_permission("claims.view_own")
def superbills():
    s = db_session()
    return render_template("patient/superbills/list.html", superbills=list_superbills(s, g.current_user))


@bp.get("/superbills/<int:superbill_id>")
@require_permission("claims.view_own")
def superbill_detail(superbill_id: int):
    s = db_session()
    sb = get_superbill(s, g.current_user, superbill_id)
    if not sb:
        abort(404)
    return render_template(
        "patient/superbills/detail.html",
        superbill=sb,
        profile=get_patient_profile(s, g.current_user),
    )


# Telemedicine


def _telemedicine_filters() -> dict:
    status = (request.args.get("status") or "").strip() or None
    session_type = (request.args.get("session_type") or "").strip() or None
    return {
        "status": status if status in SESSION_STATUSES else None,
        "session_type": session_type if session_type in SESSION_TYPES else None,
        "date_from": parse_date(request.args.get("date_from")),
        "date_to": parse_date(request.args.get("date_to")),
    }


@bp.get("/telemedicine")
@require_permission("telemedicine.request")
def telemedicine():
    s = db_session()
    filters = _telemedicine_filters()
    return render_template(
        "patient/telemedicine/list.html",
        sessions=list_patient_sessions(s, g.current_user, **filters),
        filters=filters,
        statuses=SESSION_STATUSES,
        session_types=SESSION_TYPES,
    )


def _request_page(form: dict | None = None, field_errors: dict | None = None, status: int = 200):
    s = db_session()
    return (
        render_template(
            "patient/telemedicine/request.html",
            providers=list_providers(s),
            session_types=SESSION_TYPES,
            form=form or {},
            field_errors=field_errors or {},
        ),
        status,
    )


@bp.get("/telemedicine/request")
@require_permission("telemedicine.request")
def telemedicine_request_get():
    return _request_page({"physician_id": request.args.get("physician_id")})


@bp.post("/telemedicine/request")
@require_permission("telemedicine.request")
def telemedicine_request_post():
    s = db_session()
    form = request.form.to_dict()
    ts, errors = request_session(s, g.current_user, form)
    if errors:
        s.rollback()
        flash("Please correct the errors below.", "danger")
        return _request_page(form, errors_to_dict(errors), 400)
    s.commit()
    flash("Telemedicine session requested.", "success")
    return redirect(url_for("patient.telemedicine_detail", session_id=ts.id))


def _own_session(s, session_id: int):
    ts = get_session_detail(s, g.current_user, session_id)
    if not ts or ts.patient_id != g.current_user.id:
        abort(404)
    return ts


@bp.get("/telemedicine/<int:session_id>")
@require_permission("telemedicine.request")
def telemedicine_detail(session_id: int):
    s = db_session()
    return render_template("patient/telemedicine/detail.html", session=_own_session(s, session_id), now=datetime.utcnow())


@bp.post("/telemedicine/<int:session_id>/join")
@require_permission("telemedicine.request")
def telemedicine_join(session_id: int):
    s = db_session()
    ts = _own_session(s, session_id)
    try:
        join_waiting_room(s, g.current_user, ts, request.form.get("consent") == "on")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("patient.telemedicine_detail", session_id=ts.id))
    s.commit()
    flash("You are in the waiting room. Your physician will start the session shortly.", "success")
    return redirect(url_for("patient.telemedicine_detail", session_id=ts.id))


@bp.post("/telemedicine/<int:session_id>/messages")
@require_permission("telemedicine.request")
def telemedicine_message(session_id: int):
    s = db_session()
    ts = _own_session(s, session_id)
    try:
        send_message(s, g.current_user, ts, {"content": request.form.get("content"), "message_type": "text"})
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("patient.telemedicine_detail", session_id=ts.id))
    s.commit()
    return redirect(url_for("patient.telemedicine_detail", session_id=ts.id))


# Profile


@bp.get("/profile")
def profile():
    s = db_session()
    return render_template(
        "patient/profile.html",
        profile=get_patient_profile(s, g.current_user),
        benefits=oon_benefits_summary(s, g.current_user),
        form={},
        field_errors={},
    )


@bp.post("/profile")
def profile_post():
    s = db_session()
    form = request.form.to_dict()
    errors = update_patient_profile(s, g.current_user, form)
    if errors:
        s.rollback()
        flash("Please correct the errors below.", "danger")
        return (
            render_template(
                "patient/profile.html",
                profile=get_patient_profile(s, g.current_user),
                benefits=oon_benefits_summary(s, g.current_user),
                form=form,
                field_errors=errors_to_dict(errors),
            ),
            400,
        )
    s.commit()
    flash("Profile saved.", "success")
    return redirect(url_for("patient.profile"))
