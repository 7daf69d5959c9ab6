from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for

from app.pms.audit import record_event
from app.pms.db import db_session
from app.pms.modules.locations.models import Location, ServiceCatalog
from app.pms.modules.locations.schemas import LOCATION_TYPES
from app.pms.modules.locations.service import (
    assign_provider,
    create_location,
    create_service,
    list_locations,
    list_physician_users,
    list_services,
    location_provider_counts,
    location_providers,
    offer_service,
    toggle_location_active,
    update_location,
    update_service,
)
from app.pms.rbac import require_permission
from app.pms.validation import errors_to_dict, parse_int

bp = Blueprint("locations_admin", __name__)


def _get_location(s, location_id: int) -> Location:
    loc = s.get(Location, location_id)
    if not loc:
        abort(404)
    return loc


def _get_service(s, service_id: int) -> ServiceCatalog:
    svc = s.get(ServiceCatalog, service_id)
    if not svc:
        abort(404)
    return svc


@bp.get("/locations")
@require_permission("locations.manage")
def locations_list():
    s = db_session()
    location_type = (request.args.get("type") or "").strip() or None
    rows = list_locations(s, location_type=location_type, include_inactive=True)
    return render_template(
        "admin/locations/list.html",
        locations=rows,
        provider_counts=location_provider_counts(s),
        location_types=LOCATION_TYPES,
        location_type=location_type or "",
    )


def _location_form(loc: Location | None, form: dict | None = None, field_errors: dict | None = None, status: int = 200):
    s = db_session()
    parents = [p for p in list_locations(s, include_inactive=True) if not loc or p.id != loc.id]
    return (
        render_template(
            "admin/locations/form.html",
            location=loc,
            form=form or {},
            field_errors=field_errors or {},
            parents=parents,
            location_types=LOCATION_TYPES,
        ),
        status,
    )


@bp.get("/locations/new")
@require_permission("locations.manage")
def locations_new_get():
    return _location_form(None)


@bp.post("/locations/new")
@require_permission("locations.manage")
def locations_new_post():
    s = db_session()
    form = request.form.to_dict()
    loc, errors = create_location(s, form, g.current_user)
    if errors:
        s.rollback()
        flash("Please correct the errors below.", "danger")
        return _location_form(None, form, errors_to_dict(errors), 400)
    s.commit()
    flash(f"Location '{loc.name}' created.", "success")
    return redirect(url_for("locations_admin.locations_detail", location_id=loc.id))


@bp.get("/locations/<int:location_id>")
@require_permission("locations.manage")
def locations_detail(location_id: int):
    s = db_session()
    loc = _get_location(s, location_id)
    providers = location_providers(s, loc.id)
    assigned = {p.id for p in providers}
    return render_template(
        "admin/locations/detail.html",
        location=loc,
        providers=providers,
        available_physicians=[u for u in list_physician_users(s) if u.id not in assigned],
    )


@bp.get("/locations/<int:location_id>/edit")
@require_permission("locations.manage")
def locations_edit_get(location_id: int):
    s = db_session()
    loc = _get_location(s, location_id)
    return _location_form(loc)


@bp.post("/locations/<int:location_id>/edit")
@require_permission("locations.manage")
def locations_edit_post(location_id: int):
    s = db_session()
    loc = _get_location(s, location_id)
    form = request.form.to_dict()
    errors = update_location(s, loc, form, g.current_user)
    if errors:
        s.rollback()
        flash("Please correct the errors below.", "danger")
        return _location_form(loc, form, errors_to_dict(errors), 400)
    s.commit()
    flash("Location updated.", "success")
    return redirect(url_for("locations_admin.locations_detail", location_id=loc.id))


@bp.post("/locations/<int:location_id>/toggle")
@require_permission("locations.manage")
def locations_toggle(location_id: int):
    s = db_session()
    loc = toggle_location_active(s, _get_location(s, location_id), g.current_user)
    s.commit()
    flash(f"Location {'activated' if loc.is_active else 'deactivated'}.", "success")
    return redirect(url_for("locations_admin.locations_detail", location_id=loc.id))


@bp.post("/locations/<int:location_id>/providers")
@require_permission("locations.manage")
def locations_assign_provider(location_id: int):
    s = db_session()
    loc = _get_location(s, location_id)
    physician_id = parse_int(request.form.get("physician_id"))
    if not physician_id:
        flash("Choose a physician.", "danger")
        return redirect(url_for("locations_admin.locations_detail", location_id=loc.id))
    try:
        assign_provider(s, loc, physician_id, g.current_user, is_primary=request.form.get("is_primary") == "on")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("locations_admin.locations_detail", location_id=loc.id))
    s.commit()
    flash("Provider assigned.", "success")
    return redirect(url_for("locations_admin.locations_detail", location_id=loc.id))


@bp.get("/services")
@require_permission("catalog.manage")
def services_list():
    s = db_session()
    category = (request.args.get("category") or "").strip() or None
    return render_template(
        "admin/services/list.html",
        services=list_services(s, category=category, include_inactive=True),
        category=category or "",
    )


def _service_form(svc: ServiceCatalog | None, form: dict | None = None, field_errors: dict | None = None, status: int = 200):
    s = db_session()
    return (
        render_template(
            "admin/services/form.html",
            service=svc,
            form=form or {},
            field_errors=field_errors or {},
            physicians=list_physician_users(s) if svc else [],
        ),
        status,
    )


@bp.get("/services/new")
@require_permission("catalog.manage")
def services_new_get():
    return _service_form(None)


@bp.post("/services/new")
@require_permission("catalog.manage")
def services_new_post():
    s = db_session()
    form = request.form.to_dict()
    svc, errors = create_service(s, form, g.current_user)
    if errors:
        s.rollback()
        flash("Please correct the errors below.", "danger")
        return _service_form(None, form, errors_to_dict(errors), 400)
    s.commit()
    flash(f"Service '{svc.name}' created.", "success")
    return redirect(url_for("locations_admin.services_list"))


@bp.get("/services/<int:service_id>/edit")
@require_permission("catalog.manage")
def services_edit_get(service_id: int):
    s = db_session()
    return _service_form(_get_service(s, service_id))


@bp.post("/services/<int:service_id>/edit")
@require_permission("catalog.manage")
def services_edit_post(service_id: int):
    s = db_session()
    svc = _get_service(s, service_id)
    form = request.form.to_dict()
    errors = update_service(s, svc, form, g.current_user)
    if errors:
        s.rollback()
        flash("Please correct the errors below.", "danger")
        return _service_form(svc, form, errors_to_dict(errors), 400)
    s.commit()
    flash("Service updated.", "success")
    return redirect(url_for("locations_admin.services_list"))


@bp.post("/services/<int:service_id>/providers")
@require_permission("catalog.manage")
def services_offer(service_id: int):
    s = db_session()
    svc = _get_service(s, service_id)
    physician_id = parse_int(request.form.get("physician_id"))
    physician = next((u for u in list_physician_users(s) if u.id == physician_id), None)
    if not physician:
        flash("Choose a physician.", "danger")
        return redirect(url_for("locations_admin.services_edit_get", service_id=svc.id))
    offer_service(s, physician.id, svc.id)
    record_event(
        s,
        actor=g.current_user,
        action="service.offer",
        entity_type="ServiceCatalog",
        entity_id=str(svc.id),
        metadata={"physician_id": physician.id},
    )
    s.commit()
    flash(f"{physician.full_name} now offers {svc.name}.", "success")
    return redirect(url_for("locations_admin.services_edit_get", service_id=svc.id))
