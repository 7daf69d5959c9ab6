from flask import Blueprint, abort, g, redirect, render_template, request, url_for

from app.pms.db import db_session
from app.pms.modules.billing.service import MEMBERSHIP_PRICING, list_membership_tiers
from app.pms.modules.locations.service import (
    get_location_by_slug,
    list_locations,
    list_services,
    location_providers,
)
from app.pms.rbac import home_url_for

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    return render_template("public/index.html")


@bp.get("/about")
def about():
    return render_template("public/about.html")


@bp.get("/services")
def services():
    s = db_session()
    category = (request.args.get("category") or "").strip() or None
    return render_template("public/services.html", services=list_services(s, category=category), category=category or "")


@bp.get("/pricing")
def pricing():
    s = db_session()
    return render_template("public/pricing.html", tiers=list_membership_tiers(s), pricing=MEMBERSHIP_PRICING)


@bp.get("/contact")
def contact():
    return render_template("public/contact.html")


@bp.get("/locations")
def locations():
    s = db_session()
    state = (request.args.get("state") or "").strip() or None
    location_type = (request.args.get("type") or "").strip() or None
    q = (request.args.get("q") or "").strip() or None
    rows = list_locations(s, state=state, location_type=location_type, q=q)
    return render_template(
        "public/locations.html",
        locations=rows,
        state=state or "",
        location_type=location_type or "",
        q=q or "",
    )


@bp.get("/locations/<slug>")
def location_detail(slug: str):
    s = db_session()
    loc = get_location_by_slug(s, slug)
    if not loc:
        abort(404)
    return render_template("public/location_detail.html", location=loc, providers=location_providers(s, loc.id))


@bp.get("/dashboard")
def dashboard():
    """Send a signed-in user to their role's home page."""
    user = getattr(g, "current_user", None)
    if not user:
        return redirect(url_for("auth.login_get"))
    return redirect(home_url_for(user))


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    """
    Fast health check for load balancer probes. No DB access, minimal overhead.
    """
    return "ok", 200
