import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, render_template, request, session

from app.pms.config import load_config
from app.pms.db import init_db, teardown_db_session
from app.pms.routes import bp as routes_bp
from app.pms.auth import bp as auth_bp, load_current_user
from app.pms.admin import bp as admin_bp
from app.pms.api import bp as api_bp
from app.pms.modules.analytics.admin import bp as analytics_admin_bp
from app.pms.modules.locations.admin import bp as locations_admin_bp
from app.pms.modules.notifications.routes import bp as notifications_bp
from app.pms.modules.portals.patient import bp as patient_bp
from app.pms.modules.portals.physician import bp as physician_bp
from app.pms.modules.profiles.routes import bp as settings_bp
from app.pms.modules.staff.routes import bp as staff_bp
from app.pms.modules.telemedicine.admin import bp as telemedicine_admin_bp

# Endpoints that accept POSTs without a session CSRF token.
CSRF_EXEMPT_ENDPOINTS = ("api.stripe_webhook",)


def create_app(config_overrides: dict | None = None) -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_mapping(load_config())
    if config_overrides:
        app.config.update(config_overrides)
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    from app.pms.security import ensure_csrf_token, validate_csrf

    @app.context_processor
    def _inject_csrf() -> dict:
        return {"csrf_token": ensure_csrf_token()}

    @app.context_processor
    def _inject_permissions() -> dict:
        from app.pms.rbac import user_has_permission

        def has_perm(key: str) -> bool:
            return user_has_permission(getattr(g, "current_user", None), key)

        return {"has_perm": has_perm, "current_user": getattr(g, "current_user", None)}

    @app.context_processor
    def _inject_unread() -> dict:
        user = getattr(g, "current_user", None)
        if not user:
            return {"unread_notifications": 0}
        from app.pms.db import db_session
        from app.pms.modules.notifications.service import unread_count

        return {"unread_notifications": unread_count(db_session(), user)}

    @app.template_filter("dateformat")
    def _dateformat_filter(value, format: str = "%Y-%m-%d") -> str:
        if value is None:
            return "-"
        if hasattr(value, "strftime"):
            return value.strftime(format)
        return str(value)

    @app.template_filter("money")
    def _money_filter(cents) -> str:
        if cents is None:
            return "-"
        sign = "-" if cents < 0 else ""
        return f"{sign}${abs(int(cents)) / 100:,.2f}"

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/static/", "/health", "/healthz")):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            endpoint = request.endpoint or ""
            # Login/logout/register and the signature-verified webhook.
            if endpoint.startswith("auth.") or endpoint in CSRF_EXEMPT_ENDPOINTS:
                return None
            if not validate_csrf(request):
                if request.path.startswith("/api/"):
                    return {"error": "CSRF token missing or invalid."}, 400
                return render_template("errors/400.html", message="CSRF token missing or invalid."), 400

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")
        if not app.config.get("STRIPE_WEBHOOK_SECRET"):
            app.logger.warning("STRIPE_WEBHOOK_SECRET is not set; payment webhooks will be rejected.")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(admin_bp, url_prefix="/admin")
    app.register_blueprint(locations_admin_bp, url_prefix="/admin")
    app.register_blueprint(analytics_admin_bp, url_prefix="/admin/analytics")
    app.register_blueprint(telemedicine_admin_bp, url_prefix="/admin/telemedicine")
    app.register_blueprint(patient_bp, url_prefix="/patient")
    app.register_blueprint(physician_bp, url_prefix="/physician")
    app.register_blueprint(staff_bp, url_prefix="/staff")
    app.register_blueprint(notifications_bp)
    app.register_blueprint(settings_bp, url_prefix="/settings")
    app.register_blueprint(api_bp, url_prefix="/api")

    def _load_user_wrapper():
        if request.path.startswith(("/static/", "/health", "/healthz")):
            g.current_user = None
            return None
        return load_current_user()

    def _gate():
        from app.pms.rbac import gate_request

        return gate_request()

    # Order matters: the user must be loaded before gating.
    app.before_request(_load_user_wrapper)
    app.before_request(_gate)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(400)
    def _err_400(e):  # type: ignore[no-redef]
        return render_template("errors/400.html", message=getattr(e, "description", None)), 400

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        if request.path.startswith("/api/"):
            return {"error": "Not found."}, 404
        return render_template("errors/404.html"), 404

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        rid = getattr(g, "request_id", None)
        app.logger.exception("Unhandled 500 (request_id=%s)", rid)
        if request.path.startswith("/api/"):
            return {"error": "Internal server error.", "request_id": rid}, 500
        return render_template("errors/500.html", request_id=rid), 500

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        if request.path.startswith("/api/"):
            return {"error": "Forbidden."}, 403
        return render_template("errors/403.html", missing_permission=missing), 403

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
