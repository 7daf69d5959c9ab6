from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, flash, g, redirect, render_template, request, session, url_for
from werkzeug.security import check_password_hash

from app.pms.audit import record_event
from app.pms.db import db_session
from app.pms.models import User
from app.pms.modules.profiles.service import register_patient, register_physician
from app.pms.rbac import home_url_for
from app.pms.validation import errors_to_dict

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds

FORGOT_PASSWORD_MESSAGE = "If an account exists for that email, password reset instructions have been sent."


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    if request.path.startswith(("/static/", "/health", "/healthz")):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    try:
        s = db_session()
        user = s.get(User, int(user_id))
        if not user or not user.is_active:
            session.pop("user_id", None)
            g.current_user = None
            return
        g.current_user = user
    except Exception as e:
        current_app.logger.error("load_current_user DB error (clearing session): %s", e)
        session.pop("user_id", None)
        g.current_user = None


def _safe_next(nxt: str) -> str | None:
    # Only local paths, to avoid open redirects.
    if nxt.startswith("/") and not nxt.startswith("//"):
        return nxt
    return None


@bp.get("/login")
def login_get():
    nxt = (request.args.get("next") or "").strip()
    return render_template("auth/login.html", next=nxt)


@bp.post("/login")
def login_post():
    email = (request.form.get("email") or "").strip().lower()
    password = request.form.get("password") or ""
    nxt = (request.form.get("next") or "").strip()
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        flash("Too many login attempts. Please wait 5 minutes.", "danger")
        return redirect(url_for("auth.login_get"))

    _record_attempt(ip)

    try:
        s = db_session()
        user = s.query(User).filter(User.email == email).one_or_none()
        if not user or not user.is_active or not check_password_hash(user.password_hash, password):
            record_event(
                s,
                actor=None,
                action="auth.login_failed",
                entity_type="User",
                entity_id=email,
                reason="Invalid credentials",
                metadata={"email": email},
            )
            s.commit()
            flash("Invalid email or password.", "danger")
            return redirect(url_for("auth.login_get", next=nxt or None))

        session["user_id"] = user.id
        user.last_login_at = datetime.utcnow()
        _login_attempts[ip].clear()
        record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
        s.commit()
        return redirect(_safe_next(nxt) or home_url_for(user))
    except Exception:
        current_app.logger.exception("Login POST crashed (email=%s request_id=%s)", email, getattr(g, "request_id", None))
        raise


@bp.get("/logout")
def logout():
    s = db_session()
    user = getattr(g, "current_user", None)
    if user:
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.pop("user_id", None)
    return redirect(url_for("routes.index"))


def _register(kind: str, register_fn):
    s = db_session()
    form = request.form.to_dict()
    user, errors = register_fn(s, form)
    if errors:
        s.rollback()
        flash("Please correct the errors below.", "danger")
        return (
            render_template(f"auth/register_{kind}.html", form=form, field_errors=errors_to_dict(errors)),
            400,
        )
    s.commit()
    session["user_id"] = user.id
    current_app.logger.info("Registered %s user_id=%s", kind, user.id)
    if kind == "physician":
        flash("Account created. Your credentials will be verified by our team.", "success")
    else:
        flash("Welcome! Your account has been created.", "success")
    return redirect(home_url_for(user))


@bp.get("/register/patient")
def register_patient_get():
    return render_template("auth/register_patient.html", form={}, field_errors={})


@bp.post("/register/patient")
def register_patient_post():
    return _register("patient", register_patient)


@bp.get("/register/physician")
def register_physician_get():
    return render_template("auth/register_physician.html", form={}, field_errors={})


@bp.post("/register/physician")
def register_physician_post():
    return _register("physician", register_physician)


@bp.get("/forgot-password")
def forgot_password_get():
    return render_template("auth/forgot_password.html")


@bp.post("/forgot-password")
def forgot_password_post():
    # Same answer whether or not the account exists.
    email = (request.form.get("email") or "").strip().lower()
    if email:
        s = db_session()
        record_event(s, actor=None, action="auth.password_reset_requested", entity_type="User", entity_id=email)
        s.commit()
    flash(FORGOT_PASSWORD_MESSAGE, "info")
    return redirect(url_for("auth.forgot_password_get"))
