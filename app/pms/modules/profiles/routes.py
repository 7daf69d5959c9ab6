from flask import Blueprint, flash, g, redirect, render_template, request, url_for

from app.pms.db import db_session
from app.pms.modules.profiles.service import change_password, update_account_settings
from app.pms.validation import errors_to_dict

bp = Blueprint("settings", __name__)


@bp.get("/")
def index():
    return render_template("settings/index.html", user=g.current_user, field_errors={})


@bp.post("/account")
def account_post():
    s = db_session()
    errors = update_account_settings(s, g.current_user, request.form.to_dict())
    if errors:
        s.rollback()
        flash("Please correct the errors below.", "danger")
        return render_template("settings/index.html", user=g.current_user, field_errors=errors_to_dict(errors)), 400
    s.commit()
    flash("Account settings saved.", "success")
    return redirect(url_for("settings.index"))


@bp.post("/password")
def password_post():
    s = db_session()
    errors = change_password(s, g.current_user, request.form.to_dict())
    if errors:
        s.rollback()
        flash("Password not changed.", "danger")
        return render_template("settings/index.html", user=g.current_user, field_errors=errors_to_dict(errors)), 400
    s.commit()
    flash("Password changed.", "success")
    return redirect(url_for("settings.index"))
