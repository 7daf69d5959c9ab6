from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for

from app.pms.db import db_session
from app.pms.modules.notifications.models import Notification
from app.pms.modules.notifications.service import (
    NOTIFICATION_TYPES,
    READ_STATUSES,
    delete_notification,
    get_preferences,
    list_notifications,
    mark_all_read,
    mark_read,
    unread_count,
    update_preferences,
)
from app.pms.rbac import require_permission
from app.pms.validation import parse_int

bp = Blueprint("notifications", __name__)


def _serialize(n: Notification) -> dict:
    return {
        "id": n.id,
        "type": n.notification_type,
        "priority": n.priority,
        "title": n.title,
        "message": n.message,
        "action_url": n.action_url,
        "action_label": n.action_label,
        "related_entity_type": n.related_entity_type,
        "related_entity_id": n.related_entity_id,
        "is_read": n.is_read,
        "read_at": n.read_at.isoformat() if n.read_at else None,
        "created_at": n.created_at.isoformat() if n.created_at else None,
    }


def _filters() -> dict:
    notification_type = (request.args.get("type") or "").strip() or None
    if notification_type not in NOTIFICATION_TYPES:
        notification_type = None
    read_status = (request.args.get("status") or "all").strip()
    if read_status not in READ_STATUSES:
        read_status = "all"
    sort = "asc" if (request.args.get("sort") or "").strip() == "asc" else "desc"
    return {
        "page": parse_int(request.args.get("page")) or 1,
        "notification_type": notification_type,
        "read_status": read_status,
        "sort": sort,
    }


@bp.get("/notifications")
@require_permission("notifications.view")
def index():
    s = db_session()
    filters = _filters()
    page = list_notifications(s, g.current_user, **filters)
    return render_template(
        "notifications/list.html",
        page=page,
        filters=filters,
        notification_types=NOTIFICATION_TYPES,
        read_statuses=READ_STATUSES,
    )


@bp.post("/notifications/<int:notification_id>/read")
@require_permission("notifications.view")
def read(notification_id: int):
    s = db_session()
    n = mark_read(s, g.current_user, notification_id)
    if not n:
        abort(404)
    s.commit()
    if n.action_url and request.form.get("follow") == "1":
        return redirect(n.action_url)
    return redirect(url_for("notifications.index"))


@bp.post("/notifications/read-all")
@require_permission("notifications.view")
def read_all():
    s = db_session()
    count = mark_all_read(s, g.current_user)
    s.commit()
    flash(f"Marked {count} notification(s) as read.", "success")
    return redirect(url_for("notifications.index"))


@bp.post("/notifications/<int:notification_id>/delete")
@require_permission("notifications.view")
def delete(notification_id: int):
    s = db_session()
    if not delete_notification(s, g.current_user, notification_id):
        abort(404)
    s.commit()
    flash("Notification deleted.", "success")
    return redirect(url_for("notifications.index"))


@bp.get("/notifications/preferences")
@require_permission("notifications.view")
def preferences():
    s = db_session()
    return render_template(
        "notifications/preferences.html",
        preferences=get_preferences(s, g.current_user),
        notification_types=NOTIFICATION_TYPES,
    )


@bp.post("/notifications/preferences")
@require_permission("notifications.view")
def preferences_post():
    s = db_session()
    enabled = {t: request.form.get(f"type_{t}") == "on" for t in NOTIFICATION_TYPES}
    update_preferences(s, g.current_user, enabled)
    s.commit()
    flash("Notification preferences saved.", "success")
    return redirect(url_for("notifications.preferences"))


# JSON endpoints (used by the header badge and the notification drawer)


@bp.get("/api/notifications")
@require_permission("notifications.view")
def api_list():
    s = db_session()
    filters = _filters()
    filters["page_size"] = parse_int(request.args.get("page_size")) or 20
    page = list_notifications(s, g.current_user, **filters)
    return {
        "notifications": [_serialize(n) for n in page.notifications],
        "total_count": page.total_count,
        "has_more": page.has_more,
        "page": page.page,
    }


@bp.get("/api/notifications/unread-count")
@require_permission("notifications.view")
def api_unread_count():
    return {"count": unread_count(db_session(), g.current_user)}


@bp.post("/api/notifications/<int:notification_id>/read")
@require_permission("notifications.view")
def api_read(notification_id: int):
    s = db_session()
    n = mark_read(s, g.current_user, notification_id)
    if not n:
        return {"error": "Notification not found."}, 404
    s.commit()
    return {"notification": _serialize(n)}


@bp.post("/api/notifications/read-all")
@require_permission("notifications.view")
def api_read_all():
    s = db_session()
    count = mark_all_read(s, g.current_user)
    s.commit()
    return {"updated": count}


@bp.delete("/api/notifications/<int:notification_id>")
@require_permission("notifications.view")
def api_delete(notification_id: int):
    s = db_session()
    if not delete_notification(s, g.current_user, notification_id):
        return {"error": "Notification not found."}, 404
    s.commit()
    return {"deleted": True}
