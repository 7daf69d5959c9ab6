from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from app.pms.modules.notifications.models import Notification, NotificationPreference

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.pms.models import User

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = ("appointment", "claim", "insurance", "telemedicine", "billing", "system", "message")
PRIORITIES = ("low", "normal", "high", "urgent")
READ_STATUSES = ("all", "unread", "read")
DEFAULT_PAGE_SIZE = 20


@dataclass(frozen=True)
class NotificationPage:
    notifications: list[Notification]
    total_count: int
    has_more: bool
    page: int
    page_size: int


def is_type_enabled(s: "Session", user_id: int, notification_type: str) -> bool:
    pref = (
        s.query(NotificationPreference)
        .filter(NotificationPreference.user_id == user_id)
        .filter(NotificationPreference.notification_type == notification_type)
        .one_or_none()
    )
    return pref.is_enabled if pref else True


def create_for_user(
    s: "Session",
    user_id: int,
    *,
    title: str,
    message: str,
    notification_type: str = "system",
    priority: str = "normal",
    action_url: str | None = None,
    action_label: str | None = None,
    related_entity_type: str | None = None,
    related_entity_id: int | str | None = None,
) -> Notification | None:
    """
    Store an in-app notification. Returns None when the user has switched the
    type off; urgent notifications are always delivered.
    """
    if notification_type not in NOTIFICATION_TYPES:
        raise ValueError(f"Invalid notification type: {notification_type}")
    if priority not in PRIORITIES:
        raise ValueError(f"Invalid priority: {priority}")
    if priority != "urgent" and not is_type_enabled(s, user_id, notification_type):
        logger.debug("Notification suppressed by preference user_id=%s type=%s", user_id, notification_type)
        return None

    n = Notification(
        user_id=user_id,
        notification_type=notification_type,
        priority=priority,
        title=title[:255],
        message=message,
        action_url=action_url,
        action_label=action_label,
        related_entity_type=related_entity_type,
        related_entity_id=str(related_entity_id) if related_entity_id is not None else None,
    )
    s.add(n)
    return n


def list_notifications(
    s: "Session",
    user: "User",
    *,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
    notification_type: str | None = None,
    read_status: str = "all",
    sort: str = "desc",
) -> NotificationPage:
    page = max(1, page)
    page_size = max(1, min(page_size, 100))
    q = s.query(Notification).filter(Notification.user_id == user.id)
    if notification_type:
        q = q.filter(Notification.notification_type == notification_type)
    if read_status == "unread":
        q = q.filter(Notification.is_read.is_(False))
    elif read_status == "read":
        q = q.filter(Notification.is_read.is_(True))

    total = q.count()
    order = Notification.created_at.asc() if sort == "asc" else Notification.created_at.desc()
    offset = (page - 1) * page_size
    rows = q.order_by(order, Notification.id.desc()).offset(offset).limit(page_size).all()
    return NotificationPage(
        notifications=rows,
        total_count=total,
        has_more=offset + page_size < total,
        page=page,
        page_size=page_size,
    )


def unread_count(s: "Session", user: "User") -> int:
    return (
        s.query(Notification)
        .filter(Notification.user_id == user.id)
        .filter(Notification.is_read.is_(False))
        .count()
    )


def get_for_user(s: "Session", user: "User", notification_id: int) -> Notification | None:
    n = s.get(Notification, notification_id)
    if not n or n.user_id != user.id:
        return None
    return n


def mark_read(s: "Session", user: "User", notification_id: int) -> Notification | None:
    n = get_for_user(s, user, notification_id)
    if n and not n.is_read:
        n.is_read = True
        n.read_at = datetime.utcnow()
    return n


def mark_all_read(s: "Session", user: "User") -> int:
    now = datetime.utcnow()
    rows = (
        s.query(Notification)
        .filter(Notification.user_id == user.id)
        .filter(Notification.is_read.is_(False))
        .all()
    )
    for n in rows:
        n.is_read = True
        n.read_at = now
    return len(rows)


def delete_notification(s: "Session", user: "User", notification_id: int) -> bool:
    n = get_for_user(s, user, notification_id)
    if not n:
        return False
    s.delete(n)
    return True


def get_preferences(s: "Session", user: "User") -> dict[str, bool]:
    prefs = {t: True for t in NOTIFICATION_TYPES}
    for p in s.query(NotificationPreference).filter(NotificationPreference.user_id == user.id).all():
        prefs[p.notification_type] = p.is_enabled
    return prefs


def update_preferences(s: "Session", user: "User", enabled: dict[str, bool]) -> dict[str, bool]:
    now = datetime.utcnow()
    for t in NOTIFICATION_TYPES:
        if t not in enabled:
            continue
        pref = (
            s.query(NotificationPreference)
            .filter(NotificationPreference.user_id == user.id)
            .filter(NotificationPreference.notification_type == t)
            .one_or_none()
        )
        if not pref:
            pref = NotificationPreference(user_id=user.id, notification_type=t)
            s.add(pref)
        pref.is_enabled = bool(enabled[t])
        pref.updated_at = now
    s.flush()
    return get_preferences(s, user)
