"""
Append-only audit trail: writing events from services and reading them back
for the admin console.
"""
import json
from datetime import date, datetime, time, timedelta
from typing import Any

from flask import g, has_request_context, request
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.pms.models import AuditEvent, User

AUDIT_LIMIT = 200


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    # request id and client ip only exist inside a request; seeds and tests run outside one
    in_request = has_request_context()
    ev = AuditEvent(
        request_id=request_id or (getattr(g, "request_id", None) if in_request else None),
        actor_user_id=actor.id if actor else None,
        actor_user_email=actor.email if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
        client_ip=request.remote_addr if in_request else None,
    )
    s.add(ev)
    return ev


def search_events(
    s: Session,
    *,
    action: str | None = None,
    actor_email: str | None = None,
    entity_type: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    limit: int = AUDIT_LIMIT,
) -> list[AuditEvent]:
    """Newest first. `action` and `actor_email` are substring matches; dates are inclusive."""
    q = s.query(AuditEvent)
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if actor_email:
        q = q.filter(AuditEvent.actor_user_email.like(f"%{actor_email.lower()}%"))
    if entity_type:
        q = q.filter(AuditEvent.entity_type == entity_type)
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))
    return q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(limit).all()


def user_activity(s: Session, user: User, limit: int = 25) -> list[AuditEvent]:
    """Events the user performed plus events recorded against their account."""
    return (
        s.query(AuditEvent)
        .filter(
            (AuditEvent.actor_user_id == user.id)
            | ((AuditEvent.entity_type == "User") & (AuditEvent.entity_id == str(user.id)))
        )
        .order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc())
        .limit(limit)
        .all()
    )


def audit_stats(s: Session) -> dict[str, Any]:
    by_action = (
        s.query(AuditEvent.action, func.count(AuditEvent.id))
        .group_by(AuditEvent.action)
        .order_by(func.count(AuditEvent.id).desc())
        .all()
    )
    return {
        "total": s.query(AuditEvent).count(),
        "by_action": [(a, int(n)) for a, n in by_action],
    }
