from __future__ import annotations

import re
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.pms.audit import record_event
from app.pms.models import Role, User
from app.pms.modules.locations.models import Location, ProviderLocation, ProviderService, ServiceCatalog
from app.pms.modules.locations.schemas import LocationForm, ServiceForm
from app.pms.modules.profiles.models import PhysicianProfile
from app.pms.validation import ValidationError, dollars_to_cents, parse_payload

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (value or "").lower()).strip("-")
    return slug or "location"


def list_locations(
    s: "Session",
    *,
    state: str | None = None,
    location_type: str | None = None,
    q: str | None = None,
    include_inactive: bool = False,
) -> list[Location]:
    query = s.query(Location)
    if not include_inactive:
        query = query.filter(Location.is_active.is_(True))
    if state:
        query = query.filter(Location.state == state.upper())
    if location_type:
        query = query.filter(Location.location_type == location_type)
    if q:
        like = f"%{q}%"
        query = query.filter((Location.name.ilike(like)) | (Location.city.ilike(like)))
    return query.order_by(Location.state.asc(), Location.name.asc()).all()


def get_location_by_slug(s: "Session", slug: str) -> Location | None:
    return (
        s.query(Location)
        .filter(Location.slug == slug)
        .filter(Location.is_active.is_(True))
        .one_or_none()
    )


def location_provider_counts(s: "Session") -> dict[int, int]:
    rows = (
        s.query(ProviderLocation.location_id, func.count(ProviderLocation.id))
        .group_by(ProviderLocation.location_id)
        .all()
    )
    return {loc_id: int(n) for loc_id, n in rows}


def location_providers(s: "Session", location_id: int) -> list[User]:
    return [
        pl.physician
        for pl in s.query(ProviderLocation).filter(ProviderLocation.location_id == location_id).all()
    ]


def _unique_slug(s: "Session", base: str, exclude_id: int | None = None) -> str:
    slug = base
    n = 2
    while True:
        q = s.query(Location).filter(Location.slug == slug)
        if exclude_id is not None:
            q = q.filter(Location.id != exclude_id)
        if not q.first():
            return slug
        slug = f"{base}-{n}"
        n += 1


def create_location(s: "Session", payload: dict[str, Any], user: User) -> tuple[Location | None, list[ValidationError]]:
    data, errors = parse_payload(LocationForm, payload)
    if errors:
        return None, errors
    if data.slug:
        slug = slugify(data.slug)
        if s.query(Location).filter(Location.slug == slug).first():
            return None, [ValidationError("slug", "Slug is already in use.")]
    else:
        slug = _unique_slug(s, slugify(data.name))

    now = datetime.utcnow()
    loc = Location(
        **data.model_dump(exclude={"slug"}),
        slug=slug,
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    s.add(loc)
    s.flush()

    record_event(
        s,
        actor=user,
        action="location.create",
        entity_type="Location",
        entity_id=str(loc.id),
        metadata={"name": loc.name, "slug": loc.slug, "location_type": loc.location_type},
    )
    return loc, []


def update_location(s: "Session", loc: Location, payload: dict[str, Any], user: User) -> list[ValidationError]:
    data, errors = parse_payload(LocationForm, payload)
    if errors:
        return errors
    slug = slugify(data.slug) if data.slug else loc.slug
    if slug != loc.slug and s.query(Location).filter(Location.slug == slug).first():
        return [ValidationError("slug", "Slug is already in use.")]
    if data.parent_location_id == loc.id:
        return [ValidationError("parent_location_id", "A location cannot be its own parent.")]

    changes = {}
    values = data.model_dump(exclude={"slug"})
    values["slug"] = slug
    for field, new in values.items():
        old = getattr(loc, field)
        if new != old:
            changes[field] = {"old": old, "new": new}
            setattr(loc, field, new)
    loc.updated_at = datetime.utcnow()

    record_event(
        s,
        actor=user,
        action="location.edit",
        entity_type="Location",
        entity_id=str(loc.id),
        metadata={"name": loc.name, "changes": changes},
    )
    return []


def toggle_location_active(s: "Session", loc: Location, user: User) -> Location:
    loc.is_active = not loc.is_active
    loc.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="location.activate" if loc.is_active else "location.deactivate",
        entity_type="Location",
        entity_id=str(loc.id),
        metadata={"name": loc.name},
    )
    return loc


def assign_provider(s: "Session", loc: Location, physician_id: int, user: User, is_primary: bool = False) -> ProviderLocation:
    physician = s.get(User, physician_id)
    if not physician or not physician.has_role("physician"):
        raise ValueError("Provider must be a physician.")
    existing = (
        s.query(ProviderLocation)
        .filter(ProviderLocation.location_id == loc.id)
        .filter(ProviderLocation.physician_id == physician_id)
        .one_or_none()
    )
    if existing:
        raise ValueError("Provider is already assigned to this location.")
    link = ProviderLocation(physician_id=physician_id, location_id=loc.id, is_primary=is_primary)
    s.add(link)
    s.flush()
    record_event(
        s,
        actor=user,
        action="location.assign_provider",
        entity_type="Location",
        entity_id=str(loc.id),
        metadata={"physician_id": physician_id, "is_primary": is_primary},
    )
    return link


def list_services(s: "Session", category: str | None = None, include_inactive: bool = False) -> list[ServiceCatalog]:
    q = s.query(ServiceCatalog)
    if not include_inactive:
        q = q.filter(ServiceCatalog.is_active.is_(True))
    if category:
        q = q.filter(ServiceCatalog.category == category)
    return q.order_by(ServiceCatalog.sort_order.asc(), ServiceCatalog.name.asc()).all()


def _service_values(data: ServiceForm) -> tuple[dict[str, Any] | None, list[ValidationError]]:
    try:
        price = dollars_to_cents(data.base_price) or 0
    except ValueError:
        return None, [ValidationError("base_price", "Price must be a dollar amount.")]
    if price < 0:
        return None, [ValidationError("base_price", "Price cannot be negative.")]
    values = data.model_dump(exclude={"base_price"})
    values["base_price_cents"] = price
    return values, []


def create_service(s: "Session", payload: dict[str, Any], user: User) -> tuple[ServiceCatalog | None, list[ValidationError]]:
    data, errors = parse_payload(ServiceForm, payload)
    if errors:
        return None, errors
    values, errors = _service_values(data)
    if errors:
        return None, errors
    svc = ServiceCatalog(**values, is_active=True)
    s.add(svc)
    s.flush()
    record_event(
        s,
        actor=user,
        action="service.create",
        entity_type="ServiceCatalog",
        entity_id=str(svc.id),
        metadata={"name": svc.name, "cpt_code": svc.cpt_code, "base_price_cents": svc.base_price_cents},
    )
    return svc, []


def update_service(s: "Session", svc: ServiceCatalog, payload: dict[str, Any], user: User) -> list[ValidationError]:
    data, errors = parse_payload(ServiceForm, payload)
    if errors:
        return errors
    values, errors = _service_values(data)
    if errors:
        return errors
    is_active = str(payload.get("is_active") or "").strip().lower() in ("1", "true", "on", "yes")
    values["is_active"] = is_active
    changes = {}
    for field, new in values.items():
        old = getattr(svc, field)
        if new != old:
            changes[field] = {"old": old, "new": new}
            setattr(svc, field, new)
    svc.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="service.edit",
        entity_type="ServiceCatalog",
        entity_id=str(svc.id),
        metadata={"name": svc.name, "changes": changes},
    )
    return []


def list_providers(s: "Session", *, specialty: str | None = None, location_id: int | None = None) -> list[PhysicianProfile]:
    """Verified physicians for the patient-facing directory."""
    q = (
        s.query(PhysicianProfile)
        .join(User, User.id == PhysicianProfile.user_id)
        .filter(User.is_active.is_(True))
        .filter(PhysicianProfile.is_verified.is_(True))
    )
    if specialty:
        q = q.filter(PhysicianProfile.specialty == specialty)
    if location_id:
        q = q.join(ProviderLocation, ProviderLocation.physician_id == PhysicianProfile.user_id).filter(
            ProviderLocation.location_id == location_id
        )
    return q.order_by(User.last_name.asc(), User.first_name.asc()).all()


def list_physician_users(s: "Session") -> list[User]:
    return (
        s.query(User)
        .join(User.roles)
        .filter(Role.key == "physician")
        .filter(User.is_active.is_(True))
        .order_by(User.last_name.asc(), User.first_name.asc())
        .all()
    )


def offer_service(s: "Session", physician_id: int, service_id: int) -> ProviderService:
    link = (
        s.query(ProviderService)
        .filter(ProviderService.physician_id == physician_id)
        .filter(ProviderService.service_id == service_id)
        .one_or_none()
    )
    if not link:
        link = ProviderService(physician_id=physician_id, service_id=service_id)
        s.add(link)
        s.flush()
    return link
