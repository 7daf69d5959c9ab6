from __future__ import annotations

import secrets
from datetime import datetime
from typing import TYPE_CHECKING, Any

from werkzeug.security import check_password_hash, generate_password_hash

from app.pms.audit import record_event
from app.pms.models import Role, User
from app.pms.modules.profiles.models import PatientProfile, PhysicianProfile
from app.pms.modules.profiles.schemas import (
    AccountSettings,
    PasswordChange,
    PatientProfileUpdate,
    PatientRegistration,
    PhysicianProfileUpdate,
    PhysicianRegistration,
)
from app.pms.validation import ValidationError, dollars_to_cents, parse_date, parse_payload

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


def generate_mrn(s: "Session") -> str:
    """MRN-YYYYMMDD-XXXXXX, retried until unique."""
    stamp = datetime.utcnow().strftime("%Y%m%d")
    while True:
        mrn = f"MRN-{stamp}-{secrets.token_hex(3).upper()}"
        if not s.query(PatientProfile).filter(PatientProfile.mrn == mrn).one_or_none():
            return mrn


def _email_taken(s: "Session", email: str) -> bool:
    return s.query(User).filter(User.email == email).one_or_none() is not None


def _role(s: "Session", key: str) -> Role:
    role = s.query(Role).filter(Role.key == key).one_or_none()
    if not role:
        raise RuntimeError(f"Role '{key}' is not seeded. Run scripts/init_db.py.")
    return role


def _create_user(s: "Session", data: PatientRegistration, role_key: str) -> User:
    user = User(
        email=data.email,
        password_hash=generate_password_hash(data.password),
        first_name=data.first_name,
        last_name=data.last_name,
        phone=data.phone,
        is_active=True,
    )
    user.roles.append(_role(s, role_key))
    s.add(user)
    s.flush()
    return user


def register_patient(s: "Session", payload: dict[str, Any]) -> tuple[User | None, list[ValidationError]]:
    data, errors = parse_payload(PatientRegistration, payload)
    if errors:
        return None, errors
    if _email_taken(s, data.email):
        return None, [ValidationError("email", "An account with this email already exists.")]

    user = _create_user(s, data, "patient")
    profile = PatientProfile(user_id=user.id, mrn=generate_mrn(s), hipaa_consent_at=datetime.utcnow())
    s.add(profile)
    s.flush()

    record_event(
        s,
        actor=user,
        action="user.register",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"role": "patient", "mrn": profile.mrn},
    )
    return user, []


def register_physician(s: "Session", payload: dict[str, Any]) -> tuple[User | None, list[ValidationError]]:
    data, errors = parse_payload(PhysicianRegistration, payload)
    if errors:
        return None, errors
    if _email_taken(s, data.email):
        return None, [ValidationError("email", "An account with this email already exists.")]
    if s.query(PhysicianProfile).filter(PhysicianProfile.npi == data.npi).one_or_none():
        return None, [ValidationError("npi", "This NPI is already registered.")]

    user = _create_user(s, data, "physician")
    profile = PhysicianProfile(
        user_id=user.id,
        npi=data.npi,
        license_number=data.license_number,
        license_state=data.license_state,
        specialty=data.specialty,
        accepting_new_patients=True,
        is_verified=False,
    )
    s.add(profile)
    s.flush()

    record_event(
        s,
        actor=user,
        action="user.register",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"role": "physician", "npi": data.npi, "specialty": data.specialty},
    )
    return user, []


def update_account_settings(s: "Session", user: User, payload: dict[str, Any]) -> list[ValidationError]:
    data, errors = parse_payload(AccountSettings, payload)
    if errors:
        return errors
    changes = {}
    for field in ("first_name", "last_name", "phone"):
        new = getattr(data, field)
        old = getattr(user, field)
        if new != old:
            changes[field] = {"old": old, "new": new}
            setattr(user, field, new)
    if changes:
        record_event(
            s,
            actor=user,
            action="user.update_settings",
            entity_type="User",
            entity_id=str(user.id),
            metadata={"changes": changes},
        )
    return []


def change_password(s: "Session", user: User, payload: dict[str, Any]) -> list[ValidationError]:
    data, errors = parse_payload(PasswordChange, payload)
    if errors:
        return errors
    if not check_password_hash(user.password_hash, data.current_password):
        return [ValidationError("current_password", "Current password is incorrect.")]
    user.password_hash = generate_password_hash(data.new_password)
    record_event(s, actor=user, action="user.change_password", entity_type="User", entity_id=str(user.id))
    return []


def get_patient_profile(s: "Session", user: User) -> PatientProfile | None:
    return s.query(PatientProfile).filter(PatientProfile.user_id == user.id).one_or_none()


def get_physician_profile(s: "Session", user_id: int) -> PhysicianProfile | None:
    return s.query(PhysicianProfile).filter(PhysicianProfile.user_id == user_id).one_or_none()


def update_patient_profile(s: "Session", user: User, payload: dict[str, Any]) -> list[ValidationError]:
    data, errors = parse_payload(PatientProfileUpdate, payload)
    if errors:
        return errors
    dob = parse_date(data.date_of_birth)
    if data.date_of_birth and dob is None:
        return [ValidationError("date_of_birth", "Date of birth must be YYYY-MM-DD.")]
    if dob and dob > datetime.utcnow().date():
        return [ValidationError("date_of_birth", "Date of birth cannot be in the future.")]

    profile = get_patient_profile(s, user)
    if not profile:
        profile = PatientProfile(user_id=user.id, mrn=generate_mrn(s))
        s.add(profile)

    changes = {}
    values = data.model_dump()
    values["date_of_birth"] = dob
    for field, new in values.items():
        old = getattr(profile, field)
        if new != old:
            changes[field] = {"old": str(old) if old is not None else None, "new": str(new) if new is not None else None}
            setattr(profile, field, new)
    profile.updated_at = datetime.utcnow()
    s.flush()

    record_event(
        s,
        actor=user,
        action="patient_profile.edit",
        entity_type="PatientProfile",
        entity_id=str(profile.id),
        # clinical values stay out of the audit log
        metadata={"fields": sorted(changes)},
    )
    return []


def update_physician_profile(s: "Session", user: User, payload: dict[str, Any]) -> list[ValidationError]:
    data, errors = parse_payload(PhysicianProfileUpdate, payload)
    if errors:
        return errors
    try:
        fee_cents = dollars_to_cents(data.consultation_fee)
    except ValueError:
        return [ValidationError("consultation_fee", "Consultation fee must be a dollar amount.")]
    if fee_cents is not None and fee_cents < 0:
        return [ValidationError("consultation_fee", "Consultation fee cannot be negative.")]

    profile = get_physician_profile(s, user.id)
    if not profile:
        return [ValidationError("form", "Physician profile not found.")]

    changes = {}
    values = {
        "bio": data.bio,
        "specialty": data.specialty,
        "languages": data.languages,
        "consultation_fee_cents": fee_cents,
        "accepting_new_patients": data.accepting_new_patients,
    }
    for field, new in values.items():
        old = getattr(profile, field)
        if new != old:
            changes[field] = {"old": old, "new": new}
            setattr(profile, field, new)
    profile.updated_at = datetime.utcnow()

    record_event(
        s,
        actor=user,
        action="physician_profile.edit",
        entity_type="PhysicianProfile",
        entity_id=str(profile.id),
        metadata={"changes": changes},
    )
    return []
