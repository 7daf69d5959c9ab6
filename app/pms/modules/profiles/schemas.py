from __future__ import annotations

import re

from pydantic import EmailStr, Field, ValidationInfo, field_validator

from app.pms.validation import FormSchema

NPI_RE = re.compile(r"^\d{10}$")
STATE_RE = re.compile(r"^[A-Za-z]{2}$")
ZIP_RE = re.compile(r"^\d{5}(-\d{4})?$")


def check_password_strength(v: str) -> str:
    if len(v) < 8:
        raise ValueError("Password must be at least 8 characters.")
    if not re.search(r"[A-Z]", v):
        raise ValueError("Password must contain an uppercase letter.")
    if not re.search(r"[a-z]", v):
        raise ValueError("Password must contain a lowercase letter.")
    if not re.search(r"\d", v):
        raise ValueError("Password must contain a number.")
    return v


def _truthy(v) -> bool:
    if isinstance(v, bool):
        return v
    return str(v or "").strip().lower() in ("1", "true", "on", "yes")


class PatientRegistration(FormSchema):
    first_name: str = Field(min_length=1, max_length=50)
    last_name: str = Field(min_length=1, max_length=50)
    email: EmailStr
    password: str
    confirm_password: str
    phone: str | None = Field(default=None, max_length=32)
    hipaa_consent: bool = Field(default=False, validate_default=True)

    @field_validator("email")
    @classmethod
    def _lower_email(cls, v: str) -> str:
        return v.lower()

    @field_validator("password")
    @classmethod
    def _strong_password(cls, v: str) -> str:
        return check_password_strength(v)

    @field_validator("hipaa_consent", mode="before")
    @classmethod
    def _consent_bool(cls, v) -> bool:
        return _truthy(v)

    @field_validator("hipaa_consent")
    @classmethod
    def _consent_required(cls, v: bool) -> bool:
        if not v:
            raise ValueError("You must acknowledge the HIPAA notice.")
        return v

    @field_validator("confirm_password")
    @classmethod
    def _passwords_match(cls, v: str, info: ValidationInfo) -> str:
        if "password" in info.data and v != info.data["password"]:
            raise ValueError("Passwords do not match.")
        return v


class PhysicianRegistration(PatientRegistration):
    npi: str
    license_number: str = Field(min_length=1, max_length=64)
    license_state: str
    specialty: str = Field(min_length=1, max_length=128)

    @field_validator("npi")
    @classmethod
    def _npi(cls, v: str) -> str:
        if not NPI_RE.match(v):
            raise ValueError("NPI must be exactly 10 digits.")
        return v

    @field_validator("license_state")
    @classmethod
    def _state(cls, v: str) -> str:
        if not STATE_RE.match(v):
            raise ValueError("License state must be a 2-letter code.")
        return v.upper()


class AccountSettings(FormSchema):
    first_name: str = Field(min_length=1, max_length=50)
    last_name: str = Field(min_length=1, max_length=50)
    phone: str | None = Field(default=None, max_length=32)


class PasswordChange(FormSchema):
    current_password: str
    new_password: str
    confirm_password: str

    @field_validator("new_password")
    @classmethod
    def _strong_password(cls, v: str) -> str:
        return check_password_strength(v)

    @field_validator("confirm_password")
    @classmethod
    def _passwords_match(cls, v: str, info: ValidationInfo) -> str:
        if "new_password" in info.data and v != info.data["new_password"]:
            raise ValueError("Passwords do not match.")
        return v


class PatientProfileUpdate(FormSchema):
    date_of_birth: str | None = None
    gender: str | None = Field(default=None, max_length=32)
    address: str | None = Field(default=None, max_length=500)
    city: str | None = Field(default=None, max_length=128)
    state: str | None = None
    zip: str | None = None
    emergency_contact_name: str | None = Field(default=None, max_length=128)
    emergency_contact_phone: str | None = Field(default=None, max_length=32)
    allergies: str | None = Field(default=None, max_length=2000)
    medications: str | None = Field(default=None, max_length=2000)

    @field_validator("state")
    @classmethod
    def _state(cls, v: str | None) -> str | None:
        if v is not None and not STATE_RE.match(v):
            raise ValueError("State must be a 2-letter code.")
        return v.upper() if v else v

    @field_validator("zip")
    @classmethod
    def _zip(cls, v: str | None) -> str | None:
        if v is not None and not ZIP_RE.match(v):
            raise ValueError("ZIP must be 5 digits or 5+4 (e.g., 12345 or 12345-6789).")
        return v


class PhysicianProfileUpdate(FormSchema):
    bio: str | None = Field(default=None, max_length=5000)
    specialty: str = Field(min_length=1, max_length=128)
    languages: str | None = Field(default=None, max_length=255)
    consultation_fee: str | None = None
    accepting_new_patients: bool = False

    @field_validator("accepting_new_patients", mode="before")
    @classmethod
    def _accepting_bool(cls, v) -> bool:
        return _truthy(v)
