from __future__ import annotations

from pydantic import Field, field_validator

from app.pms.validation import FormSchema

LOCATION_TYPES = ("hub", "spoke", "mobile", "virtual")


def _truthy(v) -> bool:
    if isinstance(v, bool):
        return v
    return str(v or "").strip().lower() in ("1", "true", "on", "yes")


class LocationForm(FormSchema):
    name: str = Field(min_length=1, max_length=255)
    slug: str | None = Field(default=None, max_length=255)
    location_type: str = "spoke"
    parent_location_id: int | None = None
    address: str | None = Field(default=None, max_length=500)
    city: str | None = Field(default=None, max_length=128)
    state: str | None = Field(default=None, max_length=2)
    zip: str | None = Field(default=None, max_length=10)
    phone: str | None = Field(default=None, max_length=32)
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    is_critical_access: bool = False

    @field_validator("location_type")
    @classmethod
    def _type(cls, v: str) -> str:
        if v not in LOCATION_TYPES:
            raise ValueError(f"Invalid location type. Must be one of: {', '.join(LOCATION_TYPES)}")
        return v

    @field_validator("state")
    @classmethod
    def _upper_state(cls, v: str | None) -> str | None:
        return v.upper() if v else v

    @field_validator("is_critical_access", mode="before")
    @classmethod
    def _bool(cls, v) -> bool:
        return _truthy(v)


class ServiceForm(FormSchema):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=2000)
    category: str | None = Field(default=None, max_length=64)
    cpt_code: str | None = Field(default=None, max_length=16)
    base_price: str = "0"
    duration_minutes: int | None = Field(default=None, ge=5, le=480)
    is_telehealth_eligible: bool = False
    sort_order: int = 0

    @field_validator("is_telehealth_eligible", mode="before")
    @classmethod
    def _bool(cls, v) -> bool:
        return _truthy(v)
