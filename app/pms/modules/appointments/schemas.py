from __future__ import annotations

from pydantic import Field, field_validator

from app.pms.validation import DATE_RE, TIME_RE, FormSchema


class AppointmentBooking(FormSchema):
    service_id: int
    provider_id: int
    appointment_date: str
    appointment_time: str
    location_id: int | None = None
    notes: str | None = Field(default=None, max_length=1000)

    @field_validator("appointment_date")
    @classmethod
    def _date(cls, v: str) -> str:
        if not DATE_RE.match(v):
            raise ValueError("Date must be YYYY-MM-DD.")
        return v

    @field_validator("appointment_time")
    @classmethod
    def _time(cls, v: str) -> str:
        if not TIME_RE.match(v):
            raise ValueError("Time must be HH:MM.")
        return v


class CancelRequest(FormSchema):
    reason: str | None = Field(default=None, max_length=500)
