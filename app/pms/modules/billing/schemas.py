from __future__ import annotations

from pydantic import BaseModel, Field, field_validator, model_validator

from app.pms.validation import FormSchema


class LineItemInput(BaseModel):
    service_id: int | None = None
    description: str | None = Field(default=None, max_length=255)
    qty: int = Field(default=1, ge=1, le=100)
    unit_price_cents: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _priced(self):
        if self.service_id is None and (self.unit_price_cents is None or not self.description):
            raise ValueError("Each line needs a service or a description and unit price.")
        return self


class InvoiceCreate(BaseModel):
    patient_id: int | None = None
    encounter_id: int | None = None
    line_items: list[LineItemInput] = Field(min_length=1)
    notes: str | None = Field(default=None, max_length=2000)

    @model_validator(mode="after")
    def _target(self):
        if self.patient_id is None and self.encounter_id is None:
            raise ValueError("Choose a patient or an encounter.")
        return self


class CheckoutRequest(FormSchema):
    invoice_id: int


class MembershipCheckoutRequest(FormSchema):
    tier: str
    interval: str = "monthly"

    @field_validator("tier")
    @classmethod
    def _tier(cls, v: str) -> str:
        v = v.lower()
        if v not in ("platinum", "gold", "silver"):
            raise ValueError("Unknown membership tier.")
        return v

    @field_validator("interval")
    @classmethod
    def _interval(cls, v: str) -> str:
        v = v.lower()
        if v not in ("monthly", "annual"):
            raise ValueError("Interval must be monthly or annual.")
        return v
