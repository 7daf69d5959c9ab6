from __future__ import annotations

from pydantic import Field

from app.pms.validation import FormSchema


class ClaimNote(FormSchema):
    note: str = Field(min_length=1, max_length=2000)


class ClaimCreate(FormSchema):
    invoice_id: int
    payer_id: int
    notes: str | None = Field(default=None, max_length=2000)


class ClaimStatusChange(FormSchema):
    status: str
    paid_amount: str | None = None
    allowed_amount: str | None = None
    denial_reason: str | None = Field(default=None, max_length=2000)
    note: str | None = Field(default=None, max_length=2000)


class PayerForm(FormSchema):
    name: str = Field(min_length=1, max_length=200)
    payer_code: str | None = Field(default=None, max_length=50)
    phone: str | None = Field(default=None, max_length=32)
