from __future__ import annotations

from pydantic import Field, field_validator

from app.pms.validation import FormSchema

PLAN_TYPES = ("PPO", "HMO", "EPO", "POS", "HDHP", "Medicare", "Medicaid", "Tricare", "Other")
RESULT_STATUSES = ("verified", "failed", "expired")


class VerificationRequest(FormSchema):
    payer_name: str = Field(min_length=1, max_length=200)
    payer_id: str | None = Field(default=None, max_length=50)
    member_id: str = Field(min_length=1, max_length=50)
    group_number: str | None = Field(default=None, max_length=50)
    plan_type: str | None = None
    notes: str | None = Field(default=None, max_length=1000)

    @field_validator("plan_type")
    @classmethod
    def _plan(cls, v: str | None) -> str | None:
        if v is not None and v not in PLAN_TYPES:
            raise ValueError(f"Invalid plan type. Must be one of: {', '.join(PLAN_TYPES)}")
        return v


class VerificationResult(FormSchema):
    """Dollar amounts arrive as form strings and are converted to cents by the service."""

    status: str
    oon_deductible: str | None = None
    oon_deductible_met: str | None = None
    oon_oop_max: str | None = None
    oon_oop_met: str | None = None
    oon_coinsurance_pct: int | None = Field(default=None, ge=0, le=100)
    inn_deductible: str | None = None
    inn_deductible_met: str | None = None
    inn_oop_max: str | None = None
    inn_oop_met: str | None = None
    inn_coinsurance_pct: int | None = Field(default=None, ge=0, le=100)
    effective_date: str | None = None
    termination_date: str | None = None
    notes: str | None = Field(default=None, max_length=1000)

    @field_validator("status")
    @classmethod
    def _status(cls, v: str) -> str:
        if v not in RESULT_STATUSES:
            raise ValueError(f"Invalid status. Must be one of: {', '.join(RESULT_STATUSES)}")
        return v
