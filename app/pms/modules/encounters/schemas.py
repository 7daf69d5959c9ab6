from __future__ import annotations

from pydantic import Field, field_validator

from app.pms.validation import FormSchema


def split_codes(v: str | list[str] | None) -> list[str]:
    if not v:
        return []
    if isinstance(v, str):
        v = v.split(",")
    out = []
    for code in v:
        code = str(code).strip().upper()
        if code and code not in out:
            out.append(code)
    return out


class SoapNotes(FormSchema):
    subjective: str | None = Field(default=None, max_length=5000)
    objective: str | None = Field(default=None, max_length=5000)
    assessment: str | None = Field(default=None, max_length=5000)
    plan: str | None = Field(default=None, max_length=5000)
    visit_notes: str | None = Field(default=None, max_length=5000)
    diagnosis_codes: list[str] = Field(default_factory=list)
    procedure_codes: list[str] = Field(default_factory=list)

    @field_validator("diagnosis_codes", "procedure_codes", mode="before")
    @classmethod
    def _codes(cls, v) -> list[str]:
        return split_codes(v)
