"""
Shared input-validation helpers.

Form and JSON payloads are parsed with pydantic schemas (module `schemas.py`
files); failures are flattened into `ValidationError(field, message)` rows
that routes flash or return as `field_errors`.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError as PydanticValidationError, field_validator

DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

S = TypeVar("S", bound=BaseModel)


@dataclass(frozen=True)
class ValidationError:
    field: str
    message: str


class FormSchema(BaseModel):
    """Base for form-backed schemas: strips strings and maps blank optionals to None."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    @field_validator("*", mode="before")
    @classmethod
    def _blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v


def _clean_message(msg: str) -> str:
    prefix = "Value error, "
    if msg.startswith(prefix):
        return msg[len(prefix):]
    return msg


def parse_payload(schema: type[S], payload: dict[str, Any]) -> tuple[S | None, list[ValidationError]]:
    """Validate payload against schema. Returns (model, []) or (None, errors); first error per field wins."""
    try:
        return schema.model_validate(payload), []
    except PydanticValidationError as e:
        errors: list[ValidationError] = []
        seen: set[str] = set()
        for err in e.errors():
            field = ".".join(str(p) for p in err.get("loc", ())) or "form"
            if field in seen:
                continue
            seen.add(field)
            msg = err.get("msg") or "Invalid value."
            if err.get("type") == "missing" or (err.get("input") is None and err.get("type") in ("string_type", "int_type")):
                msg = "This field is required."
            errors.append(ValidationError(field=field, message=_clean_message(msg)))
        return None, errors


def errors_to_dict(errors: list[ValidationError]) -> dict[str, str]:
    return {e.field: e.message for e in errors}


def parse_date(s: str | None) -> date | None:
    """Parse YYYY-MM-DD date string; None for blank or malformed input."""
    s = (s or "").strip()
    if not s or not DATE_RE.match(s):
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        return None


def parse_int(s: Any) -> int | None:
    if s is None:
        return None
    try:
        return int(str(s).strip())
    except ValueError:
        return None


def dollars_to_cents(value: Any) -> int | None:
    """'12.50' -> 1250. None for blank input; ValueError for garbage or sub-cent precision."""
    if value is None:
        return None
    raw = str(value).strip().replace("$", "").replace(",", "")
    if not raw:
        return None
    whole, _, frac = raw.partition(".")
    if not whole.lstrip("-").isdigit() and whole not in ("", "-"):
        raise ValueError(f"Invalid amount: {value}")
    if len(frac) > 2:
        raise ValueError(f"Invalid amount: {value}")
    frac = (frac + "00")[:2]
    if frac and not frac.isdigit():
        raise ValueError(f"Invalid amount: {value}")
    sign = -1 if whole.startswith("-") else 1
    return sign * (int(whole.lstrip("-") or "0") * 100 + int(frac or "0"))
