from __future__ import annotations

from pydantic import Field, field_validator

from app.pms.validation import DATE_RE, FormSchema

TASK_CATEGORIES = ("insurance_verification", "follow_up_scheduling", "document_request", "general")
TASK_PRIORITIES = ("low", "normal", "high", "urgent")


class TaskCreate(FormSchema):
    title: str = Field(min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    category: str = "general"
    priority: str = "normal"
    due_date: str | None = None
    patient_id: int | None = None
    appointment_id: int | None = None
    assigned_to_user_id: int | None = None
    related_entity_type: str | None = Field(default=None, max_length=64)
    related_entity_id: str | None = Field(default=None, max_length=64)

    @field_validator("category")
    @classmethod
    def _category(cls, v: str) -> str:
        if v not in TASK_CATEGORIES:
            raise ValueError(f"Invalid category. Must be one of: {', '.join(TASK_CATEGORIES)}")
        return v

    @field_validator("priority")
    @classmethod
    def _priority(cls, v: str) -> str:
        if v not in TASK_PRIORITIES:
            raise ValueError(f"Invalid priority. Must be one of: {', '.join(TASK_PRIORITIES)}")
        return v

    @field_validator("due_date")
    @classmethod
    def _due(cls, v: str | None) -> str | None:
        if v is not None and not DATE_RE.match(v):
            raise ValueError("Due date must be YYYY-MM-DD.")
        return v


class StaffCancel(FormSchema):
    reason: str = Field(min_length=1, max_length=500)


class CheckIn(FormSchema):
    insurance_confirmed: bool = False
    notes: str | None = Field(default=None, max_length=2000)

    @field_validator("insurance_confirmed", mode="before")
    @classmethod
    def _bool(cls, v) -> bool:
        if isinstance(v, bool):
            return v
        return str(v or "").strip().lower() in ("1", "true", "on", "yes")
