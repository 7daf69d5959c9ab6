from __future__ import annotations

from pydantic import Field, field_validator

from app.pms.validation import FormSchema

SESSION_TYPES = ("pre_op_consult", "post_op_followup", "general_consult", "second_opinion", "urgent_care")
SESSION_STATUSES = ("scheduled", "waiting_room", "in_progress", "completed", "cancelled", "no_show")
MESSAGE_TYPES = ("text", "image", "file", "system")


class SessionRequest(FormSchema):
    physician_id: int
    session_type: str = "general_consult"
    scheduled_start: str
    duration_minutes: int = Field(default=30, ge=15, le=120)
    chief_complaint: str | None = Field(default=None, max_length=2000)
    patient_state: str | None = Field(default=None, max_length=100)

    @field_validator("session_type")
    @classmethod
    def _type(cls, v: str) -> str:
        if v not in SESSION_TYPES:
            raise ValueError(f"Invalid session type. Must be one of: {', '.join(SESSION_TYPES)}")
        return v


class StatusUpdate(FormSchema):
    status: str
    clinical_notes: str | None = Field(default=None, max_length=5000)
    follow_up_instructions: str | None = Field(default=None, max_length=3000)

    @field_validator("status")
    @classmethod
    def _status(cls, v: str) -> str:
        if v not in SESSION_STATUSES:
            raise ValueError(f"Invalid status. Must be one of: {', '.join(SESSION_STATUSES)}")
        return v


class MessageInput(FormSchema):
    content: str = Field(min_length=1, max_length=5000)
    message_type: str = "text"

    @field_validator("message_type")
    @classmethod
    def _type(cls, v: str) -> str:
        if v not in MESSAGE_TYPES:
            raise ValueError(f"Invalid message type. Must be one of: {', '.join(MESSAGE_TYPES)}")
        return v


class CancelSession(FormSchema):
    reason: str = Field(min_length=1, max_length=500)
