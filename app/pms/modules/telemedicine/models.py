from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.pms.models import Base

if TYPE_CHECKING:
    from app.pms.models import User


class TelemedicineSession(Base):
    __tablename__ = "telemedicine_sessions"
    __table_args__ = (
        Index("idx_telemedicine_sessions_patient", "patient_id"),
        Index("idx_telemedicine_sessions_physician", "physician_id"),
        Index("idx_telemedicine_sessions_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    patient_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    physician_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    appointment_id: Mapped[int | None] = mapped_column(ForeignKey("appointments.id", ondelete="SET NULL"), nullable=True)

    # pre_op_consult, post_op_followup, general_consult, second_opinion, urgent_care
    session_type: Mapped[str] = mapped_column(String(32), nullable=False, default="general_consult")
    # scheduled, waiting_room, in_progress, completed, cancelled, no_show
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="scheduled")

    scheduled_start: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    actual_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    actual_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    chief_complaint: Mapped[str | None] = mapped_column(Text, nullable=True)
    patient_state: Mapped[str | None] = mapped_column(String(100), nullable=True)
    consent_given: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    consent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    clinical_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    follow_up_instructions: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    patient: Mapped["User"] = relationship("User", foreign_keys=[patient_id], lazy="selectin")
    physician: Mapped["User"] = relationship("User", foreign_keys=[physician_id], lazy="selectin")
    messages: Mapped[list["TelemedicineMessage"]] = relationship(
        "TelemedicineMessage",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="TelemedicineMessage.created_at",
    )

    @property
    def actual_duration_minutes(self) -> int | None:
        if not self.actual_start or not self.actual_end:
            return None
        return int((self.actual_end - self.actual_start).total_seconds() // 60)


class TelemedicineMessage(Base):
    __tablename__ = "telemedicine_messages"
    __table_args__ = (Index("idx_telemedicine_messages_session", "session_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    session_id: Mapped[int] = mapped_column(ForeignKey("telemedicine_sessions.id", ondelete="CASCADE"), nullable=False)
    sender_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    message_type: Mapped[str] = mapped_column(String(16), nullable=False, default="text")  # text, image, file, system
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    session: Mapped[TelemedicineSession] = relationship(TelemedicineSession, back_populates="messages")
    sender: Mapped["User"] = relationship("User", lazy="selectin")
