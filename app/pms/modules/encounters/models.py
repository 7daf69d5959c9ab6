from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.pms.models import Base

if TYPE_CHECKING:
    from app.pms.models import User
    from app.pms.modules.appointments.models import Appointment
    from app.pms.modules.locations.models import Location


class Encounter(Base):
    __tablename__ = "encounters"
    __table_args__ = (
        Index("idx_encounters_patient", "patient_id"),
        Index("idx_encounters_physician", "physician_id"),
        Index("idx_encounters_check_in", "check_in_time"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    appointment_id: Mapped[int | None] = mapped_column(ForeignKey("appointments.id", ondelete="SET NULL"), nullable=True, unique=True)
    patient_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    physician_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    location_id: Mapped[int | None] = mapped_column(ForeignKey("locations.id", ondelete="SET NULL"), nullable=True)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default="checked_in")  # checked_in, in_progress, completed, cancelled
    is_telehealth: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    check_in_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    check_out_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    chief_complaint: Mapped[str | None] = mapped_column(Text, nullable=True)
    subjective: Mapped[str | None] = mapped_column(Text, nullable=True)
    objective: Mapped[str | None] = mapped_column(Text, nullable=True)
    assessment: Mapped[str | None] = mapped_column(Text, nullable=True)
    plan: Mapped[str | None] = mapped_column(Text, nullable=True)
    visit_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    diagnosis_codes: Mapped[list | None] = mapped_column(JSON, nullable=True)  # ICD-10 codes
    procedure_codes: Mapped[list | None] = mapped_column(JSON, nullable=True)  # CPT codes

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    patient: Mapped["User"] = relationship("User", foreign_keys=[patient_id], lazy="selectin")
    physician: Mapped["User"] = relationship("User", foreign_keys=[physician_id], lazy="selectin")
    appointment: Mapped["Appointment"] = relationship("Appointment", lazy="selectin")
    location: Mapped["Location"] = relationship("Location", lazy="selectin")
