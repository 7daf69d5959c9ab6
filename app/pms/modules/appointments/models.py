from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.pms.models import Base

if TYPE_CHECKING:
    from app.pms.models import User
    from app.pms.modules.locations.models import Location, ServiceCatalog


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        Index("idx_appointments_patient", "patient_id"),
        Index("idx_appointments_physician_start", "physician_id", "scheduled_start"),
        Index("idx_appointments_location_start", "location_id", "scheduled_start"),
        Index("idx_appointments_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    patient_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    physician_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    location_id: Mapped[int | None] = mapped_column(ForeignKey("locations.id", ondelete="SET NULL"), nullable=True)
    service_id: Mapped[int | None] = mapped_column(ForeignKey("service_catalog.id", ondelete="SET NULL"), nullable=True)

    appointment_type: Mapped[str] = mapped_column(String(64), nullable=False, default="consultation")
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    scheduled_start: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    scheduled_end: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    actual_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="scheduled")
    is_telehealth: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    reason_for_visit: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    cancelled_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    patient: Mapped["User"] = relationship("User", foreign_keys=[patient_id], lazy="selectin")
    physician: Mapped["User"] = relationship("User", foreign_keys=[physician_id], lazy="selectin")
    location: Mapped["Location"] = relationship("Location", lazy="selectin")
    service: Mapped["ServiceCatalog"] = relationship("ServiceCatalog", lazy="selectin")

    @property
    def duration_minutes(self) -> int:
        return int((self.scheduled_end - self.scheduled_start).total_seconds() // 60)
