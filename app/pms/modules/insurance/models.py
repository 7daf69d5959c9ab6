from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING

from sqlalchemy import Date, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.pms.models import Base

if TYPE_CHECKING:
    from app.pms.models import User


class InsuranceVerification(Base):
    __tablename__ = "insurance_verifications"
    __table_args__ = (
        Index("idx_insurance_verifications_patient", "patient_id"),
        Index("idx_insurance_verifications_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    patient_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    payer_name: Mapped[str] = mapped_column(String(200), nullable=False)
    payer_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    member_id: Mapped[str] = mapped_column(String(50), nullable=False)
    group_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    plan_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")  # pending, verified, failed, expired
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    verified_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    effective_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    termination_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    # Out-of-network benefits
    oon_deductible_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    oon_deductible_met_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    oon_oop_max_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    oon_oop_met_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    oon_coinsurance_pct: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # In-network benefits
    inn_deductible_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    inn_deductible_met_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    inn_oop_max_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    inn_oop_met_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    inn_coinsurance_pct: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    patient: Mapped["User"] = relationship("User", foreign_keys=[patient_id], lazy="selectin")
