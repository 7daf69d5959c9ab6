from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.pms.models import Base

if TYPE_CHECKING:
    from app.pms.models import User
    from app.pms.modules.billing.models import Invoice
    from app.pms.modules.encounters.models import Encounter


class InsurancePayer(Base):
    __tablename__ = "insurance_payers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    payer_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class InsuranceClaim(Base):
    __tablename__ = "insurance_claims"
    __table_args__ = (
        Index("idx_insurance_claims_patient", "patient_id"),
        Index("idx_insurance_claims_status", "status"),
        Index("idx_insurance_claims_payer", "payer_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    claim_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    patient_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    invoice_id: Mapped[int | None] = mapped_column(ForeignKey("invoices.id", ondelete="SET NULL"), nullable=True)
    encounter_id: Mapped[int | None] = mapped_column(ForeignKey("encounters.id", ondelete="SET NULL"), nullable=True)
    payer_id: Mapped[int | None] = mapped_column(ForeignKey("insurance_payers.id", ondelete="SET NULL"), nullable=True)
    location_id: Mapped[int | None] = mapped_column(ForeignKey("locations.id", ondelete="SET NULL"), nullable=True)

    # draft, submitted, acknowledged, pending, denied, partially_paid, paid, appealed
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="draft")
    billed_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    allowed_amount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    paid_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    denial_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    was_appealed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    service_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    patient: Mapped["User"] = relationship("User", foreign_keys=[patient_id], lazy="selectin")
    payer: Mapped[InsurancePayer] = relationship(InsurancePayer, lazy="selectin")
    invoice: Mapped["Invoice"] = relationship("Invoice", lazy="selectin")
    activities: Mapped[list["ClaimActivity"]] = relationship(
        "ClaimActivity",
        back_populates="claim",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="ClaimActivity.created_at",
    )


class ClaimActivity(Base):
    __tablename__ = "claim_activities"
    __table_args__ = (Index("idx_claim_activities_claim", "claim_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    claim_id: Mapped[int] = mapped_column(ForeignKey("insurance_claims.id", ondelete="CASCADE"), nullable=False)
    activity_type: Mapped[str] = mapped_column(String(32), nullable=False)  # created, status_change, note
    old_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    new_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    actor_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    claim: Mapped[InsuranceClaim] = relationship(InsuranceClaim, back_populates="activities")
    actor: Mapped["User"] = relationship("User", lazy="selectin")


class Superbill(Base):
    __tablename__ = "superbills"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    superbill_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    patient_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    encounter_id: Mapped[int] = mapped_column(ForeignKey("encounters.id", ondelete="CASCADE"), nullable=False, unique=True)
    physician_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    # generated, submitted_to_insurance, reimbursed, denied, pending_review
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="generated")
    date_of_service: Mapped[date | None] = mapped_column(Date, nullable=True)
    place_of_service: Mapped[str] = mapped_column(String(2), nullable=False, default="11")
    diagnosis_codes: Mapped[list | None] = mapped_column(JSON, nullable=True)
    # [{cpt_code, description, charge_cents}]
    procedure_lines: Mapped[list | None] = mapped_column(JSON, nullable=True)
    total_charges_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    encounter: Mapped["Encounter"] = relationship("Encounter", lazy="selectin")
    physician: Mapped["User"] = relationship("User", foreign_keys=[physician_id], lazy="selectin")
