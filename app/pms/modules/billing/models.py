from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.pms.models import Base

if TYPE_CHECKING:
    from app.pms.models import User
    from app.pms.modules.encounters.models import Encounter


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (
        Index("idx_invoices_patient", "patient_id"),
        Index("idx_invoices_status", "status"),
        Index("idx_invoices_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    invoice_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    patient_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    encounter_id: Mapped[int | None] = mapped_column(ForeignKey("encounters.id", ondelete="SET NULL"), nullable=True)

    # draft, sent, paid, partially_paid, overdue, void, refunded
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="draft")

    subtotal_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    discount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tax_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_paid_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_due_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    membership_tier_applied: Mapped[str | None] = mapped_column(String(32), nullable=True)
    # [{service_id, name, cpt_code, description, qty, unit_price_cents, discount_cents, total_cents}]
    line_items: Mapped[list | None] = mapped_column(JSON, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    checkout_session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    patient: Mapped["User"] = relationship("User", foreign_keys=[patient_id], lazy="selectin")
    encounter: Mapped["Encounter"] = relationship("Encounter", lazy="selectin")


class PaymentHistory(Base):
    __tablename__ = "payment_history"
    __table_args__ = (
        Index("idx_payment_history_user", "user_id"),
        Index("idx_payment_history_intent", "payment_intent_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    invoice_id: Mapped[int | None] = mapped_column(ForeignKey("invoices.id", ondelete="SET NULL"), nullable=True)

    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="usd")
    status: Mapped[str] = mapped_column(String(32), nullable=False)  # succeeded, failed, pending, refunded
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(64), nullable=True)
    receipt_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    processor_invoice_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    invoice: Mapped["Invoice"] = relationship("Invoice", lazy="selectin")


class MembershipTier(Base):
    __tablename__ = "membership_tiers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)  # platinum, gold, silver
    display_name: Mapped[str] = mapped_column(String(64), nullable=False)
    monthly_price_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    annual_price_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    discount_pct: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    features: Mapped[list | None] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class PatientMembership(Base):
    __tablename__ = "patient_memberships"
    __table_args__ = (Index("idx_patient_memberships_user", "user_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    tier_id: Mapped[int] = mapped_column(ForeignKey("membership_tiers.id", ondelete="RESTRICT"), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")  # active, past_due, cancelled
    billing_interval: Mapped[str] = mapped_column(String(16), nullable=False, default="monthly")  # monthly, annual
    customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)  # payment processor customer
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    tier: Mapped[MembershipTier] = relationship(MembershipTier, lazy="selectin")


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    # active, past_due, cancelled, trialing, paused
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    price_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tier_name: Mapped[str | None] = mapped_column(String(32), nullable=True)
    current_period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
