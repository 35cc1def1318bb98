from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.shared.db.base import Base, TimestampMixin, new_id, utcnow


class BillingStatus(str, Enum):
    """Internal subscription / tenant billing status."""

    ACTIVE = "ACTIVE"
    TRIALING = "TRIALING"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"
    INACTIVE = "INACTIVE"


class PlanInterval(str, Enum):
    MONTH = "month"
    YEAR = "year"


FREE_PLAN_CODE = "FREE"


class Plan(TimestampMixin, Base):
    """Catalog plan. Mutated by the superadmin surface, read-heavy here."""

    __tablename__ = "plans"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(1000))
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), default="ARS")
    interval: Mapped[str] = mapped_column(String(10), default=PlanInterval.MONTH.value)
    trial_days: Mapped[int] = mapped_column(Integer, default=0)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)
    mp_preapproval_plan_id: Mapped[Optional[str]] = mapped_column(String(128))

    @property
    def is_zero_cost(self) -> bool:
        return self.code.upper() == FREE_PLAN_CODE or Decimal(self.price or 0) <= 0


class Subscription(TimestampMixin, Base):
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(
        ForeignKey("tenants.id"), nullable=False, index=True
    )
    plan_id: Mapped[str] = mapped_column(ForeignKey("plans.id"), nullable=False)
    provider: Mapped[str] = mapped_column(String(32), default="MERCADOPAGO")
    external_subscription_id: Mapped[str] = mapped_column(
        String(128), unique=True, nullable=False
    )
    status: Mapped[str] = mapped_column(String(20), default=BillingStatus.INACTIVE.value)
    current_period_start: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True)
    )
    current_period_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True)
    )
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False)

    plan: Mapped["Plan"] = relationship(lazy="joined")


class SubscriptionEvent(Base):
    """Append-only audit trail of subscription lifecycle transitions."""

    __tablename__ = "subscription_events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    subscription_id: Mapped[str] = mapped_column(
        ForeignKey("subscriptions.id"), nullable=False, index=True
    )
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
