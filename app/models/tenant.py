from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.shared.db.base import Base, TimestampMixin, new_id


class UserRole(str, Enum):
    """RBAC Role Definitions."""

    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


TENANT_ADMIN_ROLES = frozenset({UserRole.OWNER.value, UserRole.ADMIN.value})


class Tenant(TimestampMixin, Base):
    """
    A storefront. The billing_* / plan_* columns form the billing snapshot:
    a cache derived from the current Subscription, read by the access gate.
    """

    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    website: Mapped[Optional[str]] = mapped_column(String(512))

    plan: Mapped[Optional[str]] = mapped_column(String(64))  # plan code
    billing_status: Mapped[str] = mapped_column(String(20), default="INACTIVE")
    plan_starts_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    plan_ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    trial_ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    current_subscription_id: Mapped[Optional[str]] = mapped_column(String(64))

    users: Mapped[List["User"]] = relationship(
        back_populates="tenant", cascade="all, delete"
    )


class User(TimestampMixin, Base):
    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("tenant_id", "email", name="uq_tenant_user_email"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(
        ForeignKey("tenants.id"), nullable=False, index=True
    )
    email: Mapped[Optional[str]] = mapped_column(String(320), index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255))
    role: Mapped[str] = mapped_column(String(20), default=UserRole.MEMBER.value)

    tenant: Mapped["Tenant"] = relationship(back_populates="users")
