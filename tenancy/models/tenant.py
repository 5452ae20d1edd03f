"""
Tenant model for the multi-tenant SaaS platform.

Tenant represents one customer organization. Tenant.id becomes the tenant_id
used by every tenant-scoped model, and the tenant status is the first thing
checked on every protected request.

Tenants are never deleted; cancellation is a terminal status.
"""

import enum
import secrets

from sqlalchemy import Column, String, DateTime, Integer, Enum, Index, Text
from sqlalchemy.orm import relationship

from tenancy.db_base import Base
from tenancy.models.base import TimestampMixin, generate_uuid

TENANT_CODE_PREFIX = "tenant_"
DEFAULT_COUNTRY = "AE"


def generate_tenant_code() -> str:
    """Generate a human-facing tenant code: 'tenant_' + 16 URL-safe chars."""
    return TENANT_CODE_PREFIX + secrets.token_urlsafe(12)[:16]


class TenantStatus(str, enum.Enum):
    """Tenant lifecycle status."""
    TRIAL = "trial"
    PENDING_SETUP = "pending_setup"  # Marketplace purchase awaiting activation
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"          # Terminal
    EXPIRED = "expired"              # Trial ran out without conversion


class Tenant(Base, TimestampMixin):
    """
    A customer organization.

    Key concepts:
    - Tenant.id IS the tenant_id used across all tenant-scoped models
    - marketplace_subscription_id links the tenant to its marketplace purchase
    - version is an optimistic lock; concurrent transitions on the same
      tenant cannot both commit
    """

    __tablename__ = "tenants"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key - this IS the tenant_id used across all models"
    )

    tenant_code = Column(
        String(64),
        nullable=False,
        unique=True,
        default=generate_tenant_code,
        comment="Human-facing identifier used in onboarding links"
    )

    name = Column(String(255), nullable=False)
    primary_email = Column(String(255), nullable=False)
    country = Column(String(2), nullable=False, default=DEFAULT_COUNTRY)
    region = Column(String(100), nullable=True, comment="Emirate / region")

    # Marketplace linkage
    marketplace_subscription_id = Column(
        String(255),
        nullable=True,
        unique=True,
        comment="Azure Marketplace SaaS subscription ID"
    )
    marketplace_tenant_id = Column(String(255), nullable=True)
    marketplace_purchase_token = Column(Text, nullable=True)
    marketplace_plan_id = Column(String(100), nullable=True)
    marketplace_offer_id = Column(String(100), nullable=True)

    status = Column(
        Enum(
            TenantStatus,
            name="tenant_status",
            native_enum=False,
            create_constraint=True,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=TenantStatus.TRIAL,
        index=True,
        comment="Tenant lifecycle status"
    )

    # Lifecycle timestamps. Only the one matching the current status is meaningful.
    trial_ends_at = Column(DateTime(timezone=True), nullable=True)
    activated_at = Column(DateTime(timezone=True), nullable=True)
    suspended_at = Column(DateTime(timezone=True), nullable=True)
    suspension_reason = Column(Text, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    expired_at = Column(DateTime(timezone=True), nullable=True)

    version = Column(Integer, nullable=False, default=1)

    subscriptions = relationship(
        "Subscription",
        back_populates="tenant",
        lazy="select",
        order_by="Subscription.created_at",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_tenants_status_trial_ends", "status", "trial_ends_at"),
    )

    def __repr__(self) -> str:
        return f"<Tenant(id={self.id}, code={self.tenant_code}, status={self.status})>"

    @property
    def is_trial(self) -> bool:
        return self.status == TenantStatus.TRIAL

    @property
    def is_terminal(self) -> bool:
        return self.status == TenantStatus.CANCELLED
