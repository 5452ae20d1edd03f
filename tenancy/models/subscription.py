"""
Subscription model binding a tenant to a plan for a period.

CRITICAL: at most one subscription per tenant is 'active' at any time.
Enforced by TenantService.create_subscription and by a partial unique index.
"""

from sqlalchemy import Column, String, DateTime, Index, text
from sqlalchemy.orm import relationship

from tenancy.models.base import Base, TimestampMixin, TenantScopedMixin, generate_uuid, ensure_aware, utcnow


class SubscriptionStatus(str):
    """Subscription status values."""
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class Subscription(Base, TimestampMixin, TenantScopedMixin):
    """
    A tenant's plan binding.

    end_date NULL means open-ended (marketplace-managed terms renew remotely).
    next_billing_date is informational and always start + one billing cycle.
    """

    __tablename__ = "tenant_subscriptions"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    plan_code = Column(
        String(50),
        nullable=False,
        comment="Code of the plan in the plan catalog"
    )

    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=True)
    next_billing_date = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    marketplace_subscription_id = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Present when the marketplace owns billing for this subscription"
    )

    status = Column(
        String(20),
        nullable=False,
        default=SubscriptionStatus.ACTIVE,
        index=True,
    )

    tenant = relationship("Tenant", back_populates="subscriptions")

    __table_args__ = (
        Index(
            "uq_tenant_subscriptions_one_active",
            "tenant_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, tenant_id={self.tenant_id}, plan={self.plan_code}, status={self.status})>"

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE

    def has_lapsed(self, now=None) -> bool:
        """True if the subscription has a fixed end date that is in the past."""
        if self.end_date is None:
            return False
        return ensure_aware(self.end_date) < (now or utcnow())
