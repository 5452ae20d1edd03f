"""
Usage metering records awaiting submission to the marketplace Metering API.

Records move pending -> reported on success, or pending -> rejected on a
marketplace error. Rejected records are retried a bounded number of times
with exponential backoff (see UsageMeteringService).
"""

import enum

from sqlalchemy import Column, String, Integer, DateTime, Numeric, Text, Enum, ForeignKey, Index

from tenancy.models.base import Base, TenantScopedMixin, generate_uuid, utcnow


class UsageDimension(str, enum.Enum):
    """Metered dimensions registered with the marketplace offer."""
    ACTIVE_USERS = "active_users"
    STORAGE_GB = "storage_gb"
    API_CALLS = "api_calls"
    AI_REQUESTS = "ai_requests"
    LICENSE_VERIFICATIONS = "license_verifications"


class UsageRecordStatus(str, enum.Enum):
    PENDING = "pending"
    REPORTED = "reported"
    REJECTED = "rejected"


class UsageMeteringRecord(Base, TenantScopedMixin):
    """
    One metered quantity for one tenant subscription.

    NOTE: Does not include TimestampMixin; created_at and reported_at are
    the only timestamps the batcher needs.
    """

    __tablename__ = "usage_metering"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    subscription_id = Column(
        String(36),
        ForeignKey("tenant_subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    dimension = Column(
        Enum(
            UsageDimension,
            name="usage_dimension",
            native_enum=False,
            create_constraint=True,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
    )
    quantity = Column(Numeric(18, 6), nullable=False)
    effective_start_time = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    status = Column(
        Enum(
            UsageRecordStatus,
            name="usage_record_status",
            native_enum=False,
            create_constraint=True,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=UsageRecordStatus.PENDING,
    )
    error_message = Column(Text, nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)
    reported_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_usage_metering_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<UsageMeteringRecord(id={self.id}, subscription_id={self.subscription_id}, "
            f"dimension={self.dimension}, status={self.status})>"
        )
