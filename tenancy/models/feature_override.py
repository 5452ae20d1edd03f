"""
Per-tenant feature rows.

A row with is_override=True wins over the plan catalog when resolving
whether a module is enabled for a tenant.
"""

from sqlalchemy import Column, String, Boolean, JSON, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB

from tenancy.models.base import Base, TimestampMixin, TenantScopedMixin, generate_uuid


class FeatureOverride(Base, TimestampMixin, TenantScopedMixin):
    """Operator-managed module enablement for a single tenant."""

    __tablename__ = "tenant_features"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    feature_code = Column(
        String(100),
        nullable=False,
        comment="Module code (e.g. career_progression)"
    )
    is_enabled = Column(Boolean, nullable=False, default=True)
    is_override = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="When true this row wins over the plan catalog"
    )
    configuration = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "feature_code", name="uq_tenant_features_tenant_feature"),
    )

    def __repr__(self) -> str:
        return (
            f"<FeatureOverride(tenant_id={self.tenant_id}, feature={self.feature_code}, "
            f"enabled={self.is_enabled}, override={self.is_override})>"
        )
