"""
Database models.

Importing this package registers every model on the shared Base so that
Base.metadata.create_all() and Alembic see the full schema.
"""

from tenancy.db_base import Base
from tenancy.models.tenant import Tenant, TenantStatus, generate_tenant_code
from tenancy.models.subscription import Subscription, SubscriptionStatus
from tenancy.models.feature_override import FeatureOverride
from tenancy.models.usage_metering import UsageMeteringRecord, UsageDimension, UsageRecordStatus
from tenancy.models.webhook_event import MarketplaceWebhookEvent
from tenancy.platform.audit import AuditLog

__all__ = [
    "Base",
    "Tenant",
    "TenantStatus",
    "generate_tenant_code",
    "Subscription",
    "SubscriptionStatus",
    "FeatureOverride",
    "UsageMeteringRecord",
    "UsageDimension",
    "UsageRecordStatus",
    "MarketplaceWebhookEvent",
    "AuditLog",
]
