"""
MarketplaceWebhookEvent model for tracking processed marketplace webhooks.

Used for idempotency - the marketplace delivers webhooks at least once,
and each operation id must take effect exactly once.
"""

from sqlalchemy import Column, String, DateTime

from tenancy.db_base import Base
from tenancy.models.base import generate_uuid, utcnow


class MarketplaceWebhookEvent(Base):
    """Processed marketplace operation, keyed by operation id."""

    __tablename__ = "marketplace_webhook_events"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    operation_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="Marketplace operation ID (payload 'id')"
    )
    action = Column(String(50), nullable=False)
    marketplace_subscription_id = Column(String(255), nullable=False, index=True)
    payload_hash = Column(
        String(64),
        nullable=True,
        comment="SHA-256 hash of payload for debugging"
    )
    processed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<MarketplaceWebhookEvent(operation_id={self.operation_id}, action={self.action})>"
