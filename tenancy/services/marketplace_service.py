"""
Marketplace landing-page flow.

The landing page completes a purchase as a saga:
resolve token -> find or create tenant -> activate remotely ->
bind local subscription -> activate tenant locally.

There is no rollback. If the remote activation fails the tenant stays in
pending_setup, which is a valid state an operator can inspect and retry.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from tenancy.integrations.marketplace.fulfillment_client import (
    MarketplaceFulfillmentClient,
    ResolvedSubscription,
)
from tenancy.models.tenant import Tenant, TenantStatus
from tenancy.services.tenant_service import TenantCreate, TenantService

logger = logging.getLogger(__name__)

DEFAULT_TENANT_NAME = "New Organization"


@dataclass
class LandingResult:
    """Outcome of a completed landing flow."""
    tenant: Tenant
    resolved: ResolvedSubscription
    created: bool
    subscription_id: Optional[str] = None


class MarketplaceService:
    """Coordinates the marketplace client and the tenant lifecycle."""

    def __init__(
        self,
        db_session: Session,
        client: MarketplaceFulfillmentClient,
        tenant_service: Optional[TenantService] = None,
    ):
        self.db = db_session
        self.client = client
        self.tenants = tenant_service or TenantService(db_session)

    async def complete_landing(self, purchase_token: str) -> LandingResult:
        """
        Run the landing saga for a purchase token.

        Raises:
            MarketplaceAPIError: resolve or activate failed (tenant left in pending_setup)
            AppError: local lifecycle rejected the activation
        """
        resolved = await self.client.resolve_subscription(purchase_token)

        tenant = self.tenants.get_tenant_by_marketplace_subscription_id(resolved.id)
        created = tenant is None
        if tenant is None:
            tenant = self.tenants.create_tenant(
                self._tenant_from_resolved(resolved, purchase_token),
                source="api",
            )

        log_extra = {
            "tenant_id": tenant.id,
            "marketplace_subscription_id": resolved.id,
            "plan_id": resolved.plan_id,
        }

        if tenant.status == TenantStatus.ACTIVE:
            logger.info("Landing for already active tenant", extra=log_extra)
            return LandingResult(tenant=tenant, resolved=resolved, created=created)

        await self.client.activate_subscription(resolved.id, resolved.plan_id, resolved.quantity)

        subscription_id = self._ensure_subscription(tenant, resolved)
        tenant = self.tenants.activate_tenant(tenant.id, source="api")

        logger.info("Marketplace landing completed", extra={**log_extra, "created": created})
        return LandingResult(
            tenant=tenant,
            resolved=resolved,
            created=created,
            subscription_id=subscription_id,
        )

    def _tenant_from_resolved(self, resolved: ResolvedSubscription, purchase_token: str) -> TenantCreate:
        email = resolved.purchaser.email_id or resolved.beneficiary.email_id
        if not email:
            logger.warning(
                "Resolved subscription carries no purchaser email",
                extra={"marketplace_subscription_id": resolved.id}
            )
        return TenantCreate(
            name=resolved.subscription_name or DEFAULT_TENANT_NAME,
            primary_email=email or "",
            marketplace_subscription_id=resolved.id,
            marketplace_tenant_id=resolved.purchaser.tenant_id,
            marketplace_purchase_token=purchase_token,
            marketplace_plan_id=resolved.plan_id,
            marketplace_offer_id=resolved.offer_id,
        )

    def _ensure_subscription(self, tenant: Tenant, resolved: ResolvedSubscription) -> Optional[str]:
        """Bind the catalog plan sold under the marketplace plan id, if not already bound."""
        existing = self.tenants.get_active_subscription(tenant.id)
        if existing is not None:
            return existing.id

        plan = self.tenants.catalog.get_plan_by_marketplace_id(resolved.plan_id)
        if plan is None:
            logger.warning(
                "Marketplace plan has no catalog mapping; tenant activated without subscription",
                extra={"tenant_id": tenant.id, "plan_id": resolved.plan_id}
            )
            return None

        subscription = self.tenants.create_subscription(
            tenant.id,
            plan.code,
            marketplace_subscription_id=resolved.id,
            source="api",
        )
        return subscription.id
