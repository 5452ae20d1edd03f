"""
Marketplace landing flow tests.

The landing page resolves a purchase token, finds or creates the tenant,
activates the subscription remotely and then locally.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from tenancy.integrations.marketplace.fulfillment_client import (
    MarketplaceAPIError,
    MarketplaceParty,
    ResolvedSubscription,
)
from tenancy.models.subscription import Subscription
from tenancy.models.tenant import Tenant, TenantStatus
from tenancy.platform.audit import AuditAction, query_audit_logs
from tenancy.services.marketplace_service import MarketplaceService


def _resolved(subscription_id="mp-sub-1", plan_id="professional-monthly", name="Contoso Schools"):
    return ResolvedSubscription(
        id=subscription_id,
        subscription_name=name,
        offer_id="workforce-offer",
        plan_id=plan_id,
        quantity=None,
        status="PendingFulfillmentStart",
        purchaser=MarketplaceParty(email_id="buyer@contoso.example", tenant_id="aad-1"),
        beneficiary=MarketplaceParty(email_id="user@contoso.example"),
    )


@pytest.fixture
def mock_client():
    client = MagicMock()
    client.resolve_subscription = AsyncMock(return_value=_resolved())
    client.activate_subscription = AsyncMock(return_value=None)
    return client


@pytest.fixture
def service(db_session, mock_client, tenant_service):
    return MarketplaceService(db_session, mock_client, tenant_service)


class TestCompleteLanding:

    @pytest.mark.asyncio
    async def test_new_purchase(self, db_session, service, mock_client):
        result = await service.complete_landing("purchase-token")

        assert result.created
        tenant = result.tenant
        assert tenant.status == TenantStatus.ACTIVE
        assert tenant.name == "Contoso Schools"
        assert tenant.primary_email == "buyer@contoso.example"
        assert tenant.marketplace_tenant_id == "aad-1"
        assert tenant.marketplace_plan_id == "professional-monthly"

        subscription = db_session.query(Subscription).filter(Subscription.id == result.subscription_id).one()
        assert subscription.plan_code == "professional"
        assert subscription.marketplace_subscription_id == "mp-sub-1"
        assert subscription.end_date is None

        mock_client.activate_subscription.assert_awaited_once_with("mp-sub-1", "professional-monthly", None)
        actions = {log.action for log in query_audit_logs(db_session, tenant.id)}
        assert {"tenant.created", "subscription.created", "tenant.activated"} <= actions

    @pytest.mark.asyncio
    async def test_known_subscription_reuses_tenant(self, db_session, service, make_tenant):
        existing = make_tenant(marketplace=True, marketplace_subscription_id="mp-sub-1")

        result = await service.complete_landing("purchase-token")

        assert not result.created
        assert result.tenant.id == existing.id
        assert db_session.query(Tenant).count() == 1

    @pytest.mark.asyncio
    async def test_already_active_skips_activation(self, db_session, service, mock_client):
        await service.complete_landing("purchase-token")
        mock_client.activate_subscription.reset_mock()

        result = await service.complete_landing("purchase-token")

        assert result.tenant.status == TenantStatus.ACTIVE
        mock_client.activate_subscription.assert_not_awaited()
        assert db_session.query(Subscription).count() == 1

    @pytest.mark.asyncio
    async def test_remote_activation_failure_leaves_pending_setup(self, db_session, service, mock_client):
        mock_client.activate_subscription.side_effect = MarketplaceAPIError("activation failed", status_code=500)

        with pytest.raises(MarketplaceAPIError):
            await service.complete_landing("purchase-token")

        tenant = db_session.query(Tenant).one()
        assert tenant.status == TenantStatus.PENDING_SETUP
        assert db_session.query(Subscription).count() == 0

    @pytest.mark.asyncio
    async def test_retry_after_failure_completes(self, db_session, service, mock_client):
        mock_client.activate_subscription.side_effect = [MarketplaceAPIError("flaky", status_code=503), None]

        with pytest.raises(MarketplaceAPIError):
            await service.complete_landing("purchase-token")
        result = await service.complete_landing("purchase-token")

        assert not result.created
        assert result.tenant.status == TenantStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_resolve_failure_creates_nothing(self, db_session, service, mock_client):
        mock_client.resolve_subscription.side_effect = MarketplaceAPIError("bad token", status_code=400)

        with pytest.raises(MarketplaceAPIError):
            await service.complete_landing("bad")

        assert db_session.query(Tenant).count() == 0

    @pytest.mark.asyncio
    async def test_unmapped_plan_activates_without_subscription(self, db_session, service, mock_client):
        mock_client.resolve_subscription.return_value = _resolved(plan_id="legacy-plan")

        result = await service.complete_landing("purchase-token")

        assert result.tenant.status == TenantStatus.ACTIVE
        assert result.subscription_id is None
        assert db_session.query(Subscription).count() == 0

    @pytest.mark.asyncio
    async def test_purchase_token_is_redacted_in_audit(self, db_session, service):
        result = await service.complete_landing("purchase-token")

        created = query_audit_logs(db_session, result.tenant.id, actions=[AuditAction.TENANT_CREATED])[0]
        assert "purchase-token" not in str(created.event_metadata)
