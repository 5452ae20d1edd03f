"""
Marketplace webhook handler tests.

CRITICAL: Each marketplace operation takes effect exactly once. Redelivery
of the same operation id is acknowledged but changes nothing.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from tenancy.integrations.marketplace.fulfillment_client import MarketplaceAPIError
from tenancy.models.tenant import TenantStatus
from tenancy.models.webhook_event import MarketplaceWebhookEvent
from tenancy.platform.audit import AuditAction, query_audit_logs
from tenancy.services.marketplace_webhook_handler import MarketplaceWebhookHandler


def _payload(action, operation_id="op-1", subscription_id="mp-sub-1", status="InProgress", **extra):
    payload = {
        "id": operation_id,
        "activityId": "activity-1",
        "subscriptionId": subscription_id,
        "offerId": "workforce-offer",
        "publisherId": "publisher",
        "planId": "professional-monthly",
        "quantity": None,
        "timeStamp": "2026-03-01T10:00:00Z",
        "action": action,
        "status": status,
    }
    payload.update(extra)
    return payload


@pytest.fixture
def mock_client():
    client = MagicMock()
    client.update_operation_status = AsyncMock(return_value=None)
    return client


@pytest.fixture
def active_tenant(make_tenant, tenant_service):
    tenant = make_tenant(marketplace=True, marketplace_subscription_id="mp-sub-1")
    tenant_service.activate_tenant(tenant.id)
    return tenant


@pytest.fixture
def handler(db_session, mock_client, tenant_service):
    return MarketplaceWebhookHandler(db_session, mock_client, tenant_service)


class TestLifecycleActions:

    @pytest.mark.asyncio
    async def test_suspend(self, db_session, handler, mock_client, active_tenant):
        result = await handler.handle(_payload("Suspend"))

        assert result.processed
        assert result.acknowledged == "Success"
        db_session.refresh(active_tenant)
        assert active_tenant.status == TenantStatus.SUSPENDED
        assert active_tenant.suspension_reason == "Azure Marketplace suspension"

        logs = query_audit_logs(db_session, active_tenant.id, actions=[AuditAction.TENANT_SUSPENDED])
        assert len(logs) == 1
        assert logs[0].severity == "critical"
        assert logs[0].source == "webhook"
        mock_client.update_operation_status.assert_awaited_once_with("mp-sub-1", "op-1", "Success")

    @pytest.mark.asyncio
    async def test_duplicate_suspend_takes_effect_once(self, db_session, handler, mock_client, active_tenant):
        await handler.handle(_payload("Suspend"))
        result = await handler.handle(_payload("Suspend"))

        assert not result.processed
        assert result.skipped_reason == "duplicate"
        assert result.acknowledged == "Success"
        logs = query_audit_logs(db_session, active_tenant.id, actions=[AuditAction.TENANT_SUSPENDED])
        assert len(logs) == 1
        assert db_session.query(MarketplaceWebhookEvent).count() == 1
        assert mock_client.update_operation_status.await_count == 2

    @pytest.mark.asyncio
    async def test_second_suspend_operation_is_noop(self, db_session, handler, active_tenant):
        await handler.handle(_payload("Suspend", operation_id="op-1"))
        result = await handler.handle(_payload("Suspend", operation_id="op-2"))

        assert result.processed
        logs = query_audit_logs(db_session, active_tenant.id, actions=[AuditAction.TENANT_SUSPENDED])
        assert len(logs) == 1

    @pytest.mark.asyncio
    async def test_reinstate(self, db_session, handler, active_tenant):
        await handler.handle(_payload("Suspend", operation_id="op-1"))
        await handler.handle(_payload("Reinstate", operation_id="op-2"))

        db_session.refresh(active_tenant)
        assert active_tenant.status == TenantStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_unsubscribe_cancels(self, db_session, handler, tenant_service, active_tenant):
        subscription = tenant_service.create_subscription(
            active_tenant.id, "professional", marketplace_subscription_id="mp-sub-1"
        )

        result = await handler.handle(_payload("Unsubscribe", status="Succeeded"))

        assert result.processed
        assert result.acknowledged is None
        db_session.refresh(active_tenant)
        db_session.refresh(subscription)
        assert active_tenant.status == TenantStatus.CANCELLED
        assert subscription.status == "cancelled"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("action, audit_action, metadata_key, value", [
        ("ChangePlan", AuditAction.MARKETPLACE_PLAN_CHANGED, "new_plan_id", "enterprise-quarterly"),
        ("ChangeQuantity", AuditAction.MARKETPLACE_QUANTITY_CHANGED, "new_quantity", 40),
        ("Renew", AuditAction.MARKETPLACE_SUBSCRIPTION_RENEWED, "operation_id", "op-1"),
    ])
    async def test_audit_only_actions(
        self, db_session, handler, active_tenant, action, audit_action, metadata_key, value
    ):
        result = await handler.handle(
            _payload(action, planId="enterprise-quarterly", quantity=40)
        )

        assert result.processed
        db_session.refresh(active_tenant)
        assert active_tenant.status == TenantStatus.ACTIVE
        log = query_audit_logs(db_session, active_tenant.id, actions=[audit_action])[0]
        assert log.resource_type == "subscription"
        assert log.resource_id == "mp-sub-1"
        assert log.event_metadata[metadata_key] == value


class TestFailures:

    @pytest.mark.asyncio
    async def test_unknown_subscription_acknowledged_failure(self, db_session, handler, mock_client):
        result = await handler.handle(_payload("Suspend", subscription_id="mp-unknown"))

        assert not result.processed
        assert result.skipped_reason == "unknown_subscription"
        mock_client.update_operation_status.assert_awaited_once_with("mp-unknown", "op-1", "Failure")

    @pytest.mark.asyncio
    async def test_invalid_transition_is_audited_not_raised(self, db_session, handler, mock_client, make_tenant):
        tenant = make_tenant(marketplace=True, marketplace_subscription_id="mp-sub-1")

        # pending_setup cannot be suspended
        result = await handler.handle(_payload("Suspend"))

        assert not result.processed
        assert result.acknowledged == "Failure"
        assert "pending_setup" in result.error
        log = query_audit_logs(db_session, tenant.id, actions=[AuditAction.MARKETPLACE_WEBHOOK_FAILED])[0]
        assert log.severity == "warning"
        assert log.event_metadata["error_type"] == "InvalidTransitionError"
        assert db_session.query(MarketplaceWebhookEvent).count() == 0

    @pytest.mark.asyncio
    async def test_failed_operation_can_be_redelivered(self, db_session, handler, tenant_service, active_tenant):
        with patch.object(tenant_service, "suspend_tenant", side_effect=RuntimeError("deadlock")):
            first = await handler.handle(_payload("Suspend"))
        second = await handler.handle(_payload("Suspend"))

        assert not first.processed
        assert second.processed
        db_session.refresh(active_tenant)
        assert active_tenant.status == TenantStatus.SUSPENDED

    @pytest.mark.asyncio
    async def test_ack_failure_does_not_raise(self, db_session, handler, mock_client, active_tenant):
        mock_client.update_operation_status.side_effect = MarketplaceAPIError("ack failed", status_code=500)

        result = await handler.handle(_payload("Suspend"))

        assert result.processed
        assert result.acknowledged is None
        db_session.refresh(active_tenant)
        assert active_tenant.status == TenantStatus.SUSPENDED

    @pytest.mark.asyncio
    async def test_unhandled_action_is_recorded(self, db_session, handler, active_tenant):
        result = await handler.handle(_payload("Transfer", status="Succeeded"))

        assert result.processed
        db_session.refresh(active_tenant)
        assert active_tenant.status == TenantStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_unexpected_ack_error_does_not_raise(self, db_session, handler, mock_client, active_tenant):
        mock_client.update_operation_status.side_effect = ValueError(
            "could not convert string to float: 'Wed, 21 Oct 2026 07:28:00 GMT'"
        )

        result = await handler.handle(_payload("Suspend"))

        assert result.processed
        assert result.acknowledged is None
        db_session.refresh(active_tenant)
        assert active_tenant.status == TenantStatus.SUSPENDED
        assert db_session.query(MarketplaceWebhookEvent).count() == 1

    @pytest.mark.asyncio
    async def test_lookup_failure_is_reported_not_raised(self, handler, tenant_service, mock_client, active_tenant):
        with patch.object(
            tenant_service,
            "get_tenant_by_marketplace_subscription_id",
            side_effect=OperationalError("SELECT", {}, Exception("connection lost")),
        ):
            result = await handler.handle(_payload("Suspend"))

        assert not result.processed
        assert result.tenant_id is None
        assert "connection lost" in result.error
        mock_client.update_operation_status.assert_awaited_once_with("mp-sub-1", "op-1", "Failure")

    @pytest.mark.asyncio
    async def test_record_failure_after_transition_is_audited(self, db_session, handler, mock_client, active_tenant):
        with patch.object(handler, "_record_event", side_effect=RuntimeError("disk full")):
            result = await handler.handle(_payload("Suspend"))

        assert not result.processed
        assert result.tenant_id == active_tenant.id
        failures = query_audit_logs(db_session, active_tenant.id, actions=[AuditAction.MARKETPLACE_WEBHOOK_FAILED])
        assert len(failures) == 1
        assert failures[0].event_metadata["error_type"] == "RuntimeError"
        mock_client.update_operation_status.assert_awaited_once_with("mp-sub-1", "op-1", "Failure")
