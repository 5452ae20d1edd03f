"""
Marketplace webhook handler with idempotency support.

Processes Azure Marketplace SaaS webhooks with:
- Operation deduplication using the marketplace operation id
- Action -> lifecycle transition mapping
- Operation acknowledgement for InProgress operations
- Audit logging of failures instead of surfacing them

handle() never raises: any failure, including an unreachable database or a
failed acknowledgement, is logged and reported in the returned result.

The webhook route must answer 200 for every structurally valid payload;
non-200 responses make the marketplace redeliver and duplicate side effects.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tenancy.integrations.marketplace.fulfillment_client import MarketplaceFulfillmentClient
from tenancy.models.tenant import Tenant
from tenancy.models.webhook_event import MarketplaceWebhookEvent
from tenancy.platform.audit import AuditAction, AuditEvent, AuditSeverity, write_audit_log_sync
from tenancy.services.tenant_service import TenantService

logger = logging.getLogger(__name__)

SUSPENSION_REASON = "Azure Marketplace suspension"

# Actions recorded in the audit log without a lifecycle transition
AUDIT_ONLY_ACTIONS = {
    "ChangePlan": AuditAction.MARKETPLACE_PLAN_CHANGED,
    "ChangeQuantity": AuditAction.MARKETPLACE_QUANTITY_CHANGED,
    "Renew": AuditAction.MARKETPLACE_SUBSCRIPTION_RENEWED,
}


@dataclass
class WebhookProcessingResult:
    """Result of webhook processing."""
    processed: bool
    message: str
    tenant_id: Optional[str] = None
    acknowledged: Optional[str] = None
    skipped_reason: Optional[str] = None
    error: Optional[str] = None


class MarketplaceWebhookHandler:
    """
    Handler for Azure Marketplace webhooks with idempotency.

    Ensures each operation id takes effect exactly once. Duplicate
    deliveries are still acknowledged so the marketplace stops retrying.
    """

    def __init__(
        self,
        db_session: Session,
        client: MarketplaceFulfillmentClient,
        tenant_service: Optional[TenantService] = None,
    ):
        self.db = db_session
        self.client = client
        self.tenants = tenant_service or TenantService(db_session)

    def _is_duplicate(self, operation_id: str) -> bool:
        existing = self.db.query(MarketplaceWebhookEvent).filter(
            MarketplaceWebhookEvent.operation_id == operation_id
        ).first()
        return existing is not None

    def _record_event(self, payload: dict[str, Any]) -> bool:
        """
        Record a processed operation for deduplication.

        Returns:
            False if another delivery recorded the same operation first
        """
        payload_str = json.dumps(payload, sort_keys=True, default=str)
        event = MarketplaceWebhookEvent(
            operation_id=payload["id"],
            action=payload["action"],
            marketplace_subscription_id=payload["subscriptionId"],
            payload_hash=hashlib.sha256(payload_str.encode()).hexdigest(),
        )
        self.db.add(event)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return False
        return True

    async def handle(self, payload: dict[str, Any]) -> WebhookProcessingResult:
        """
        Process one webhook delivery. Never raises.

        Args:
            payload: Validated webhook body (marketplace field names)
        """
        operation_id = payload["id"]
        subscription_id = payload["subscriptionId"]
        action = payload["action"]
        in_progress = payload.get("status") == "InProgress"

        log_extra = {
            "operation_id": operation_id,
            "marketplace_subscription_id": subscription_id,
            "action": action,
        }
        logger.info("Marketplace webhook received", extra=log_extra)

        tenant_id: Optional[str] = None
        try:
            if self._is_duplicate(operation_id):
                logger.info("Duplicate marketplace webhook, skipping", extra=log_extra)
                ack = await self._acknowledge(subscription_id, operation_id, "Success") if in_progress else None
                return WebhookProcessingResult(
                    processed=False,
                    message="Duplicate operation",
                    acknowledged=ack,
                    skipped_reason="duplicate",
                )

            tenant = self.tenants.get_tenant_by_marketplace_subscription_id(subscription_id)
            if tenant is None:
                logger.error("Tenant not found for marketplace subscription", extra=log_extra)
                ack = await self._acknowledge(subscription_id, operation_id, "Failure") if in_progress else None
                return WebhookProcessingResult(
                    processed=False,
                    message="Unknown subscription",
                    acknowledged=ack,
                    skipped_reason="unknown_subscription",
                )

            tenant_id = tenant.id
            self._apply_action(tenant, action, payload)
            self._record_event(payload)
        except Exception as e:
            return await self._processing_failed(payload, tenant_id, e)

        ack = await self._acknowledge(subscription_id, operation_id, "Success") if in_progress else None

        return WebhookProcessingResult(
            processed=True,
            message=f"Processed {action}",
            tenant_id=tenant_id,
            acknowledged=ack,
        )

    async def _processing_failed(
        self,
        payload: dict[str, Any],
        tenant_id: Optional[str],
        error: Exception,
    ) -> WebhookProcessingResult:
        operation_id = payload["id"]
        subscription_id = payload["subscriptionId"]
        action = payload["action"]

        logger.error(
            "Marketplace webhook processing failed",
            extra={
                "operation_id": operation_id,
                "marketplace_subscription_id": subscription_id,
                "action": action,
                "tenant_id": tenant_id,
                "error": str(error),
            },
            exc_info=True,
        )
        try:
            self.db.rollback()
        except Exception as rollback_error:
            logger.error(
                "Rollback after webhook failure also failed",
                extra={"operation_id": operation_id, "error": str(rollback_error)},
            )

        if tenant_id is not None:
            self._audit(
                tenant_id,
                AuditAction.MARKETPLACE_WEBHOOK_FAILED,
                subscription_id,
                metadata={
                    "operation_id": operation_id,
                    "marketplace_action": action,
                    "error": str(error),
                    "error_type": type(error).__name__,
                },
                severity=AuditSeverity.WARNING,
            )

        in_progress = payload.get("status") == "InProgress"
        ack = await self._acknowledge(subscription_id, operation_id, "Failure") if in_progress else None
        return WebhookProcessingResult(
            processed=False,
            message="Processing failed",
            tenant_id=tenant_id,
            acknowledged=ack,
            error=str(error),
        )

    def _apply_action(self, tenant: Tenant, action: str, payload: dict[str, Any]) -> None:
        subscription_id = payload["subscriptionId"]

        if action in AUDIT_ONLY_ACTIONS:
            metadata = {"operation_id": payload["id"]}
            if action == "ChangePlan":
                metadata["new_plan_id"] = payload.get("planId")
            elif action == "ChangeQuantity":
                metadata["new_quantity"] = payload.get("quantity")
            self._audit(tenant.id, AUDIT_ONLY_ACTIONS[action], subscription_id, metadata=metadata)
        elif action == "Suspend":
            self.tenants.suspend_tenant(tenant.id, SUSPENSION_REASON, source="webhook")
        elif action == "Reinstate":
            self.tenants.activate_tenant(tenant.id, source="webhook")
        elif action == "Unsubscribe":
            self.tenants.cancel_tenant(tenant.id, source="webhook")
        else:
            logger.warning(
                "Unhandled marketplace webhook action",
                extra={"action": action, "tenant_id": tenant.id}
            )

    async def _acknowledge(self, subscription_id: str, operation_id: str, status: str) -> Optional[str]:
        """Report the operation outcome. Failures are logged, not raised."""
        try:
            await self.client.update_operation_status(subscription_id, operation_id, status)
        except Exception as e:
            logger.error(
                "Failed to acknowledge marketplace operation",
                extra={
                    "operation_id": operation_id,
                    "marketplace_subscription_id": subscription_id,
                    "ack_status": status,
                    "error": str(e),
                }
            )
            return None
        return status

    def _audit(
        self,
        tenant_id: str,
        action: AuditAction,
        subscription_id: str,
        metadata: Optional[dict] = None,
        severity: AuditSeverity = AuditSeverity.INFO,
    ) -> None:
        write_audit_log_sync(
            self.db,
            AuditEvent(
                tenant_id=tenant_id,
                action=action,
                resource_type="subscription",
                resource_id=subscription_id,
                metadata=metadata or {},
                severity=severity,
                source="webhook",
                ip_address=self.tenants.ip_address,
                user_agent=self.tenants.user_agent,
            ),
        )
