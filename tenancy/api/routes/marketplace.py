"""
Azure Marketplace routes.

- GET  /marketplace/landing  Landing page redirect target after purchase
- POST /marketplace/webhook  Fulfillment operation notifications
- GET  /marketplace/health   Liveness check

SECURITY: The landing page trusts only what the Fulfillment API returns for
the purchase token; nothing from the query string beyond the token is used.
"""

import logging
from datetime import datetime, timezone
from typing import AsyncGenerator, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from tenancy.config.settings import Settings, get_settings
from tenancy.database.session import get_db_session
from tenancy.integrations.marketplace.fulfillment_client import (
    MarketplaceFulfillmentClient,
    get_fulfillment_client,
)
from tenancy.platform.audit import extract_client_info
from tenancy.platform.errors import AppError
from tenancy.services.marketplace_service import MarketplaceService
from tenancy.services.marketplace_webhook_handler import MarketplaceWebhookHandler
from tenancy.services.tenant_service import TenantService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/marketplace", tags=["marketplace"])

LANDING_FAILURE_MESSAGE = "We could not complete your subscription setup. Please try again or contact support."


class MarketplaceWebhookPayload(BaseModel):
    """Operation notification body sent by the marketplace."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = Field(min_length=1)
    activity_id: Optional[str] = Field(default=None, alias="activityId")
    subscription_id: str = Field(alias="subscriptionId", min_length=1)
    offer_id: Optional[str] = Field(default=None, alias="offerId")
    publisher_id: Optional[str] = Field(default=None, alias="publisherId")
    plan_id: Optional[str] = Field(default=None, alias="planId")
    quantity: Optional[int] = None
    time_stamp: Optional[str] = Field(default=None, alias="timeStamp")
    action: str = Field(min_length=1)
    status: Optional[str] = None


class WebhookResponse(BaseModel):
    status: str = "ok"


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str


async def get_marketplace_client() -> AsyncGenerator[MarketplaceFulfillmentClient, None]:
    client = get_fulfillment_client()
    try:
        yield client
    finally:
        await client.close()


def _request_tenant_service(request: Request, db: Session) -> TenantService:
    ip_address, user_agent = extract_client_info(request)
    return TenantService(db, ip_address=ip_address, user_agent=user_agent)


def _error_redirect(message: str) -> RedirectResponse:
    return RedirectResponse(
        url=f"/error?{urlencode({'message': message})}",
        status_code=status.HTTP_302_FOUND,
    )


@router.get("/landing")
async def marketplace_landing(
    request: Request,
    token: Optional[str] = Query(None),
    db: Session = Depends(get_db_session),
    client: MarketplaceFulfillmentClient = Depends(get_marketplace_client),
):
    """
    Complete a marketplace purchase and send the user to onboarding.

    Failures redirect to the error page instead of returning an error body;
    the tenant is left in pending_setup when remote activation failed.
    """
    if not token:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing marketplace purchase token"
        )

    service = MarketplaceService(db, client, _request_tenant_service(request, db))
    try:
        result = await service.complete_landing(token)
    except AppError as e:
        logger.error(
            "Marketplace landing failed",
            extra={"error_code": e.code, "error": e.message}
        )
        return _error_redirect(LANDING_FAILURE_MESSAGE)
    except Exception as e:
        logger.error("Marketplace landing failed unexpectedly", extra={"error": str(e)}, exc_info=True)
        db.rollback()
        return _error_redirect(LANDING_FAILURE_MESSAGE)

    query = urlencode({"tenant": result.tenant.tenant_code, "activated": "true"})
    return RedirectResponse(url=f"/onboarding?{query}", status_code=status.HTTP_302_FOUND)


@router.post("/webhook", response_model=WebhookResponse)
async def marketplace_webhook(
    request: Request,
    payload: MarketplaceWebhookPayload,
    db: Session = Depends(get_db_session),
    client: MarketplaceFulfillmentClient = Depends(get_marketplace_client),
):
    """
    Handle a marketplace operation notification.

    Always answers 200 for a valid payload; outcomes are recorded in the
    audit log and acknowledged to the marketplace separately.
    """
    handler = MarketplaceWebhookHandler(db, client, _request_tenant_service(request, db))
    result = await handler.handle(payload.model_dump(by_alias=True))
    logger.info(
        "Marketplace webhook handled",
        extra={
            "operation_id": payload.id,
            "processed": result.processed,
            "skipped_reason": result.skipped_reason,
        }
    )
    return WebhookResponse()


@router.get("/health", response_model=HealthResponse)
async def marketplace_health(settings: Settings = Depends(get_settings)):
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=settings.app_version,
    )
