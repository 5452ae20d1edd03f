"""
Azure Marketplace SaaS Fulfillment API v2 and Metering API client.

Handles:
- Client-credentials token exchange with caching
- Purchase token resolution and subscription activation
- Operation acknowledgement for webhook-initiated operations
- Batched usage reporting (max 25 events per call)

All calls are bounded by a timeout and retried on 429/5xx with
exponential backoff.

Documentation: https://learn.microsoft.com/azure/marketplace/partner-center-portal/pc-saas-fulfillment-subscription-api
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional

import httpx

from tenancy.platform.errors import ExternalProtocolError

logger = logging.getLogger(__name__)

MARKETPLACE_API_BASE = "https://marketplaceapi.microsoft.com/api"
MARKETPLACE_API_VERSION = "2018-08-31"
MARKETPLACE_RESOURCE_ID = "20e940b3-4c77-4b0b-9a53-9e16a1b010a7"
TOKEN_ENDPOINT = "https://login.microsoftonline.com/{tenant_id}/oauth2/token"

# Refresh the bearer token this many seconds before it expires
TOKEN_EXPIRY_MARGIN_SECONDS = 60

# Metering API batch limit
USAGE_BATCH_SIZE = 25

# Per-event statuses in a batchUsageEvent response that count as delivered
ACCEPTED_USAGE_STATUSES = frozenset({"Accepted", "Duplicate"})


@dataclass
class RetryConfig:
    """Retry policy for marketplace calls."""
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    retryable_status_codes: tuple = (429, 500, 502, 503, 504)

    def delay_for(self, attempt: int) -> float:
        return min(self.initial_delay * (self.backoff_multiplier ** attempt), self.max_delay)


@dataclass
class MarketplaceConfig:
    """Publisher credentials for the marketplace APIs."""
    publisher_id: Optional[str] = None
    offer_id: Optional[str] = None
    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None

    @classmethod
    def from_env(cls) -> "MarketplaceConfig":
        return cls(
            publisher_id=os.getenv("AZURE_MARKETPLACE_PUBLISHER_ID"),
            offer_id=os.getenv("AZURE_MARKETPLACE_OFFER_ID"),
            tenant_id=os.getenv("AZURE_MARKETPLACE_TENANT_ID"),
            client_id=os.getenv("AZURE_MARKETPLACE_CLIENT_ID"),
            client_secret=os.getenv("AZURE_MARKETPLACE_CLIENT_SECRET"),
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.tenant_id and self.client_id and self.client_secret)


@dataclass
class MarketplaceParty:
    """Purchaser or beneficiary identity."""
    email_id: Optional[str] = None
    object_id: Optional[str] = None
    tenant_id: Optional[str] = None

    @classmethod
    def from_api(cls, data: Optional[dict]) -> "MarketplaceParty":
        data = data or {}
        return cls(
            email_id=data.get("emailId"),
            object_id=data.get("objectId"),
            tenant_id=data.get("tenantId"),
        )


@dataclass
class ResolvedSubscription:
    """Result of exchanging a purchase token."""
    id: str
    subscription_name: str
    offer_id: str
    plan_id: str
    quantity: Optional[int] = None
    status: Optional[str] = None
    beneficiary: MarketplaceParty = field(default_factory=MarketplaceParty)
    purchaser: MarketplaceParty = field(default_factory=MarketplaceParty)
    is_test: bool = False
    is_free_trial: bool = False

    @classmethod
    def from_api(cls, data: dict) -> "ResolvedSubscription":
        subscription = data.get("subscription") or {}
        return cls(
            id=data["id"],
            subscription_name=data.get("subscriptionName") or subscription.get("name", ""),
            offer_id=data.get("offerId", ""),
            plan_id=data.get("planId") or subscription.get("planId", ""),
            quantity=data.get("quantity"),
            status=subscription.get("saasSubscriptionStatus"),
            beneficiary=MarketplaceParty.from_api(subscription.get("beneficiary")),
            purchaser=MarketplaceParty.from_api(subscription.get("purchaser")),
            is_test=bool(subscription.get("isTest", False)),
            is_free_trial=bool(subscription.get("isFreeTrial", False)),
        )


@dataclass
class UsageEvent:
    """One metered usage event for the Metering API."""
    resource_id: str
    quantity: float
    dimension: str
    effective_start_time: datetime
    plan_id: str
    # Filled from the batch response: Accepted, Duplicate, Expired, Rejected, ...
    status: Optional[str] = None
    error: Optional[str] = None

    @property
    def rejected(self) -> bool:
        return self.status is not None and self.status not in ACCEPTED_USAGE_STATUSES

    def to_payload(self) -> dict:
        return {
            "resourceId": self.resource_id,
            "quantity": float(self.quantity),
            "dimension": self.dimension,
            "effectiveStartTime": self.effective_start_time.isoformat(),
            "planId": self.plan_id,
        }


class MarketplaceAPIError(ExternalProtocolError):
    """Error communicating with the marketplace APIs."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Optional[dict] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status_code=status_code, response=response)
        self.retry_after = retry_after


class MarketplaceNotConfiguredError(MarketplaceAPIError):
    """Publisher credentials are missing; no call is attempted."""

    def __init__(self):
        super().__init__("Azure Marketplace credentials are not configured")


class MarketplaceFulfillmentClient:
    """
    Client for Azure Marketplace fulfillment and metering operations.

    SECURITY: client_secret is read from the environment and never logged.
    """

    def __init__(
        self,
        config: Optional[MarketplaceConfig] = None,
        retry_config: Optional[RetryConfig] = None,
        timeout: Optional[httpx.Timeout] = None,
    ):
        self.config = config or MarketplaceConfig.from_env()
        self.retry_config = retry_config or RetryConfig()
        self.api_base = MARKETPLACE_API_BASE
        self.api_version = MARKETPLACE_API_VERSION

        self._access_token: Optional[str] = None
        self._token_expires_at: float = 0.0

        self._client = httpx.AsyncClient(
            timeout=timeout or httpx.Timeout(30.0, connect=10.0),
            headers={"Content-Type": "application/json"},
        )

        if not self.config.is_configured:
            logger.warning("Azure Marketplace credentials not configured; marketplace calls will fail")

    @property
    def is_configured(self) -> bool:
        return self.config.is_configured

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _ensure_configured(self) -> None:
        if not self.config.is_configured:
            raise MarketplaceNotConfiguredError()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _get_access_token(self) -> str:
        """Return a cached bearer token, exchanging credentials when it is near expiry."""
        self._ensure_configured()

        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token

        url = TOKEN_ENDPOINT.format(tenant_id=self.config.tenant_id)
        try:
            response = await self._client.post(
                url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.config.client_id,
                    "client_secret": self.config.client_secret,
                    "resource": MARKETPLACE_RESOURCE_ID,
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.TimeoutException as e:
            raise MarketplaceAPIError("Token request timed out") from e
        except httpx.RequestError as e:
            raise MarketplaceAPIError(f"Token request failed: {e}") from e

        if response.status_code >= 400:
            logger.error(
                "Marketplace token exchange failed",
                extra={"status_code": response.status_code}
            )
            raise MarketplaceAPIError(
                "Failed to authenticate with Azure Marketplace",
                status_code=response.status_code,
            )

        try:
            body = response.json()
            access_token = body["access_token"]
            expires_in = int(body.get("expires_in", 3600))
        except (ValueError, KeyError, TypeError) as e:
            raise MarketplaceAPIError(
                "Token response is missing access_token",
                status_code=response.status_code,
            ) from e
        self._access_token = access_token
        self._token_expires_at = time.monotonic() + expires_in - TOKEN_EXPIRY_MARGIN_SECONDS
        return self._access_token

    def _url(self, path: str) -> str:
        return f"{self.api_base}{path}"

    async def _request(
        self,
        method: str,
        path: str,
        json: Any = None,
        headers: Optional[dict] = None,
    ) -> dict:
        """
        Execute an authenticated request with retry.

        Raises:
            MarketplaceAPIError: non-2xx after retries, timeout or transport failure
        """
        last_error: Optional[MarketplaceAPIError] = None

        for attempt in range(self.retry_config.max_retries + 1):
            token = await self._get_access_token()
            request_headers = {"Authorization": f"Bearer {token}"}
            if headers:
                request_headers.update(headers)

            try:
                response = await self._client.request(
                    method,
                    self._url(path),
                    params={"api-version": self.api_version},
                    json=json,
                    headers=request_headers,
                )
            except httpx.TimeoutException as e:
                last_error = MarketplaceAPIError(f"Marketplace request timed out: {method} {path}")
                last_error.__cause__ = e
            except httpx.RequestError as e:
                last_error = MarketplaceAPIError(f"Marketplace request failed: {e}")
                last_error.__cause__ = e
            else:
                if response.status_code < 400:
                    if not response.content:
                        return {}
                    try:
                        return response.json()
                    except ValueError as e:
                        raise MarketplaceAPIError(
                            f"Marketplace returned a non-JSON body: {method} {path}",
                            status_code=response.status_code,
                        ) from e

                if response.status_code == 401:
                    # Force a fresh token on the next call
                    self._access_token = None

                retry_after = None
                if response.status_code == 429:
                    retry_after = parse_retry_after(response.headers.get("Retry-After"))

                last_error = MarketplaceAPIError(
                    f"Marketplace API error: {response.status_code}",
                    status_code=response.status_code,
                    response=_safe_json(response),
                    retry_after=retry_after,
                )
                if response.status_code not in self.retry_config.retryable_status_codes:
                    logger.error(
                        "Marketplace API error",
                        extra={
                            "method": method,
                            "path": path,
                            "status_code": response.status_code,
                        }
                    )
                    raise last_error

            if attempt >= self.retry_config.max_retries:
                break

            delay = self.retry_config.delay_for(attempt)
            if last_error.retry_after is not None:
                delay = min(last_error.retry_after, self.retry_config.max_delay)
            logger.warning(
                "Retrying marketplace request",
                extra={
                    "method": method,
                    "path": path,
                    "attempt": attempt + 1,
                    "delay_seconds": delay,
                    "status_code": last_error.status_code,
                }
            )
            await asyncio.sleep(delay)

        logger.error(
            "Marketplace request failed after retries",
            extra={"method": method, "path": path, "status_code": last_error.status_code}
        )
        raise last_error

    # ------------------------------------------------------------------
    # Fulfillment API
    # ------------------------------------------------------------------

    async def resolve_subscription(self, purchase_token: str) -> ResolvedSubscription:
        """Exchange a landing-page purchase token for subscription identity."""
        data = await self._request(
            "POST",
            "/saas/subscriptions/resolve",
            headers={"x-ms-marketplace-token": purchase_token},
        )
        resolved = ResolvedSubscription.from_api(data)
        logger.info(
            "Marketplace subscription resolved",
            extra={"marketplace_subscription_id": resolved.id, "plan_id": resolved.plan_id}
        )
        return resolved

    async def activate_subscription(
        self,
        subscription_id: str,
        plan_id: str,
        quantity: Optional[int] = None,
    ) -> None:
        """Activate a resolved subscription. Billing starts on the marketplace side."""
        body: dict[str, Any] = {"planId": plan_id}
        if quantity is not None:
            body["quantity"] = quantity
        await self._request("POST", f"/saas/subscriptions/{subscription_id}/activate", json=body)
        logger.info(
            "Marketplace subscription activated",
            extra={"marketplace_subscription_id": subscription_id, "plan_id": plan_id}
        )

    async def get_subscription(self, subscription_id: str) -> dict:
        return await self._request("GET", f"/saas/subscriptions/{subscription_id}")

    async def update_operation_status(
        self,
        subscription_id: str,
        operation_id: str,
        status: str,
    ) -> None:
        """Acknowledge a webhook-initiated operation with Success or Failure."""
        if status not in ("Success", "Failure"):
            raise ValueError(f"status must be 'Success' or 'Failure', got {status!r}")
        await self._request(
            "PATCH",
            f"/saas/subscriptions/{subscription_id}/operations/{operation_id}",
            json={"status": status},
        )

    # ------------------------------------------------------------------
    # Metering API
    # ------------------------------------------------------------------

    async def report_usage(self, events: list[UsageEvent]) -> int:
        """
        Report usage events, chunked to the Metering API batch limit.

        Each event's status and error are set from the per-event results the
        Metering API returns; check UsageEvent.rejected afterwards.

        Returns:
            Number of batch calls issued
        """
        self._ensure_configured()
        calls = 0
        for start in range(0, len(events), USAGE_BATCH_SIZE):
            batch = events[start:start + USAGE_BATCH_SIZE]
            await self._post_usage_batch(batch)
            calls += 1
        return calls

    async def _post_usage_batch(self, batch: list[UsageEvent]) -> dict:
        result = await self._request(
            "POST",
            "/batchUsageEvent",
            json={"request": [event.to_payload() for event in batch]},
        )
        rejected = _apply_usage_results(batch, result)
        logger.info(
            "Usage batch reported",
            extra={"event_count": len(batch), "rejected_count": rejected}
        )
        return result


def _apply_usage_results(batch: list[UsageEvent], body: Any) -> int:
    """Copy per-event statuses onto the batch. Results are in request order."""
    results = body.get("result") if isinstance(body, dict) else None
    if not isinstance(results, list):
        return 0
    if len(results) != len(batch):
        logger.warning(
            "Usage batch result count does not match request",
            extra={"event_count": len(batch), "result_count": len(results)}
        )
        return 0

    rejected = 0
    for event, item in zip(batch, results):
        if not isinstance(item, dict):
            continue
        event.status = item.get("status")
        if event.rejected:
            error = item.get("error") or {}
            message = error.get("message") if isinstance(error, dict) else None
            event.error = message or f"Usage event {event.status}"
            rejected += 1
    return rejected


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP-date)."""
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    return max((retry_at - datetime.now(timezone.utc)).total_seconds(), 0.0)


def _safe_json(response: httpx.Response) -> Optional[dict]:
    try:
        return response.json()
    except ValueError:
        return None


def get_fulfillment_client() -> MarketplaceFulfillmentClient:
    """Factory function to create a client from environment configuration."""
    return MarketplaceFulfillmentClient(MarketplaceConfig.from_env())
