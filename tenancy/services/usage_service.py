"""
Usage metering: record billable usage and batch it to the marketplace.

Records are written as 'pending' by record_usage() and drained on a timer by
process_pending_usage(), which reports them per subscription. A failed
submission rejects its whole group; otherwise each record takes the status
the Metering API returned for its event. One group's failure never stops
the remaining groups of the run.

Rejected records are retried up to MAX_ATTEMPTS times with exponential
backoff, after which they stay rejected for manual follow-up.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Union

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from tenancy.integrations.marketplace.fulfillment_client import (
    MarketplaceAPIError,
    MarketplaceFulfillmentClient,
    MarketplaceNotConfiguredError,
    UsageEvent,
)
from tenancy.models.base import ensure_aware, utcnow
from tenancy.models.subscription import Subscription, SubscriptionStatus
from tenancy.models.tenant import Tenant
from tenancy.models.usage_metering import UsageDimension, UsageMeteringRecord, UsageRecordStatus
from tenancy.platform.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

# Records loaded per run
BATCH_LIMIT = 100

# Retry policy for rejected records
MAX_ATTEMPTS = 5
RETRY_BASE_DELAY = timedelta(minutes=5)
RETRY_MAX_DELAY = timedelta(hours=6)

# Upper bound for one group's report_usage call
DEFAULT_REPORT_TIMEOUT_SECONDS = 60.0


def retry_delay(attempt_count: int) -> timedelta:
    """Backoff before the next attempt: 5m, 10m, 20m, ... capped at 6h."""
    delay = RETRY_BASE_DELAY * (2 ** max(attempt_count - 1, 0))
    return min(delay, RETRY_MAX_DELAY)


@dataclass
class UsageBatchStats:
    """Outcome of one process_pending_usage run."""
    records_loaded: int = 0
    groups: int = 0
    records_reported: int = 0
    records_rejected: int = 0
    groups_timed_out: int = 0
    groups_failed: int = 0
    api_calls: int = 0

    def to_dict(self) -> dict:
        return {
            "records_loaded": self.records_loaded,
            "groups": self.groups,
            "records_reported": self.records_reported,
            "records_rejected": self.records_rejected,
            "groups_timed_out": self.groups_timed_out,
            "groups_failed": self.groups_failed,
            "api_calls": self.api_calls,
        }


class UsageMeteringService:
    """Records usage and reports it to the marketplace Metering API."""

    def __init__(
        self,
        db_session: Session,
        client: Optional[MarketplaceFulfillmentClient] = None,
        batch_limit: int = BATCH_LIMIT,
        report_timeout: float = DEFAULT_REPORT_TIMEOUT_SECONDS,
    ):
        self.db = db_session
        self.client = client
        self.batch_limit = batch_limit
        self.report_timeout = report_timeout

    def record_usage(
        self,
        tenant_id: str,
        dimension: Union[UsageDimension, str],
        quantity: Union[int, float, Decimal],
        subscription_id: Optional[str] = None,
        effective_start_time: Optional[datetime] = None,
    ) -> UsageMeteringRecord:
        """
        Queue a usage quantity for reporting.

        subscription_id defaults to the tenant's active subscription.

        Raises:
            ValidationError: unknown dimension or non-positive quantity
            NotFoundError: no subscription to bill against
        """
        try:
            dimension = UsageDimension(dimension)
        except ValueError as e:
            raise ValidationError(f"Unknown usage dimension: {dimension}") from e

        if Decimal(str(quantity)) <= 0:
            raise ValidationError("Usage quantity must be positive")

        if subscription_id is None:
            subscription = self.db.query(Subscription).filter(
                Subscription.tenant_id == tenant_id,
                Subscription.status == SubscriptionStatus.ACTIVE,
            ).first()
        else:
            subscription = self.db.query(Subscription).filter(
                Subscription.id == subscription_id,
                Subscription.tenant_id == tenant_id,
            ).first()
        if subscription is None:
            raise NotFoundError(f"No subscription to meter usage for tenant {tenant_id}")

        record = UsageMeteringRecord(
            tenant_id=tenant_id,
            subscription_id=subscription.id,
            dimension=dimension,
            quantity=Decimal(str(quantity)),
            effective_start_time=effective_start_time or utcnow(),
            status=UsageRecordStatus.PENDING,
        )
        self.db.add(record)
        self.db.commit()
        return record

    def _load_due_records(self, now: datetime) -> list[UsageMeteringRecord]:
        return (
            self.db.query(UsageMeteringRecord)
            .filter(
                or_(
                    UsageMeteringRecord.status == UsageRecordStatus.PENDING,
                    and_(
                        UsageMeteringRecord.status == UsageRecordStatus.REJECTED,
                        UsageMeteringRecord.attempt_count < MAX_ATTEMPTS,
                        UsageMeteringRecord.next_attempt_at <= now,
                    ),
                )
            )
            .order_by(UsageMeteringRecord.created_at)
            .limit(self.batch_limit)
            .all()
        )

    async def process_pending_usage(self) -> UsageBatchStats:
        """
        Report due usage records, one marketplace submission per subscription.

        A successful submission marks each record reported, or rejected when
        the Metering API refused its event. A failed submission marks the
        whole group rejected with backoff. A timeout leaves the group as it
        was for the next run.
        """
        stats = UsageBatchStats()

        if self.client is None or not self.client.is_configured:
            logger.error("Usage metering skipped: marketplace client not configured")
            return stats

        now = utcnow()
        records = self._load_due_records(now)
        stats.records_loaded = len(records)
        if not records:
            return stats

        groups: dict[str, list[UsageMeteringRecord]] = defaultdict(list)
        for record in records:
            groups[record.subscription_id].append(record)
        stats.groups = len(groups)

        for subscription_id, group in groups.items():
            try:
                await self._report_group(subscription_id, group, stats)
            except Exception as e:
                logger.error(
                    "Usage group failed; records left for next run",
                    extra={"subscription_id": subscription_id, "error": str(e)},
                    exc_info=True,
                )
                self.db.rollback()
                stats.groups_failed += 1

        logger.info("Usage metering run complete", extra=stats.to_dict())
        return stats

    async def _report_group(
        self,
        subscription_id: str,
        group: list[UsageMeteringRecord],
        stats: UsageBatchStats,
    ) -> None:
        subscription = self.db.query(Subscription).filter(Subscription.id == subscription_id).first()
        tenant = self.db.query(Tenant).filter(Tenant.id == group[0].tenant_id).first()

        resource_id = None
        if subscription is not None:
            resource_id = subscription.marketplace_subscription_id
        if not resource_id and tenant is not None:
            resource_id = tenant.marketplace_subscription_id
        plan_id = tenant.marketplace_plan_id if tenant is not None else None

        if not resource_id or not plan_id:
            self._mark_rejected(group, "Subscription is not linked to a marketplace subscription")
            stats.records_rejected += len(group)
            return

        events = [
            UsageEvent(
                resource_id=resource_id,
                quantity=float(record.quantity),
                dimension=_dimension_value(record.dimension),
                effective_start_time=ensure_aware(record.effective_start_time),
                plan_id=plan_id,
            )
            for record in group
        ]

        log_extra = {
            "subscription_id": subscription_id,
            "marketplace_subscription_id": resource_id,
            "record_count": len(group),
        }

        try:
            calls = await asyncio.wait_for(self.client.report_usage(events), timeout=self.report_timeout)
        except asyncio.TimeoutError:
            logger.warning("Usage report timed out; records left for next run", extra=log_extra)
            stats.groups_timed_out += 1
            return
        except MarketplaceNotConfiguredError:
            logger.error("Usage report skipped: marketplace client not configured", extra=log_extra)
            return
        except MarketplaceAPIError as e:
            logger.error("Usage report rejected", extra={**log_extra, "error": str(e)})
            self._mark_rejected(group, str(e))
            stats.records_rejected += len(group)
            return
        except Exception as e:
            logger.error(
                "Usage report failed unexpectedly",
                extra={**log_extra, "error": str(e)},
                exc_info=True,
            )
            self.db.rollback()
            self._mark_rejected(group, f"{type(e).__name__}: {e}")
            stats.records_rejected += len(group)
            return

        reported_at = utcnow()
        accepted = 0
        for record, event in zip(group, events):
            if event.rejected:
                self._mark_rejected([record], event.error or f"Usage event {event.status}", commit=False)
                continue
            record.status = UsageRecordStatus.REPORTED
            record.reported_at = reported_at
            record.error_message = None
            record.next_attempt_at = None
            accepted += 1
        self.db.commit()

        stats.api_calls += calls
        stats.records_reported += accepted
        stats.records_rejected += len(group) - accepted
        logger.info(
            "Usage group reported",
            extra={**log_extra, "api_calls": calls, "rejected_count": len(group) - accepted}
        )

    def _mark_rejected(self, group: list[UsageMeteringRecord], error: str, commit: bool = True) -> None:
        now = utcnow()
        for record in group:
            record.status = UsageRecordStatus.REJECTED
            record.error_message = error[:2000]
            record.attempt_count = (record.attempt_count or 0) + 1
            record.next_attempt_at = now + retry_delay(record.attempt_count)
        if commit:
            self.db.commit()


def _dimension_value(dimension) -> str:
    return dimension.value if isinstance(dimension, UsageDimension) else str(dimension)
