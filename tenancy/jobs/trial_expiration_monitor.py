"""
Trial expiration monitor.

Runs on a fixed interval (hourly by default) and:
- Expires trials whose trial_ends_at has passed (trial -> expired)
- Sends a "trial ending soon" reminder inside the reminder window
- Sends a "trial expired" notice when a trial is expired

This is the only place a tenant changes state without an external trigger.

Usage:
    python -m tenancy.jobs.trial_expiration_monitor
"""

import asyncio
import logging
import sys
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import Session

from tenancy.config.settings import get_settings
from tenancy.models.tenant import Tenant, TenantStatus
from tenancy.platform.audit import AuditAction, AuditEvent, AuditLog, write_audit_log_sync
from tenancy.services.tenant_service import TenantService, trial_days_remaining
from tenancy.services.trial_notifications import (
    EmailTrialNotifier,
    TrialNotification,
    TrialNotificationKind,
    TrialNotifier,
)

logger = logging.getLogger(__name__)

DEFAULT_REMINDER_DAYS = 2

# A tenant gets at most one reminder in this window
REMINDER_COOLDOWN = timedelta(hours=20)


class TrialCheckStats:
    """Track trial check run statistics."""

    def __init__(self):
        self.tenants_checked = 0
        self.trials_expired = 0
        self.reminders_sent = 0
        self.notifications_failed = 0
        self.errors = 0
        self.start_time = datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        duration = (datetime.now(timezone.utc) - self.start_time).total_seconds()
        return {
            "tenants_checked": self.tenants_checked,
            "trials_expired": self.trials_expired,
            "reminders_sent": self.reminders_sent,
            "notifications_failed": self.notifications_failed,
            "errors": self.errors,
            "duration_seconds": duration,
        }


class TrialExpirationMonitor:
    """Scans trial tenants and drives expiry and reminders."""

    def __init__(
        self,
        db_session: Session,
        notifier: TrialNotifier,
        reminder_days: int = DEFAULT_REMINDER_DAYS,
        tenant_service: Optional[TenantService] = None,
    ):
        self.db = db_session
        self.notifier = notifier
        self.reminder_days = reminder_days
        self.tenants = tenant_service or TenantService(db_session)

    def _load_trial_tenants(self) -> list[Tenant]:
        return self.db.query(Tenant).filter(
            Tenant.status == TenantStatus.TRIAL,
            Tenant.trial_ends_at.isnot(None),
        ).all()

    async def check_trials(self, now: Optional[datetime] = None) -> TrialCheckStats:
        """Process every trial tenant once. Per-tenant failures are isolated."""
        now = now or datetime.now(timezone.utc)
        stats = TrialCheckStats()

        tenants = self._load_trial_tenants()
        logger.info("Checking trial tenants", extra={"tenant_count": len(tenants)})

        for tenant in tenants:
            stats.tenants_checked += 1
            try:
                await self._check_tenant(tenant, now, stats)
            except Exception as e:
                stats.errors += 1
                self.db.rollback()
                logger.error(
                    "Trial check failed for tenant",
                    extra={"tenant_id": tenant.id, "error": str(e)},
                    exc_info=True,
                )

        logger.info("Trial check complete", extra=stats.to_dict())
        return stats

    async def _check_tenant(self, tenant: Tenant, now: datetime, stats: TrialCheckStats) -> None:
        days_remaining = trial_days_remaining(tenant.trial_ends_at, now)

        if days_remaining <= 0:
            tenant = self.tenants.expire_trial(tenant.id)
            stats.trials_expired += 1
            logger.info("Trial expired", extra={"tenant_id": tenant.id})
            await self._notify(tenant, TrialNotificationKind.TRIAL_EXPIRED, 0, stats)
            return

        if days_remaining > self.reminder_days:
            return

        if self._reminder_recently_sent(tenant.id, now):
            return

        if await self._notify(tenant, TrialNotificationKind.TRIAL_ENDING_SOON, days_remaining, stats):
            stats.reminders_sent += 1
            write_audit_log_sync(
                self.db,
                AuditEvent(
                    tenant_id=tenant.id,
                    action=AuditAction.TRIAL_REMINDER_SENT,
                    metadata={"days_remaining": days_remaining, "email": tenant.primary_email},
                    source="worker",
                ),
            )

    def _reminder_recently_sent(self, tenant_id: str, now: datetime) -> bool:
        recent = self.db.query(AuditLog).filter(
            AuditLog.tenant_id == tenant_id,
            AuditLog.action == AuditAction.TRIAL_REMINDER_SENT.value,
            AuditLog.timestamp >= now - REMINDER_COOLDOWN,
        ).first()
        return recent is not None

    async def _notify(
        self,
        tenant: Tenant,
        kind: TrialNotificationKind,
        days_remaining: int,
        stats: TrialCheckStats,
    ) -> bool:
        notification = TrialNotification(
            kind=kind,
            tenant_id=tenant.id,
            tenant_name=tenant.name,
            recipient_email=tenant.primary_email,
            days_remaining=days_remaining,
        )
        delivered = await self.notifier.notify(notification)
        if not delivered:
            stats.notifications_failed += 1
            logger.warning(
                "Trial notification not delivered",
                extra={"tenant_id": tenant.id, "kind": kind.value}
            )
        return delivered


async def run_trial_check() -> dict:
    """Run one trial check pass with its own session."""
    from tenancy.database.session import get_session_factory

    settings = get_settings()
    session = get_session_factory()()
    try:
        monitor = TrialExpirationMonitor(
            session,
            EmailTrialNotifier(app_url=settings.app_url),
            reminder_days=settings.trial_reminder_days,
        )
        stats = await monitor.check_trials()
        return stats.to_dict()
    finally:
        session.close()


def main():
    """Entry point for running the trial check from command line."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        result = asyncio.run(run_trial_check())
        logger.info("Trial check completed", extra=result)
        sys.exit(0)
    except Exception as e:
        logger.error("Trial check failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
