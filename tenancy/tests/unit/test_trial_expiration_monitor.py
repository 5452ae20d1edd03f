"""Trial expiration monitor tests."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from tenancy.models.base import utcnow
from tenancy.models.tenant import TenantStatus
from tenancy.platform.audit import AuditAction, query_audit_logs
from tenancy.jobs.trial_expiration_monitor import TrialExpirationMonitor
from tenancy.services.email_sender import MockEmailSender
from tenancy.services.trial_notifications import EmailTrialNotifier, TrialNotificationKind


@pytest.fixture
def sender():
    return MockEmailSender()


@pytest.fixture
def monitor(db_session, tenant_service, sender):
    notifier = EmailTrialNotifier(sender=sender, app_url="https://app.example")
    return TrialExpirationMonitor(db_session, notifier, reminder_days=2, tenant_service=tenant_service)


def _set_trial_end(db_session, tenant, delta):
    tenant.trial_ends_at = utcnow() + delta
    db_session.commit()


class TestCheckTrials:

    @pytest.mark.asyncio
    async def test_past_trial_is_expired_and_notified(self, db_session, monitor, sender, make_tenant):
        tenant = make_tenant(primary_email="owner@school.example")
        _set_trial_end(db_session, tenant, -timedelta(hours=1))

        stats = await monitor.check_trials()

        db_session.refresh(tenant)
        assert tenant.status == TenantStatus.EXPIRED
        assert tenant.expired_at is not None
        assert stats.trials_expired == 1
        assert [m.tags for m in sender.sent_messages] == [[TrialNotificationKind.TRIAL_EXPIRED.value]]
        log = query_audit_logs(db_session, tenant.id, actions=[AuditAction.TRIAL_EXPIRED])[0]
        assert log.severity == "warning"
        assert log.source == "worker"

    @pytest.mark.asyncio
    async def test_reminder_inside_window(self, db_session, monitor, sender, make_tenant):
        tenant = make_tenant()
        _set_trial_end(db_session, tenant, timedelta(days=1, hours=12))

        stats = await monitor.check_trials()

        assert stats.reminders_sent == 1
        assert sender.sent_messages[0].subject == "Your trial ends in 2 days"
        assert "https://app.example/pricing" in sender.sent_messages[0].text_body
        logs = query_audit_logs(db_session, tenant.id, actions=[AuditAction.TRIAL_REMINDER_SENT])
        assert logs[0].event_metadata["days_remaining"] == 2
        db_session.refresh(tenant)
        assert tenant.status == TenantStatus.TRIAL

    @pytest.mark.asyncio
    async def test_one_reminder_per_day(self, db_session, monitor, sender, make_tenant):
        tenant = make_tenant()
        _set_trial_end(db_session, tenant, timedelta(hours=20))

        await monitor.check_trials()
        stats = await monitor.check_trials()

        assert stats.reminders_sent == 0
        assert len(sender.sent_messages) == 1

    @pytest.mark.asyncio
    async def test_outside_window_untouched(self, db_session, monitor, sender, make_tenant):
        make_tenant()

        stats = await monitor.check_trials()

        assert stats.tenants_checked == 1
        assert stats.reminders_sent == 0
        assert sender.sent_messages == []

    @pytest.mark.asyncio
    async def test_non_trial_tenants_ignored(self, db_session, monitor, tenant_service, make_tenant):
        tenant = make_tenant()
        _set_trial_end(db_session, tenant, -timedelta(days=1))
        tenant_service.activate_tenant(tenant.id)

        stats = await monitor.check_trials()

        assert stats.tenants_checked == 0

    @pytest.mark.asyncio
    async def test_failure_is_isolated_per_tenant(self, db_session, monitor, tenant_service, make_tenant):
        first = make_tenant()
        second = make_tenant()
        _set_trial_end(db_session, first, -timedelta(hours=1))
        _set_trial_end(db_session, second, -timedelta(hours=1))

        original = tenant_service.expire_trial

        def flaky_expire(tenant_id, source="worker"):
            if tenant_id == first.id:
                raise RuntimeError("lock timeout")
            return original(tenant_id, source=source)

        with patch.object(tenant_service, "expire_trial", side_effect=flaky_expire):
            stats = await monitor.check_trials()

        assert stats.errors == 1
        assert stats.trials_expired == 1
        assert tenant_service.get_tenant_by_id(second.id).status == TenantStatus.EXPIRED
        assert tenant_service.get_tenant_by_id(first.id).status == TenantStatus.TRIAL

    @pytest.mark.asyncio
    async def test_undelivered_reminder_not_audited(self, db_session, tenant_service, make_tenant):
        notifier = AsyncMock()
        notifier.notify.return_value = False
        monitor = TrialExpirationMonitor(db_session, notifier, tenant_service=tenant_service)
        tenant = make_tenant()
        _set_trial_end(db_session, tenant, timedelta(hours=5))

        stats = await monitor.check_trials()

        assert stats.notifications_failed == 1
        assert stats.reminders_sent == 0
        assert query_audit_logs(db_session, tenant.id, actions=[AuditAction.TRIAL_REMINDER_SENT]) == []
