"""
Tenant lifecycle and entitlement tests.

CRITICAL: Every successful transition appends exactly one audit event;
a repeated transition appends none.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.orm import sessionmaker

from tenancy.models.base import ensure_aware, utcnow
from tenancy.models.subscription import Subscription, SubscriptionStatus
from tenancy.models.tenant import Tenant, TenantStatus
from tenancy.platform.audit import AuditAction, AuditLog, query_audit_logs
from tenancy.platform.errors import ConflictError, InvalidTransitionError, NotFoundError
from tenancy.services.tenant_service import TenantCreate, trial_days_remaining


def _actions(db_session, tenant_id):
    return [log.action for log in reversed(query_audit_logs(db_session, tenant_id))]


class TestCreateTenant:

    def test_self_signup_starts_seven_day_trial(self, make_tenant):
        tenant = make_tenant()

        assert tenant.status == TenantStatus.TRIAL
        assert tenant.tenant_code.startswith("tenant_")
        assert tenant.country == "AE"
        remaining = ensure_aware(tenant.trial_ends_at) - utcnow()
        assert timedelta(days=6, hours=23) < remaining <= timedelta(days=7)

    def test_marketplace_purchase_starts_pending_setup(self, make_tenant):
        tenant = make_tenant(marketplace=True)

        assert tenant.status == TenantStatus.PENDING_SETUP
        assert tenant.trial_ends_at is None

    def test_creation_is_audited_with_redacted_email(self, db_session, make_tenant):
        tenant = make_tenant(primary_email="owner@school.example")

        logs = query_audit_logs(db_session, tenant.id)
        assert len(logs) == 1
        assert logs[0].action == AuditAction.TENANT_CREATED.value
        assert logs[0].new_state == "trial"
        assert logs[0].event_metadata["primary_email"] == "***@school.example"

    def test_duplicate_marketplace_subscription_conflicts(self, make_tenant):
        make_tenant(marketplace=True, marketplace_subscription_id="mp-dup")

        with pytest.raises(ConflictError):
            make_tenant(marketplace=True, marketplace_subscription_id="mp-dup")

    def test_tenant_codes_are_unique(self, make_tenant):
        codes = {make_tenant().tenant_code for _ in range(5)}
        assert len(codes) == 5


class TestTransitions:

    def test_activate_from_pending_setup(self, db_session, tenant_service, make_tenant):
        tenant = make_tenant(marketplace=True)

        tenant = tenant_service.activate_tenant(tenant.id)

        assert tenant.status == TenantStatus.ACTIVE
        assert tenant.activated_at is not None
        assert _actions(db_session, tenant.id) == ["tenant.created", "tenant.activated"]

    def test_suspend_is_critical_and_records_reason(self, db_session, tenant_service, make_tenant):
        tenant = make_tenant()
        tenant_service.activate_tenant(tenant.id)

        tenant = tenant_service.suspend_tenant(tenant.id, "Payment failed")

        assert tenant.status == TenantStatus.SUSPENDED
        assert tenant.suspension_reason == "Payment failed"
        log = query_audit_logs(db_session, tenant.id, actions=[AuditAction.TENANT_SUSPENDED])[0]
        assert log.severity == "critical"
        assert log.previous_state == "active"
        assert log.new_state == "suspended"

    def test_repeated_transition_is_noop(self, db_session, tenant_service, make_tenant):
        tenant = make_tenant()
        tenant_service.activate_tenant(tenant.id)
        tenant_service.suspend_tenant(tenant.id, "first")

        tenant = tenant_service.suspend_tenant(tenant.id, "second")

        assert tenant.status == TenantStatus.SUSPENDED
        assert tenant.suspension_reason == "first"
        assert _actions(db_session, tenant.id).count("tenant.suspended") == 1

    def test_reinstate_clears_suspension(self, tenant_service, make_tenant):
        tenant = make_tenant()
        tenant_service.suspend_tenant(tenant.id, "review")

        tenant = tenant_service.activate_tenant(tenant.id)

        assert tenant.status == TenantStatus.ACTIVE
        assert tenant.suspended_at is None
        assert tenant.suspension_reason is None

    def test_cancelled_is_terminal(self, db_session, tenant_service, make_tenant):
        tenant = make_tenant()
        tenant_service.cancel_tenant(tenant.id)

        with pytest.raises(InvalidTransitionError) as exc_info:
            tenant_service.activate_tenant(tenant.id)

        assert exc_info.value.current == "cancelled"
        assert exc_info.value.target == "active"
        assert tenant_service.get_tenant_by_id(tenant.id).status == TenantStatus.CANCELLED
        assert "tenant.activated" not in _actions(db_session, tenant.id)

    def test_pending_setup_cannot_be_suspended(self, tenant_service, make_tenant):
        tenant = make_tenant(marketplace=True)

        with pytest.raises(InvalidTransitionError):
            tenant_service.suspend_tenant(tenant.id, "no")

    def test_only_trials_expire(self, tenant_service, make_tenant):
        tenant = make_tenant()
        tenant_service.activate_tenant(tenant.id)

        with pytest.raises(InvalidTransitionError):
            tenant_service.expire_trial(tenant.id)

    def test_expired_trial_can_be_activated(self, tenant_service, make_tenant):
        tenant = make_tenant()
        tenant_service.expire_trial(tenant.id)

        tenant = tenant_service.activate_tenant(tenant.id)

        assert tenant.status == TenantStatus.ACTIVE

    def test_unknown_tenant(self, tenant_service):
        with pytest.raises(NotFoundError):
            tenant_service.activate_tenant("missing")

    def test_cancel_cascades_to_active_subscription(self, db_session, tenant_service, make_tenant):
        tenant = make_tenant()
        subscription = tenant_service.create_subscription(tenant.id, "starter")
        tenant_service.activate_tenant(tenant.id)

        tenant_service.cancel_tenant(tenant.id)

        db_session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.CANCELLED
        assert subscription.cancelled_at is not None
        log = query_audit_logs(db_session, tenant.id, actions=[AuditAction.TENANT_CANCELLED])[0]
        assert log.event_metadata["cancelled_subscriptions"] == [subscription.id]

    def test_audit_failure_does_not_undo_transition(self, db_session, tenant_service, make_tenant):
        tenant = make_tenant()

        with patch("tenancy.platform.audit.AuditLog", side_effect=RuntimeError("audit store down")):
            with patch("tenancy.platform.audit.fallback_logger") as fallback:
                tenant = tenant_service.suspend_tenant(tenant.id, "fraud review")

        assert tenant.status == TenantStatus.SUSPENDED
        assert tenant_service.get_tenant_by_id(tenant.id).status == TenantStatus.SUSPENDED
        fallback.error.assert_called_once()
        assert _actions(db_session, tenant.id) == ["tenant.created"]


    def test_concurrent_change_raises_conflict(self, db_engine, db_session, tenant_service, make_tenant):
        tenant_id = make_tenant().id
        other = sessionmaker(bind=db_engine)()
        now = utcnow()

        def commit_concurrent_change():
            row = other.get(Tenant, tenant_id)
            row.name = "Renamed by another worker"
            other.commit()
            return now

        with patch("tenancy.services.tenant_service.utcnow", side_effect=commit_concurrent_change):
            with pytest.raises(ConflictError, match="modified concurrently"):
                tenant_service.suspend_tenant(tenant_id, "fraud review")
        other.close()

        tenant = tenant_service.get_tenant_by_id(tenant_id)
        db_session.refresh(tenant)
        assert tenant.status == TenantStatus.TRIAL
        assert tenant.name == "Renamed by another worker"
        assert _actions(db_session, tenant_id) == ["tenant.created"]

class TestSubscriptions:

    def test_self_serve_subscription_has_end_date(self, tenant_service, make_tenant):
        tenant = make_tenant()

        subscription = tenant_service.create_subscription(tenant.id, "starter")

        assert subscription.status == SubscriptionStatus.ACTIVE
        start = ensure_aware(subscription.start_date)
        assert ensure_aware(subscription.end_date) > start + timedelta(days=27)
        assert ensure_aware(subscription.next_billing_date) == ensure_aware(subscription.end_date)

    def test_marketplace_subscription_is_open_ended(self, tenant_service, make_tenant):
        tenant = make_tenant(marketplace=True)

        subscription = tenant_service.create_subscription(
            tenant.id, "professional", marketplace_subscription_id="mp-sub-x"
        )

        assert subscription.end_date is None
        assert subscription.next_billing_date is not None

    def test_one_active_subscription(self, db_session, tenant_service, make_tenant):
        tenant = make_tenant()
        tenant_service.create_subscription(tenant.id, "starter")

        with pytest.raises(ConflictError):
            tenant_service.create_subscription(tenant.id, "professional")

        active = db_session.query(Subscription).filter(
            Subscription.tenant_id == tenant.id,
            Subscription.status == SubscriptionStatus.ACTIVE,
        ).count()
        assert active == 1

    def test_unknown_plan(self, tenant_service, make_tenant):
        tenant = make_tenant()
        with pytest.raises(NotFoundError):
            tenant_service.create_subscription(tenant.id, "platinum")

    def test_cancelled_tenant_cannot_subscribe(self, tenant_service, make_tenant):
        tenant = make_tenant()
        tenant_service.cancel_tenant(tenant.id)

        with pytest.raises(ConflictError):
            tenant_service.create_subscription(tenant.id, "starter")

    def test_lapsed_subscription_expires_lazily(self, db_session, tenant_service, make_tenant):
        tenant = make_tenant()
        subscription = tenant_service.create_subscription(tenant.id, "starter")
        subscription.end_date = utcnow() - timedelta(days=1)
        db_session.commit()

        assert tenant_service.get_active_subscription(tenant.id) is None

        db_session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.EXPIRED
        assert "subscription.expired" in _actions(db_session, tenant.id)

    def test_lapsed_subscription_is_replaced(self, db_session, tenant_service, make_tenant):
        tenant = make_tenant()
        old = tenant_service.create_subscription(tenant.id, "starter")
        old.end_date = utcnow() - timedelta(days=1)
        db_session.commit()

        new = tenant_service.create_subscription(tenant.id, "professional")

        db_session.refresh(old)
        assert old.status == SubscriptionStatus.EXPIRED
        assert new.status == SubscriptionStatus.ACTIVE


class TestEntitlements:

    def test_trial_tenant_gets_trial_modules_only(self, tenant_service, make_tenant):
        tenant = make_tenant()

        assert tenant_service.is_feature_enabled(tenant.id, "career_progression")
        assert not tenant_service.is_feature_enabled(tenant.id, "recruitment")

    def test_plan_modules(self, tenant_service, make_tenant):
        tenant = make_tenant()
        tenant_service.create_subscription(tenant.id, "professional")
        tenant_service.activate_tenant(tenant.id)

        assert tenant_service.is_feature_enabled(tenant.id, "recruitment")
        assert not tenant_service.is_feature_enabled(tenant.id, "psychometric_assessments")

    def test_override_wins_over_plan(self, db_session, tenant_service, make_tenant):
        tenant = make_tenant()
        tenant_service.create_subscription(tenant.id, "professional")

        tenant_service.set_feature_override(tenant.id, "psychometric_assessments", True)
        tenant_service.set_feature_override(tenant.id, "recruitment", False)

        assert tenant_service.is_feature_enabled(tenant.id, "psychometric_assessments")
        assert not tenant_service.is_feature_enabled(tenant.id, "recruitment")
        assert _actions(db_session, tenant.id).count("feature.override_set") == 2

    def test_override_upserts(self, tenant_service, make_tenant):
        tenant = make_tenant()
        first = tenant_service.set_feature_override(tenant.id, "recruitment", True)
        second = tenant_service.set_feature_override(tenant.id, "recruitment", False, {"seats": 3})

        assert first.id == second.id
        assert second.configuration == {"seats": 3}
        assert not tenant_service.is_feature_enabled(tenant.id, "recruitment")

    def test_active_tenant_without_subscription_is_denied(self, tenant_service, make_tenant):
        tenant = make_tenant()
        tenant_service.activate_tenant(tenant.id)

        assert not tenant_service.is_feature_enabled(tenant.id, "career_progression")

    def test_get_enabled_modules(self, tenant_service, make_tenant):
        tenant = make_tenant()
        modules = tenant_service.get_enabled_modules(
            tenant.id, ["career_progression", "recruitment", "employee_engagement"]
        )
        assert modules == ["career_progression", "employee_engagement"]

    def test_rate_limits_follow_plan_tier(self, tenant_service, make_tenant):
        tenant = make_tenant()
        assert tenant_service.get_tenant_rate_limits(tenant.id).requests_per_minute == 30

        tenant_service.create_subscription(tenant.id, "enterprise")
        assert tenant_service.get_tenant_rate_limits(tenant.id).requests_per_minute == 300


class TestTrialStatus:

    def test_days_remaining_rounds_up(self):
        now = utcnow()
        assert trial_days_remaining(now + timedelta(days=1, hours=1), now) == 2
        assert trial_days_remaining(now + timedelta(hours=3), now) == 1
        assert trial_days_remaining(now - timedelta(hours=3), now) == 0

    def test_fresh_trial(self, tenant_service, make_tenant):
        tenant = make_tenant()

        status = tenant_service.get_trial_status(tenant.id)

        assert status.is_trial
        assert status.days_remaining == 7
        assert status.can_access_features
        assert not status.show_upgrade_prompt

    def test_expired_trial(self, tenant_service, make_tenant):
        tenant = make_tenant()
        tenant_service.expire_trial(tenant.id)

        status = tenant_service.get_trial_status(tenant.id)

        assert status.is_expired
        assert not status.can_access_features
        assert status.show_upgrade_prompt

    def test_audit_rows_are_tenant_scoped(self, db_session, make_tenant):
        first = make_tenant()
        make_tenant()

        assert db_session.query(AuditLog).count() == 2
        assert len(query_audit_logs(db_session, first.id)) == 1
