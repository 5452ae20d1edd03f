"""
Tenant lifecycle service.

Owns every tenant state transition and subscription binding:
- Tenant creation (self-signup trial or marketplace pending_setup)
- Activation, suspension, cancellation and trial expiry
- Subscription creation with the one-active-subscription rule
- Module entitlement resolution (override -> plan -> trial set -> deny)

CRITICAL: Each mutating operation commits its state change first and only
then appends exactly one audit event. Audit failure never un-commits state.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Iterable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from tenancy.entitlements.plan_catalog import PlanCatalog, RateLimits, get_plan_catalog
from tenancy.models.base import ensure_aware, utcnow
from tenancy.models.feature_override import FeatureOverride
from tenancy.models.subscription import Subscription, SubscriptionStatus
from tenancy.models.tenant import Tenant, TenantStatus, DEFAULT_COUNTRY
from tenancy.platform.audit import AuditAction, AuditEvent, AuditSeverity, write_audit_log_sync
from tenancy.platform.errors import ConflictError, InvalidTransitionError, NotFoundError

logger = logging.getLogger(__name__)

# Allowed source states for each target state.
VALID_TRANSITIONS = {
    TenantStatus.ACTIVE: {
        TenantStatus.PENDING_SETUP,
        TenantStatus.TRIAL,
        TenantStatus.SUSPENDED,
        TenantStatus.EXPIRED,
    },
    TenantStatus.SUSPENDED: {
        TenantStatus.ACTIVE,
        TenantStatus.TRIAL,
    },
    TenantStatus.CANCELLED: {
        TenantStatus.ACTIVE,
        TenantStatus.SUSPENDED,
        TenantStatus.TRIAL,
        TenantStatus.PENDING_SETUP,
        TenantStatus.EXPIRED,
    },
    TenantStatus.EXPIRED: {
        TenantStatus.TRIAL,
    },
}

# Statuses that may use the trial module set without a subscription.
TRIAL_ACCESS_STATUSES = frozenset({TenantStatus.TRIAL, TenantStatus.PENDING_SETUP})


@dataclass
class TenantCreate:
    """Input for create_tenant."""
    name: str
    primary_email: str
    country: str = DEFAULT_COUNTRY
    region: Optional[str] = None
    marketplace_subscription_id: Optional[str] = None
    marketplace_tenant_id: Optional[str] = None
    marketplace_purchase_token: Optional[str] = None
    marketplace_plan_id: Optional[str] = None
    marketplace_offer_id: Optional[str] = None


@dataclass
class TrialStatus:
    """Trial standing of a tenant, for UI banners and gating."""
    status: str
    is_trial: bool
    trial_ends_at: Optional[datetime]
    days_remaining: Optional[int]
    is_expired: bool
    can_access_features: bool
    show_upgrade_prompt: bool


def trial_days_remaining(trial_ends_at: datetime, now: Optional[datetime] = None) -> int:
    """Whole days left in a trial, rounded up. Zero or negative means expired."""
    delta = ensure_aware(trial_ends_at) - (now or utcnow())
    return math.ceil(delta.total_seconds() / 86400)


class TenantService:
    """
    Service for tenant lifecycle and entitlement operations.

    Transitions load the tenant row FOR UPDATE and rely on the tenant's
    version column, so two concurrent transitions on the same tenant
    cannot both commit.
    """

    def __init__(
        self,
        db_session: Session,
        plan_catalog: Optional[PlanCatalog] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ):
        """
        Initialize tenant service.

        Args:
            db_session: Database session
            plan_catalog: Plan reference data (defaults to the shared catalog)
            ip_address: Caller IP stamped on audit events (request-scoped services)
            user_agent: Caller user agent stamped on audit events
        """
        self.db = db_session
        self.catalog = plan_catalog or get_plan_catalog()
        self.ip_address = ip_address
        self.user_agent = user_agent

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_tenant_by_id(self, tenant_id: str) -> Optional[Tenant]:
        return self.db.query(Tenant).filter(Tenant.id == tenant_id).first()

    def get_tenant_by_code(self, tenant_code: str) -> Optional[Tenant]:
        return self.db.query(Tenant).filter(Tenant.tenant_code == tenant_code).first()

    def get_tenant_by_marketplace_subscription_id(self, subscription_id: str) -> Optional[Tenant]:
        return self.db.query(Tenant).filter(
            Tenant.marketplace_subscription_id == subscription_id
        ).first()

    def _lock_tenant(self, tenant_id: str) -> Tenant:
        tenant = (
            self.db.query(Tenant)
            .filter(Tenant.id == tenant_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if tenant is None:
            raise NotFoundError(f"Tenant not found: {tenant_id}")
        return tenant

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_tenant(
        self,
        data: TenantCreate,
        user_id: Optional[str] = None,
        source: str = "api",
    ) -> Tenant:
        """
        Create a tenant.

        Marketplace purchases (purchase token present) start in pending_setup;
        self-signups start a trial (7 days unless the plan catalog says otherwise).
        """
        now = utcnow()
        from_marketplace = bool(data.marketplace_purchase_token)

        tenant = Tenant(
            name=data.name,
            primary_email=data.primary_email,
            country=data.country or DEFAULT_COUNTRY,
            region=data.region,
            marketplace_subscription_id=data.marketplace_subscription_id,
            marketplace_tenant_id=data.marketplace_tenant_id,
            marketplace_purchase_token=data.marketplace_purchase_token,
            marketplace_plan_id=data.marketplace_plan_id,
            marketplace_offer_id=data.marketplace_offer_id,
            status=TenantStatus.PENDING_SETUP if from_marketplace else TenantStatus.TRIAL,
            trial_ends_at=None if from_marketplace else now + timedelta(days=self.catalog.trial_days),
        )
        self.db.add(tenant)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise ConflictError(
                "A tenant already exists for this marketplace subscription",
                details={"marketplace_subscription_id": data.marketplace_subscription_id},
            ) from e
        self.db.refresh(tenant)

        logger.info(
            "Tenant created",
            extra={
                "tenant_id": tenant.id,
                "tenant_code": tenant.tenant_code,
                "status": tenant.status.value,
                "from_marketplace": from_marketplace,
            }
        )

        self._audit(
            tenant,
            AuditAction.TENANT_CREATED,
            previous_state=None,
            new_state=tenant.status.value,
            metadata={
                "name": tenant.name,
                "primary_email": tenant.primary_email,
                "marketplace_subscription_id": tenant.marketplace_subscription_id,
            },
            user_id=user_id,
            source=source,
        )
        return tenant

    def activate_tenant(self, tenant_id: str, user_id: Optional[str] = None, source: str = "api") -> Tenant:
        """Move a tenant to active (checkout, marketplace activation or reinstate)."""
        def apply(tenant: Tenant, now: datetime) -> None:
            tenant.activated_at = now
            tenant.suspended_at = None
            tenant.suspension_reason = None

        return self._transition(
            tenant_id,
            TenantStatus.ACTIVE,
            apply,
            AuditAction.TENANT_ACTIVATED,
            AuditSeverity.INFO,
            user_id=user_id,
            source=source,
        )

    def suspend_tenant(
        self,
        tenant_id: str,
        reason: str,
        user_id: Optional[str] = None,
        source: str = "api",
    ) -> Tenant:
        """Suspend a tenant. Suspended tenants fail every access check."""
        def apply(tenant: Tenant, now: datetime) -> None:
            tenant.suspended_at = now
            tenant.suspension_reason = reason

        return self._transition(
            tenant_id,
            TenantStatus.SUSPENDED,
            apply,
            AuditAction.TENANT_SUSPENDED,
            AuditSeverity.CRITICAL,
            metadata={"reason": reason},
            user_id=user_id,
            source=source,
        )

    def cancel_tenant(self, tenant_id: str, user_id: Optional[str] = None, source: str = "api") -> Tenant:
        """Cancel a tenant and its active subscription. Cancellation is terminal."""
        cancelled_subscription_ids: list[str] = []

        def apply(tenant: Tenant, now: datetime) -> None:
            tenant.cancelled_at = now
            active = self.db.query(Subscription).filter(
                Subscription.tenant_id == tenant.id,
                Subscription.status == SubscriptionStatus.ACTIVE,
            ).all()
            for subscription in active:
                subscription.status = SubscriptionStatus.CANCELLED
                subscription.cancelled_at = now
                cancelled_subscription_ids.append(subscription.id)

        return self._transition(
            tenant_id,
            TenantStatus.CANCELLED,
            apply,
            AuditAction.TENANT_CANCELLED,
            AuditSeverity.CRITICAL,
            metadata={"cancelled_subscriptions": cancelled_subscription_ids},
            user_id=user_id,
            source=source,
        )

    def expire_trial(self, tenant_id: str, source: str = "worker") -> Tenant:
        """Move a trial whose end date has passed to expired."""
        def apply(tenant: Tenant, now: datetime) -> None:
            tenant.expired_at = now

        return self._transition(
            tenant_id,
            TenantStatus.EXPIRED,
            apply,
            AuditAction.TRIAL_EXPIRED,
            AuditSeverity.WARNING,
            source=source,
        )

    def _transition(
        self,
        tenant_id: str,
        target: TenantStatus,
        apply,
        action: AuditAction,
        severity: AuditSeverity,
        metadata: Optional[dict] = None,
        user_id: Optional[str] = None,
        source: str = "api",
    ) -> Tenant:
        """
        Apply a lifecycle transition.

        Re-applying a transition whose target is the current status is a
        no-op with no audit event (webhooks are delivered at least once).

        Raises:
            NotFoundError: tenant does not exist
            InvalidTransitionError: target not reachable from current status
            ConflictError: a concurrent transition committed first
        """
        tenant = self._lock_tenant(tenant_id)
        previous = tenant.status

        if previous == target:
            self.db.rollback()
            logger.info(
                "Transition already applied",
                extra={"tenant_id": tenant_id, "status": target.value}
            )
            return tenant

        if previous not in VALID_TRANSITIONS[target]:
            self.db.rollback()
            raise InvalidTransitionError("tenant", previous.value, target.value)

        tenant.status = target
        apply(tenant, utcnow())

        try:
            self.db.commit()
        except StaleDataError as e:
            self.db.rollback()
            raise ConflictError(
                "Tenant was modified concurrently; retry the operation",
                details={"tenant_id": tenant_id},
            ) from e

        logger.info(
            "Tenant transitioned",
            extra={
                "tenant_id": tenant_id,
                "from_status": previous.value,
                "to_status": target.value,
                "source": source,
            }
        )

        self._audit(
            tenant,
            action,
            previous_state=previous.value,
            new_state=target.value,
            metadata=metadata,
            severity=severity,
            user_id=user_id,
            source=source,
        )
        return tenant

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def create_subscription(
        self,
        tenant_id: str,
        plan_code: str,
        marketplace_subscription_id: Optional[str] = None,
        user_id: Optional[str] = None,
        source: str = "api",
    ) -> Subscription:
        """
        Bind a tenant to a plan.

        Marketplace-managed subscriptions are open-ended (the marketplace
        owns renewal); self-serve ones end one billing cycle after start.

        Raises:
            NotFoundError: unknown tenant or plan
            ConflictError: tenant already has an active subscription, or is cancelled
        """
        plan = self.catalog.get_plan(plan_code)
        if plan is None:
            raise NotFoundError(f"Plan not found: {plan_code}")

        tenant = self._lock_tenant(tenant_id)
        if tenant.status == TenantStatus.CANCELLED:
            self.db.rollback()
            raise ConflictError("Cannot subscribe a cancelled tenant", details={"tenant_id": tenant_id})

        existing = self._find_active_subscription(tenant_id)
        if existing is not None and not existing.has_lapsed():
            self.db.rollback()
            raise ConflictError(
                "Tenant already has an active subscription",
                details={"tenant_id": tenant_id, "subscription_id": existing.id},
            )
        if existing is not None:
            existing.status = SubscriptionStatus.EXPIRED

        now = utcnow()
        subscription = Subscription(
            tenant_id=tenant_id,
            plan_code=plan.code,
            start_date=now,
            end_date=None if marketplace_subscription_id else now + plan.cycle_delta,
            next_billing_date=now + plan.cycle_delta,
            marketplace_subscription_id=marketplace_subscription_id,
            status=SubscriptionStatus.ACTIVE,
        )
        self.db.add(subscription)
        try:
            self.db.commit()
        except (IntegrityError, StaleDataError) as e:
            self.db.rollback()
            raise ConflictError(
                "Tenant already has an active subscription",
                details={"tenant_id": tenant_id},
            ) from e

        logger.info(
            "Subscription created",
            extra={
                "tenant_id": tenant_id,
                "subscription_id": subscription.id,
                "plan_code": plan.code,
                "marketplace_managed": bool(marketplace_subscription_id),
            }
        )

        self._audit(
            tenant,
            AuditAction.SUBSCRIPTION_CREATED,
            resource_type="subscription",
            resource_id=subscription.id,
            new_state=SubscriptionStatus.ACTIVE,
            metadata={
                "plan_code": plan.code,
                "billing_cycle": plan.billing_cycle,
                "marketplace_subscription_id": marketplace_subscription_id,
            },
            user_id=user_id,
            source=source,
        )
        return subscription

    def _find_active_subscription(self, tenant_id: str) -> Optional[Subscription]:
        return self.db.query(Subscription).filter(
            Subscription.tenant_id == tenant_id,
            Subscription.status == SubscriptionStatus.ACTIVE,
        ).first()

    def get_active_subscription(self, tenant_id: str) -> Optional[Subscription]:
        """
        Return the tenant's active subscription, if any.

        An active subscription whose end date has passed is flipped to
        expired here and not returned.
        """
        subscription = self._find_active_subscription(tenant_id)
        if subscription is None or not subscription.has_lapsed():
            return subscription

        subscription.status = SubscriptionStatus.EXPIRED
        self.db.commit()

        logger.info(
            "Subscription expired",
            extra={"tenant_id": tenant_id, "subscription_id": subscription.id}
        )
        self._audit_for_tenant_id(
            tenant_id,
            AuditAction.SUBSCRIPTION_EXPIRED,
            resource_type="subscription",
            resource_id=subscription.id,
            previous_state=SubscriptionStatus.ACTIVE,
            new_state=SubscriptionStatus.EXPIRED,
            severity=AuditSeverity.WARNING,
            source="system",
        )
        return None

    # ------------------------------------------------------------------
    # Entitlements
    # ------------------------------------------------------------------

    def is_feature_enabled(self, tenant_id: str, feature_code: str) -> bool:
        """
        Resolve whether a module is enabled for a tenant.

        Order:
        1. Feature override row with is_override=True wins outright
        2. Active subscription's plan modules
        3. Trial module set for trial / pending_setup tenants without a subscription
        4. Denied
        """
        override = self.db.query(FeatureOverride).filter(
            FeatureOverride.tenant_id == tenant_id,
            FeatureOverride.feature_code == feature_code,
            FeatureOverride.is_override.is_(True),
        ).first()
        if override is not None:
            return bool(override.is_enabled)

        subscription = self.get_active_subscription(tenant_id)
        if subscription is not None:
            plan = self.catalog.get_plan(subscription.plan_code)
            if plan is None:
                logger.error(
                    "Active subscription references unknown plan",
                    extra={"tenant_id": tenant_id, "plan_code": subscription.plan_code}
                )
                return False
            return plan.has_module(feature_code)

        tenant = self.get_tenant_by_id(tenant_id)
        if tenant is not None and tenant.status in TRIAL_ACCESS_STATUSES:
            return feature_code in self.catalog.trial_modules

        return False

    def get_enabled_modules(self, tenant_id: str, module_codes: Iterable[str]) -> list[str]:
        """Filter module_codes down to those enabled for the tenant."""
        return [code for code in module_codes if self.is_feature_enabled(tenant_id, code)]

    def set_feature_override(
        self,
        tenant_id: str,
        feature_code: str,
        enabled: bool,
        configuration: Optional[dict] = None,
        user_id: Optional[str] = None,
    ) -> FeatureOverride:
        """Create or update an operator override for one module."""
        tenant = self.get_tenant_by_id(tenant_id)
        if tenant is None:
            raise NotFoundError(f"Tenant not found: {tenant_id}")

        override = self.db.query(FeatureOverride).filter(
            FeatureOverride.tenant_id == tenant_id,
            FeatureOverride.feature_code == feature_code,
        ).first()
        previous = None if override is None else override.is_enabled
        if override is None:
            override = FeatureOverride(tenant_id=tenant_id, feature_code=feature_code)
            self.db.add(override)

        override.is_enabled = enabled
        override.is_override = True
        override.configuration = configuration
        self.db.commit()

        self._audit(
            tenant,
            AuditAction.FEATURE_OVERRIDE_SET,
            resource_type="feature",
            resource_id=feature_code,
            previous_state=None if previous is None else str(previous).lower(),
            new_state=str(enabled).lower(),
            user_id=user_id,
            source="api",
        )
        return override

    def get_trial_status(self, tenant_id: str) -> TrialStatus:
        tenant = self.get_tenant_by_id(tenant_id)
        if tenant is None:
            raise NotFoundError(f"Tenant not found: {tenant_id}")

        is_trial = tenant.status == TenantStatus.TRIAL
        days_remaining = None
        if is_trial and tenant.trial_ends_at is not None:
            days_remaining = max(trial_days_remaining(tenant.trial_ends_at), 0)

        is_expired = tenant.status == TenantStatus.EXPIRED or days_remaining == 0
        can_access = tenant.status in (TenantStatus.ACTIVE, TenantStatus.PENDING_SETUP) or (
            is_trial and not is_expired
        )
        show_upgrade = is_expired or (is_trial and days_remaining is not None and days_remaining <= 3)

        return TrialStatus(
            status=tenant.status.value,
            is_trial=is_trial,
            trial_ends_at=ensure_aware(tenant.trial_ends_at),
            days_remaining=days_remaining,
            is_expired=is_expired,
            can_access_features=can_access,
            show_upgrade_prompt=show_upgrade,
        )

    def get_tenant_rate_limits(self, tenant_id: str) -> RateLimits:
        """Rate limits from the active plan's tier, else the default tier."""
        subscription = self.get_active_subscription(tenant_id)
        tier = None
        if subscription is not None:
            plan = self.catalog.get_plan(subscription.plan_code)
            tier = plan.rate_limit_tier if plan else None
        return self.catalog.get_rate_limits(tier)

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def _audit(
        self,
        tenant: Tenant,
        action: AuditAction,
        resource_type: str = "tenant",
        resource_id: Optional[str] = None,
        previous_state: Optional[str] = None,
        new_state: Optional[str] = None,
        metadata: Optional[dict] = None,
        severity: AuditSeverity = AuditSeverity.INFO,
        user_id: Optional[str] = None,
        source: str = "api",
    ) -> None:
        self._audit_for_tenant_id(
            tenant.id,
            action,
            resource_type=resource_type,
            resource_id=resource_id or tenant.id,
            previous_state=previous_state,
            new_state=new_state,
            metadata=metadata,
            severity=severity,
            user_id=user_id,
            source=source,
        )

    def _audit_for_tenant_id(
        self,
        tenant_id: str,
        action: AuditAction,
        resource_type: str = "tenant",
        resource_id: Optional[str] = None,
        previous_state: Optional[str] = None,
        new_state: Optional[str] = None,
        metadata: Optional[dict] = None,
        severity: AuditSeverity = AuditSeverity.INFO,
        user_id: Optional[str] = None,
        source: str = "api",
    ) -> None:
        write_audit_log_sync(
            self.db,
            AuditEvent(
                tenant_id=tenant_id,
                action=action,
                user_id=user_id,
                resource_type=resource_type,
                resource_id=resource_id,
                previous_state=previous_state,
                new_state=new_state,
                metadata=metadata or {},
                severity=severity,
                source=source,
                ip_address=self.ip_address,
                user_agent=self.user_agent,
            ),
        )
