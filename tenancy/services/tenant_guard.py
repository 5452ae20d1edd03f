"""
Tenant Guard for tenant-aware authorization.

Every tenant-scoped operation passes through the gate in this order:
existence -> account standing -> payment standing -> permission -> module.

SECURITY REQUIREMENTS:
- Tenant binding is mandatory for tenant-scoped permission checks
- Cross-tenant resource access is rejected regardless of role
- Only a platform operator (super_admin with no tenant binding) may act
  across tenants

USAGE:
    from tenancy.services.tenant_guard import TenantGuard, TenantUser, validate_resource_ownership

    guard = TenantGuard(TenantService(db))
    context = guard.authorize(user, Permission.CAREER_MANAGE)
    validate_resource_ownership(record.tenant_id, context.tenant_id, "career_path")
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

from tenancy.constants.permissions import (
    ModuleCode,
    Permission,
    Role,
    get_module_for_permission,
    parse_role,
)
from tenancy.models.tenant import TenantStatus
from tenancy.platform.errors import (
    FeatureDisabledError,
    NotFoundError,
    PaymentRequiredError,
    TenantCancelledError,
    TenantExpiredError,
    TenantIsolationError,
    TenantSuspendedError,
)
from tenancy.platform.rbac import RBACError, has_permission, require_permission
from tenancy.services.tenant_service import TenantService, TRIAL_ACCESS_STATUSES

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriptionSummary:
    subscription_id: str
    plan_code: str
    status: str


@dataclass(frozen=True)
class TenantContext:
    """Resolved standing of the tenant a request runs under."""
    tenant_id: str
    tenant_code: str
    tenant_status: TenantStatus
    subscription: Optional[SubscriptionSummary] = None


@dataclass
class TenantUser:
    """The authenticated caller as seen by authorization checks."""
    id: str
    role: Union[Role, str]
    tenant_id: Optional[str] = None
    tenant_context: Optional[TenantContext] = None


def has_tenant_permission(user: Optional[TenantUser], permission: Union[Permission, str]) -> bool:
    """
    Tenant-scoped permission check.

    Fails closed when the user is not bound to a tenant, even if the role
    would otherwise grant the permission.
    """
    if user is None or not user.tenant_id:
        return False
    return has_permission(user.role, permission)


def can_access_cross_tenant(user: Optional[TenantUser]) -> bool:
    """True only for a platform operator: super_admin with no tenant binding."""
    if user is None:
        return False
    return parse_role(user.role) == Role.SUPER_ADMIN and not user.tenant_id


def validate_resource_ownership(
    resource_tenant_id: Optional[str],
    request_tenant_id: Optional[str],
    resource_type: str,
) -> None:
    """
    Cross-tenant isolation guard. Apply before returning any tenant-owned resource.

    Raises:
        TenantIsolationError: the resource belongs to another tenant
    """
    if resource_tenant_id != request_tenant_id:
        logger.warning(
            "Cross-tenant access blocked",
            extra={
                "resource_type": resource_type,
                "resource_tenant_id": resource_tenant_id,
                "request_tenant_id": request_tenant_id,
            }
        )
        raise TenantIsolationError(
            f"Access denied: {resource_type} belongs to a different organization",
            details={"resource_type": resource_type},
        )


class TenantGuard:
    """Tenant standing and entitlement checks backed by TenantService."""

    def __init__(self, tenant_service: TenantService):
        self.tenants = tenant_service

    def validate_tenant_access(self, tenant_id: str) -> TenantContext:
        """
        Gate every tenant-scoped operation must pass before any RBAC check.

        Raises:
            NotFoundError: tenant id does not resolve
            TenantCancelledError / TenantSuspendedError / TenantExpiredError: bad standing
            PaymentRequiredError: no active subscription outside trial / pending_setup
        """
        tenant = self.tenants.get_tenant_by_id(tenant_id)
        if tenant is None:
            raise NotFoundError("Tenant not found")

        if tenant.status == TenantStatus.CANCELLED:
            raise TenantCancelledError("This organization's subscription has been cancelled")
        if tenant.status == TenantStatus.SUSPENDED:
            raise TenantSuspendedError(
                "This organization's account is suspended. Please contact support."
            )
        if tenant.status == TenantStatus.EXPIRED:
            raise TenantExpiredError(
                "This organization's trial has ended. Please subscribe to continue."
            )

        subscription = self.tenants.get_active_subscription(tenant_id)
        if subscription is None and tenant.status not in TRIAL_ACCESS_STATUSES:
            raise PaymentRequiredError("No active subscription found. Please subscribe to continue.")

        summary = None
        if subscription is not None:
            summary = SubscriptionSummary(
                subscription_id=subscription.id,
                plan_code=subscription.plan_code,
                status=subscription.status,
            )

        return TenantContext(
            tenant_id=tenant.id,
            tenant_code=tenant.tenant_code,
            tenant_status=tenant.status,
            subscription=summary,
        )

    def is_module_enabled(self, tenant_id: str, module_code: Union[ModuleCode, str]) -> bool:
        code = module_code.value if isinstance(module_code, ModuleCode) else module_code
        return self.tenants.is_feature_enabled(tenant_id, code)

    def authorize(
        self,
        user: TenantUser,
        permission: Union[Permission, str],
        module_code: Union[ModuleCode, str, None] = None,
    ) -> TenantContext:
        """
        Full gate for a tenant-scoped operation.

        Order: tenant access -> tenant-bound permission -> module entitlement.
        module_code defaults to the module the permission is gated behind.

        Returns:
            The resolved TenantContext, also attached to user.tenant_context
        """
        if not user.tenant_id:
            logger.warning(
                "Tenant-scoped check without tenant binding",
                extra={"user_id": user.id, "permission": str(permission)}
            )
            raise RBACError([str(getattr(permission, "value", permission))], user.role)

        context = self.validate_tenant_access(user.tenant_id)
        user.tenant_context = context

        require_permission(user.role, permission)

        if module_code is None:
            try:
                module_code = get_module_for_permission(Permission(permission))
            except ValueError:
                module_code = None

        if module_code is not None and not self.is_module_enabled(context.tenant_id, module_code):
            code = module_code.value if isinstance(module_code, ModuleCode) else module_code
            raise FeatureDisabledError(code, tenant_id=context.tenant_id)

        return context
