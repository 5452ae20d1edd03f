"""
Role-Based Access Control (RBAC) resolver.

Pure functions over the ROLE_PERMISSIONS table. Tenant standing and module
entitlements are checked separately by TenantGuard; this module only answers
"may this role perform this permission".

Usage:
    from tenancy.platform.rbac import require_permission

    require_permission(user.role, Permission.CAREER_MANAGE)
"""

import logging
from typing import Iterable, Union, FrozenSet

from tenancy.constants.permissions import (
    Permission,
    Role,
    get_permissions_for_role as _permissions_for_role,
)
from tenancy.platform.errors import PermissionDeniedError

logger = logging.getLogger(__name__)

RoleLike = Union[Role, str, None]


class RBACError(PermissionDeniedError):
    """RBAC-specific permission denied error naming what was required."""

    code = "permission_denied"

    def __init__(self, required: list[str], role: RoleLike):
        self.required = required
        super().__init__(
            message=f"Permission denied: requires {', '.join(required)}",
            details={"required": required},
        )
        logger.warning(
            "RBAC check failed",
            extra={
                "required": required,
                "role": role.value if isinstance(role, Role) else role,
            }
        )


def _value(permission: Union[Permission, str]) -> str:
    return permission.value if isinstance(permission, Permission) else str(permission)


def get_permissions_for_role(role: RoleLike) -> FrozenSet[Permission]:
    """All permissions the role holds. Unknown roles hold none."""
    return _permissions_for_role(role)


def has_permission(role: RoleLike, permission: Union[Permission, str]) -> bool:
    """Check if role holds the specified permission."""
    return permission in _permissions_for_role(role)


def has_any_permission(role: RoleLike, permissions: Iterable[Union[Permission, str]]) -> bool:
    """True if role holds at least one of permissions. An empty list is False."""
    granted = _permissions_for_role(role)
    return any(p in granted for p in permissions)


def has_all_permissions(role: RoleLike, permissions: Iterable[Union[Permission, str]]) -> bool:
    """True if role holds every one of permissions. An empty list is True."""
    granted = _permissions_for_role(role)
    return all(p in granted for p in permissions)


def require_permission(role: RoleLike, permission: Union[Permission, str]) -> None:
    """
    Raise RBACError unless role holds permission.

    Raises:
        RBACError: naming the missing permission
    """
    if not has_permission(role, permission):
        raise RBACError([_value(permission)], role)


def require_any_permission(role: RoleLike, permissions: list[Union[Permission, str]]) -> None:
    """Raise RBACError listing all candidates unless role holds at least one."""
    if not has_any_permission(role, permissions):
        raise RBACError([_value(p) for p in permissions], role)


def require_all_permissions(role: RoleLike, permissions: list[Union[Permission, str]]) -> None:
    """Raise RBACError listing every permission role is missing."""
    granted = _permissions_for_role(role)
    missing = [_value(p) for p in permissions if p not in granted]
    if missing:
        raise RBACError(missing, role)

