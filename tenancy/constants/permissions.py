"""
Canonical permissions matrix.

IMPORTANT: This is the single source of truth for all permissions.
All permission checks MUST reference these constants. Both the plain
resolver (tenancy.platform.rbac) and the tenant-aware guard
(tenancy.services.tenant_guard) read ROLE_PERMISSIONS.

The model is closed-world: a role holds exactly the permissions listed
for it here. There is no inheritance between roles.
"""

from enum import Enum
from typing import FrozenSet, Optional, Union


class Role(str, Enum):
    """User roles within a tenant (super_admin is platform-level)."""
    SUPER_ADMIN = "super_admin"
    HR_MANAGER = "hr_manager"
    DEPARTMENT_MANAGER = "department_manager"
    EMPLOYEE = "employee"
    TEACHER = "teacher"
    LICENSING_OFFICER = "licensing_officer"
    RECRUITER = "recruiter"
    SCHOOL_PRINCIPAL = "school_principal"


class Permission(str, Enum):
    """Permissions in resource:action format."""

    # User management
    USERS_READ = "users:read"
    USERS_CREATE = "users:create"
    USERS_UPDATE = "users:update"
    USERS_DELETE = "users:delete"

    # Career progression
    CAREER_READ = "career:read"
    CAREER_MANAGE = "career:manage"

    # Succession planning
    SUCCESSION_READ = "succession:read"
    SUCCESSION_MANAGE = "succession:manage"

    # Workforce planning
    WORKFORCE_READ = "workforce:read"
    WORKFORCE_MANAGE = "workforce:manage"

    # Employee engagement
    ENGAGEMENT_READ = "engagement:read"
    ENGAGEMENT_MANAGE = "engagement:manage"
    SURVEYS_CREATE = "surveys:create"
    SURVEYS_RESPOND = "surveys:respond"

    # Recruitment
    RECRUITMENT_READ = "recruitment:read"
    RECRUITMENT_MANAGE = "recruitment:manage"
    CANDIDATES_VIEW = "candidates:view"
    CANDIDATES_MANAGE = "candidates:manage"

    # Performance management
    PERFORMANCE_READ = "performance:read"
    PERFORMANCE_MANAGE = "performance:manage"
    PERFORMANCE_SELF_APPRAISAL = "performance:self_appraisal"
    PERFORMANCE_MANAGER_REVIEW = "performance:manager_review"
    PERFORMANCE_360_FEEDBACK = "performance:360_feedback"

    # Teachers licensing
    LICENSING_READ = "licensing:read"
    LICENSING_MANAGE = "licensing:manage"
    LICENSING_APPLY = "licensing:apply"
    LICENSING_VERIFY = "licensing:verify"

    # Competency assessments
    COMPETENCY_READ = "competency:read"
    COMPETENCY_MANAGE = "competency:manage"
    COMPETENCY_SELF_ASSESS = "competency:self_assess"

    # Staff placement
    PLACEMENT_READ = "placement:read"
    PLACEMENT_MANAGE = "placement:manage"
    PLACEMENT_REQUEST = "placement:request"

    # Psychometric assessments
    PSYCHOMETRIC_READ = "psychometric:read"
    PSYCHOMETRIC_MANAGE = "psychometric:manage"
    PSYCHOMETRIC_TAKE = "psychometric:take"

    # Reports & analytics
    REPORTS_VIEW = "reports:view"
    REPORTS_GENERATE = "reports:generate"
    ANALYTICS_VIEW = "analytics:view"

    # System administration
    SYSTEM_MANAGE = "system:manage"
    AUDIT_VIEW = "audit:view"


class ModuleCode(str, Enum):
    """Sellable product modules. Plans enable a subset of these."""
    CAREER_PROGRESSION = "career_progression"
    SUCCESSION_PLANNING = "succession_planning"
    WORKFORCE_PLANNING = "workforce_planning"
    EMPLOYEE_ENGAGEMENT = "employee_engagement"
    RECRUITMENT = "recruitment"
    PERFORMANCE_MANAGEMENT = "performance_management"
    TEACHERS_LICENSING = "teachers_licensing"
    COMPETENCY_ASSESSMENTS = "competency_assessments"
    STAFF_PLACEMENT = "staff_placement"
    PSYCHOMETRIC_ASSESSMENTS = "psychometric_assessments"


ROLE_PERMISSIONS: dict[Role, FrozenSet[Permission]] = {
    Role.SUPER_ADMIN: frozenset(Permission),

    Role.HR_MANAGER: frozenset([
        Permission.USERS_READ,
        Permission.USERS_CREATE,
        Permission.USERS_UPDATE,
        Permission.CAREER_READ,
        Permission.CAREER_MANAGE,
        Permission.SUCCESSION_READ,
        Permission.SUCCESSION_MANAGE,
        Permission.WORKFORCE_READ,
        Permission.WORKFORCE_MANAGE,
        Permission.ENGAGEMENT_READ,
        Permission.ENGAGEMENT_MANAGE,
        Permission.SURVEYS_CREATE,
        Permission.RECRUITMENT_READ,
        Permission.RECRUITMENT_MANAGE,
        Permission.CANDIDATES_VIEW,
        Permission.CANDIDATES_MANAGE,
        Permission.PERFORMANCE_READ,
        Permission.PERFORMANCE_MANAGE,
        Permission.COMPETENCY_READ,
        Permission.COMPETENCY_MANAGE,
        Permission.PLACEMENT_READ,
        Permission.PLACEMENT_MANAGE,
        Permission.PSYCHOMETRIC_READ,
        Permission.PSYCHOMETRIC_MANAGE,
        Permission.REPORTS_VIEW,
        Permission.REPORTS_GENERATE,
        Permission.ANALYTICS_VIEW,
    ]),

    Role.DEPARTMENT_MANAGER: frozenset([
        Permission.USERS_READ,
        Permission.CAREER_READ,
        Permission.SUCCESSION_READ,
        Permission.WORKFORCE_READ,
        Permission.ENGAGEMENT_READ,
        Permission.SURVEYS_CREATE,
        Permission.SURVEYS_RESPOND,
        Permission.RECRUITMENT_READ,
        Permission.CANDIDATES_VIEW,
        Permission.PERFORMANCE_READ,
        Permission.PERFORMANCE_MANAGER_REVIEW,
        Permission.PERFORMANCE_360_FEEDBACK,
        Permission.COMPETENCY_READ,
        Permission.PLACEMENT_READ,
        Permission.PSYCHOMETRIC_READ,
        Permission.REPORTS_VIEW,
        Permission.ANALYTICS_VIEW,
    ]),

    Role.EMPLOYEE: frozenset([
        Permission.CAREER_READ,
        Permission.SURVEYS_RESPOND,
        Permission.PERFORMANCE_SELF_APPRAISAL,
        Permission.PERFORMANCE_360_FEEDBACK,
        Permission.LICENSING_APPLY,
        Permission.COMPETENCY_SELF_ASSESS,
        Permission.PLACEMENT_REQUEST,
        Permission.PSYCHOMETRIC_TAKE,
    ]),

    Role.LICENSING_OFFICER: frozenset([
        Permission.USERS_READ,
        Permission.LICENSING_READ,
        Permission.LICENSING_MANAGE,
        Permission.LICENSING_VERIFY,
        Permission.REPORTS_VIEW,
    ]),

    Role.RECRUITER: frozenset([
        Permission.USERS_READ,
        Permission.RECRUITMENT_READ,
        Permission.RECRUITMENT_MANAGE,
        Permission.CANDIDATES_VIEW,
        Permission.CANDIDATES_MANAGE,
        Permission.REPORTS_VIEW,
    ]),

    Role.TEACHER: frozenset([
        Permission.CAREER_READ,
        Permission.SURVEYS_RESPOND,
        Permission.PERFORMANCE_SELF_APPRAISAL,
        Permission.PERFORMANCE_360_FEEDBACK,
        Permission.LICENSING_READ,
        Permission.LICENSING_APPLY,
        Permission.COMPETENCY_READ,
        Permission.COMPETENCY_SELF_ASSESS,
        Permission.PLACEMENT_REQUEST,
        Permission.PSYCHOMETRIC_TAKE,
    ]),

    Role.SCHOOL_PRINCIPAL: frozenset([
        Permission.USERS_READ,
        Permission.CAREER_READ,
        Permission.SUCCESSION_READ,
        Permission.WORKFORCE_READ,
        Permission.ENGAGEMENT_READ,
        Permission.SURVEYS_CREATE,
        Permission.SURVEYS_RESPOND,
        Permission.RECRUITMENT_READ,
        Permission.CANDIDATES_VIEW,
        Permission.PERFORMANCE_READ,
        Permission.PERFORMANCE_MANAGER_REVIEW,
        Permission.PERFORMANCE_360_FEEDBACK,
        Permission.LICENSING_READ,
        Permission.LICENSING_VERIFY,
        Permission.COMPETENCY_READ,
        Permission.PLACEMENT_READ,
        Permission.PLACEMENT_REQUEST,
        Permission.PSYCHOMETRIC_READ,
        Permission.REPORTS_VIEW,
        Permission.ANALYTICS_VIEW,
    ]),
}


# Permission -> module it is gated behind. Permissions not listed here
# (users, reports, analytics, system, audit) are not module-gated.
PERMISSION_MODULES: dict[Permission, ModuleCode] = {
    Permission.CAREER_READ: ModuleCode.CAREER_PROGRESSION,
    Permission.CAREER_MANAGE: ModuleCode.CAREER_PROGRESSION,

    Permission.SUCCESSION_READ: ModuleCode.SUCCESSION_PLANNING,
    Permission.SUCCESSION_MANAGE: ModuleCode.SUCCESSION_PLANNING,

    Permission.WORKFORCE_READ: ModuleCode.WORKFORCE_PLANNING,
    Permission.WORKFORCE_MANAGE: ModuleCode.WORKFORCE_PLANNING,

    Permission.ENGAGEMENT_READ: ModuleCode.EMPLOYEE_ENGAGEMENT,
    Permission.ENGAGEMENT_MANAGE: ModuleCode.EMPLOYEE_ENGAGEMENT,
    Permission.SURVEYS_CREATE: ModuleCode.EMPLOYEE_ENGAGEMENT,
    Permission.SURVEYS_RESPOND: ModuleCode.EMPLOYEE_ENGAGEMENT,

    Permission.RECRUITMENT_READ: ModuleCode.RECRUITMENT,
    Permission.RECRUITMENT_MANAGE: ModuleCode.RECRUITMENT,
    Permission.CANDIDATES_VIEW: ModuleCode.RECRUITMENT,
    Permission.CANDIDATES_MANAGE: ModuleCode.RECRUITMENT,

    Permission.PERFORMANCE_READ: ModuleCode.PERFORMANCE_MANAGEMENT,
    Permission.PERFORMANCE_MANAGE: ModuleCode.PERFORMANCE_MANAGEMENT,
    Permission.PERFORMANCE_SELF_APPRAISAL: ModuleCode.PERFORMANCE_MANAGEMENT,
    Permission.PERFORMANCE_MANAGER_REVIEW: ModuleCode.PERFORMANCE_MANAGEMENT,
    Permission.PERFORMANCE_360_FEEDBACK: ModuleCode.PERFORMANCE_MANAGEMENT,

    Permission.LICENSING_READ: ModuleCode.TEACHERS_LICENSING,
    Permission.LICENSING_MANAGE: ModuleCode.TEACHERS_LICENSING,
    Permission.LICENSING_APPLY: ModuleCode.TEACHERS_LICENSING,
    Permission.LICENSING_VERIFY: ModuleCode.TEACHERS_LICENSING,

    Permission.COMPETENCY_READ: ModuleCode.COMPETENCY_ASSESSMENTS,
    Permission.COMPETENCY_MANAGE: ModuleCode.COMPETENCY_ASSESSMENTS,
    Permission.COMPETENCY_SELF_ASSESS: ModuleCode.COMPETENCY_ASSESSMENTS,

    Permission.PLACEMENT_READ: ModuleCode.STAFF_PLACEMENT,
    Permission.PLACEMENT_MANAGE: ModuleCode.STAFF_PLACEMENT,
    Permission.PLACEMENT_REQUEST: ModuleCode.STAFF_PLACEMENT,

    Permission.PSYCHOMETRIC_READ: ModuleCode.PSYCHOMETRIC_ASSESSMENTS,
    Permission.PSYCHOMETRIC_MANAGE: ModuleCode.PSYCHOMETRIC_ASSESSMENTS,
    Permission.PSYCHOMETRIC_TAKE: ModuleCode.PSYCHOMETRIC_ASSESSMENTS,
}


def parse_role(role: Union[Role, str, None]) -> Optional[Role]:
    """Coerce a role string to Role. Unknown or missing roles return None."""
    if isinstance(role, Role):
        return role
    if not role:
        return None
    try:
        return Role(role)
    except ValueError:
        return None


def get_permissions_for_role(role: Union[Role, str, None]) -> FrozenSet[Permission]:
    """Get all permissions for a role. Unknown roles have none."""
    parsed = parse_role(role)
    if parsed is None:
        return frozenset()
    return ROLE_PERMISSIONS.get(parsed, frozenset())


def get_module_for_permission(permission: Permission) -> Optional[ModuleCode]:
    """Module a permission is gated behind, or None if it is not module-gated."""
    return PERMISSION_MODULES.get(permission)
