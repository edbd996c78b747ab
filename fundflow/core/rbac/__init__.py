"""Role-based access control for the approval workflow.

Roles are fixed; each action has an allow-list of roles and one elevated
role short-circuits both review stages.
"""

from .roles import (
    UserRole,
    ELEVATED_ROLE,
    FINANCE_ROLES,
    COMMITTEE_ROLES,
    REVIEWER_ROLES,
    parse_role,
    has_elevated_authority,
    is_allowed,
)
from .directory import UserDirectory
from .checker import RoleChecker

__all__ = [
    "UserRole",
    "ELEVATED_ROLE",
    "FINANCE_ROLES",
    "COMMITTEE_ROLES",
    "REVIEWER_ROLES",
    "parse_role",
    "has_elevated_authority",
    "is_allowed",
    "UserDirectory",
    "RoleChecker",
]
