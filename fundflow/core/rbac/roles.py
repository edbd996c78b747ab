"""Role definitions for fundflow.

Every user holds exactly one role. Permission checks are set-membership
tests of that role against the allow-list of the action being attempted:

1. Admin - Elevated authority: satisfies Finance and Committee at once
2. ProjectManager - Proposes estimate and status changes
3. Finance - First-stage reviewer; records actuals
4. CommitteeMember - Second-stage reviewer
5. Auditor - Read-only
6. Viewer - Read-only
"""

from enum import Enum
from typing import FrozenSet, Optional, Union


class UserRole(str, Enum):
    """Roles a user can hold."""

    ADMIN = "Admin"
    PROJECT_MANAGER = "ProjectManager"
    FINANCE = "Finance"
    COMMITTEE_MEMBER = "CommitteeMember"
    AUDITOR = "Auditor"
    VIEWER = "Viewer"


# The single super-role holding both review authorities
ELEVATED_ROLE = UserRole.ADMIN

FINANCE_ROLES: FrozenSet[UserRole] = frozenset({UserRole.FINANCE, ELEVATED_ROLE})
COMMITTEE_ROLES: FrozenSet[UserRole] = frozenset({UserRole.COMMITTEE_MEMBER, ELEVATED_ROLE})
REVIEWER_ROLES: FrozenSet[UserRole] = FINANCE_ROLES | COMMITTEE_ROLES


def parse_role(role: Union[str, UserRole, None]) -> Optional[UserRole]:
    """Coerce a stored role value to ``UserRole``; unknown values give None."""
    if role is None or isinstance(role, UserRole):
        return role
    try:
        return UserRole(role)
    except ValueError:
        return None


def has_elevated_authority(role: Union[str, UserRole, None]) -> bool:
    """True only for the super-role that clears both review stages."""
    return parse_role(role) == ELEVATED_ROLE


def is_allowed(role: Union[str, UserRole, None], allowed: FrozenSet[UserRole]) -> bool:
    """Check a role against an action's allow-list."""
    parsed = parse_role(role)
    return parsed is not None and parsed in allowed
