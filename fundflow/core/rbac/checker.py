"""Authority checks for the approval workflow."""

from typing import Optional
from uuid import UUID

from .directory import UserDirectory
from .roles import UserRole, parse_role, has_elevated_authority


class RoleChecker:
    """Resolves an actor's effective authority through the user directory."""

    def __init__(self, directory: UserDirectory):
        self.directory = directory

    def role_of(self, actor_id: UUID) -> Optional[UserRole]:
        user = self.directory.get(actor_id)
        if not user or not user.is_active:
            return None
        return parse_role(user.role)

    def has_elevated_authority(self, actor_id: UUID) -> bool:
        """
        Check whether the actor holds both Finance and Committee authority.

        Unknown or inactive actors have no authority.
        """
        return has_elevated_authority(self.role_of(actor_id))
