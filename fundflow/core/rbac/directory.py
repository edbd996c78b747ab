"""User lookups needed by the approval engine."""

from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from fundflow.db.models import User
from .roles import UserRole


class UserDirectory:
    """Read-only access to active users and their roles."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, user_id: Optional[UUID]) -> Optional[User]:
        if user_id is None:
            return None
        return self.db.get(User, user_id)

    def users_with_roles(
        self,
        roles: Iterable[UserRole],
        *,
        exclude: Optional[UUID] = None,
    ) -> List[User]:
        """Active users holding any of ``roles``, optionally minus one user."""
        query = self.db.query(User).filter(
            User.role.in_([r.value for r in roles]),
            User.is_active.is_(True),
        )
        if exclude is not None:
            query = query.filter(User.id != exclude)
        return query.order_by(User.email.asc()).all()
