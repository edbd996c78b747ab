"""Audit log model for fundflow.

Entries are append-only: the application never updates or deletes rows in
this table. They are the permanent record of who changed what.
"""

import uuid
from datetime import datetime
from typing import Optional, Dict, Any
from sqlalchemy import Column, String, DateTime, JSON, ForeignKey, Uuid
from sqlalchemy.orm import relationship

from fundflow.db.base import Base


class AuditLog(Base):
    """
    Immutable audit log entry.

    Records actor, action, affected object and before/after values.
    """
    __tablename__ = "audit_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)

    # Actor information
    actor_id = Column(Uuid, ForeignKey("users.id"), nullable=True, index=True)
    actor_role = Column(String(50), nullable=True)
    ip_address = Column(String(45), nullable=True)

    # Action details
    action = Column(String(100), nullable=False, index=True)
    object_type = Column(String(100), nullable=False, index=True)
    object_id = Column(String(64), nullable=True, index=True)

    # Change tracking
    previous_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    actor = relationship("User", back_populates="audit_logs")

    def __repr__(self) -> str:
        return f"<AuditLog {self.action} on {self.object_type} by user {self.actor_id}>"

    @classmethod
    def create_entry(
        cls,
        action: str,
        object_type: str,
        *,
        actor_id: Optional[uuid.UUID] = None,
        actor_role: Optional[str] = None,
        object_id: Optional[Any] = None,
        previous_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
    ) -> "AuditLog":
        """
        Factory method to create a new audit log entry.

        Args:
            action: Action performed (e.g., 'create', 'update')
            object_type: Type of object (e.g., 'Approval', 'Activity')
            actor_id: ID of user performing the action (None for system actions)
            actor_role: Role the actor held when acting
            object_id: ID of the affected object
            previous_values: Values before the change
            new_values: Values after the change
            ip_address: Client IP address
        """
        return cls(
            action=action,
            object_type=object_type,
            actor_id=actor_id,
            actor_role=actor_role,
            object_id=str(object_id) if object_id is not None else None,
            previous_values=previous_values,
            new_values=new_values,
            ip_address=ip_address,
        )
