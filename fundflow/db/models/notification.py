"""In-app notification and notification preference models."""

import uuid
from datetime import datetime
from enum import Enum
from sqlalchemy import Column, String, DateTime, ForeignKey, Boolean, Text, Uuid
from sqlalchemy.orm import relationship

from fundflow.db.base import Base


class NotificationType(str, Enum):
    """Categories of in-app notification raised by the approval workflow."""
    APPROVAL_SUBMITTED = "ApprovalSubmitted"
    APPROVAL_DECISION = "ApprovalDecision"


class Notification(Base):
    """
    A read marker shown to one user in the application.
    """
    __tablename__ = "notifications"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    link = Column(String(512), nullable=True)

    is_read = Column(Boolean, default=False)
    is_email_sent = Column(Boolean, default=False)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    user = relationship("User", back_populates="notifications")

    def __repr__(self) -> str:
        return f"<Notification {self.type} to {self.user_id}>"


class NotificationPreference(Base):
    """
    Per-user email opt-ins. Users without a row receive every email.
    """
    __tablename__ = "notification_preferences"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)

    email_approval_submitted = Column(Boolean, default=True)
    email_approval_decision = Column(Boolean, default=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="notification_preference")

    def allows(self, notification_type: str) -> bool:
        if notification_type == NotificationType.APPROVAL_SUBMITTED.value:
            return bool(self.email_approval_submitted)
        if notification_type == NotificationType.APPROVAL_DECISION.value:
            return bool(self.email_approval_decision)
        return True

    def __repr__(self) -> str:
        return f"<NotificationPreference user={self.user_id}>"
