"""Database models for fundflow."""

from fundflow.db.models.user import User
from fundflow.db.models.activity import Activity
from fundflow.db.models.approval import Approval
from fundflow.db.models.audit import AuditLog
from fundflow.db.models.notification import (
    Notification,
    NotificationPreference,
    NotificationType,
)
from fundflow.db.models.setting import SystemSetting

__all__ = [
    "User",
    "Activity",
    "Approval",
    "AuditLog",
    "Notification",
    "NotificationPreference",
    "NotificationType",
    "SystemSetting",
]
