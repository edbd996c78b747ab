from datetime import datetime
from sqlalchemy import Column, String, DateTime, JSON, Text

from fundflow.db.base import Base


class SystemSetting(Base):
    """Process-wide key/value configuration owned by administrators."""
    __tablename__ = "system_settings"

    key = Column(String(100), primary_key=True)
    value = Column(JSON, nullable=True)
    description = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<SystemSetting {self.key}={self.value!r}>"
