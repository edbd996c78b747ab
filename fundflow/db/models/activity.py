import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Integer, Numeric, Uuid

from fundflow.db.base import Base


class Activity(Base):
    """
    A funded activity whose estimate changes are routed through approval.

    Only the fields the approval engine reads or reverts are mapped here.
    """
    __tablename__ = "activities"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    sn = Column(Integer, nullable=False, index=True)
    title = Column(String(255), nullable=False)
    estimated_spend_usd_total = Column(Numeric(14, 2, asdecimal=False), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<Activity #{self.sn} {self.title}>"
