"""Approval workflow database model.

One row per proposed change under review. The transition history is kept
on the row as an append-only JSON list; see
``fundflow.core.approval.history`` for the typed view over it.
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, JSON, ForeignKey, Text, Integer, Uuid
from sqlalchemy.orm import relationship

from fundflow.db.base import Base


class Approval(Base):
    """
    Tracks review state for one proposed change to a target object.

    The ``version`` column is SQLAlchemy's optimistic lock: an UPDATE that
    matches no row at the expected version raises ``StaleDataError``.
    """
    __tablename__ = "approvals"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)

    # What is being changed
    target_type = Column(String(50), nullable=False, index=True)  # EstimateChange, ActualEntry, StatusChange
    target_id = Column(Uuid, nullable=False, index=True)

    # Workflow state
    current_state = Column(String(50), nullable=False, default="Submitted", index=True)

    # Submission
    submitted_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    submitted_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    # Finance stage
    finance_approved_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    finance_approved_at = Column(DateTime, nullable=True)
    finance_comment = Column(Text, nullable=True)

    # Committee stage
    committee_approved_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    committee_approved_at = Column(DateTime, nullable=True)
    committee_comment = Column(Text, nullable=True)

    # Rejection
    rejected_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)

    # Ordered transition events, never rewritten
    history = Column(JSON, nullable=False, default=list)

    version = Column(Integer, nullable=False)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    submitter = relationship("User", foreign_keys=[submitted_by])
    finance_approver = relationship("User", foreign_keys=[finance_approved_by])
    committee_approver = relationship("User", foreign_keys=[committee_approved_by])
    rejecter = relationship("User", foreign_keys=[rejected_by])

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Approval {self.target_type}:{self.target_id} [{self.current_state}]>"
