"""Approval workflow database models.

Stores machine approval requests and their status transition history.
"""

import uuid
from sqlalchemy import Column, String, DateTime, JSON, ForeignKey, Text, Index, Uuid, text
from sqlalchemy.orm import relationship

from machinegate.db.base import Base, utcnow


class ApprovalRequest(Base):
    """
    A pending or decided change to a machine.

    At most one PENDING request may exist per (machine_id, approval_type).
    """
    __tablename__ = "approval_requests"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)

    # Gated resource
    machine_id = Column(Uuid, ForeignKey("machines.id", ondelete="CASCADE"), nullable=False, index=True)
    approval_type = Column(String(50), nullable=False, index=True)

    # Request payload
    proposed_changes = Column(JSON, nullable=False, default=dict)
    original_data = Column(JSON, nullable=True)
    request_notes = Column(Text, nullable=True)
    approver_roles = Column(JSON, nullable=False, default=list)
    priority = Column(String(20), nullable=False, default="MEDIUM")

    # Workflow state
    status = Column(String(20), nullable=False, default="PENDING", index=True)

    # Request tracking
    requested_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)

    # Decision tracking
    approved_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    rejected_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    decided_at = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    approver_notes = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    history = relationship(
        "ApprovalHistory",
        back_populates="request",
        order_by="ApprovalHistory.created_at",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index(
            "uq_approval_requests_one_pending",
            "machine_id",
            "approval_type",
            unique=True,
            postgresql_where=text("status = 'PENDING'"),
            sqlite_where=text("status = 'PENDING'"),
        ),
    )

    def __repr__(self) -> str:
        return f"<ApprovalRequest {self.approval_type} machine={self.machine_id} [{self.status}]>"


class ApprovalHistory(Base):
    """
    Records all status transitions for approval requests.

    ``from_status`` is empty for the row written at creation.
    """
    __tablename__ = "approval_history"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    request_id = Column(Uuid, ForeignKey("approval_requests.id", ondelete="CASCADE"), nullable=False, index=True)

    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=False)
    transition = Column(String(50), nullable=False)

    user_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    comment = Column(Text, nullable=True)
    extra_data = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime, default=utcnow, index=True)

    request = relationship("ApprovalRequest", back_populates="history")

    def __repr__(self) -> str:
        return f"<ApprovalHistory {self.from_status} -> {self.to_status}>"
