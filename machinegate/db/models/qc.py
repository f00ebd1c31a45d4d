"""Quality-control models.

``QCEntry`` is the quality record owned by inspectors. ``QCApproval`` is the
secondary-approval ledger kept consistent with the entry's approval field.
"""

import uuid
from sqlalchemy import (
    Column, String, DateTime, Boolean, Float, JSON, ForeignKey, Text, Uuid,
)
from sqlalchemy.orm import relationship

from machinegate.db.base import Base, utcnow


class QCEntry(Base):
    __tablename__ = "qc_entries"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    machine_id = Column(Uuid, ForeignKey("machines.id", ondelete="CASCADE"), nullable=False, index=True)
    added_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    report_link = Column(Text, nullable=True)
    files = Column(JSON, nullable=False, default=list)
    extra_data = Column(JSON, nullable=False, default=dict)
    qc_notes = Column(Text, nullable=True)

    quality_score = Column(Float, nullable=True)
    inspection_date = Column(DateTime, nullable=True)
    next_inspection_date = Column(DateTime, nullable=True)

    is_active = Column(Boolean, nullable=False, default=False)
    approval_status = Column(String(20), nullable=False, default="PENDING", index=True)
    rejection_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    approvals = relationship("QCApproval", back_populates="entry")

    def __repr__(self) -> str:
        return f"<QCEntry machine={self.machine_id} [{self.approval_status}]>"


class QCApproval(Base):
    __tablename__ = "qc_approvals"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    machine_id = Column(Uuid, ForeignKey("machines.id", ondelete="CASCADE"), nullable=False, index=True)
    qc_entry_id = Column(Uuid, ForeignKey("qc_entries.id", ondelete="SET NULL"), nullable=True, index=True)
    requested_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    approval_type = Column(String(50), nullable=False, default="MACHINE_QC_ENTRY")
    status = Column(String(20), nullable=False, default="PENDING", index=True)

    # Who may decide
    approver_roles = Column(JSON, nullable=False, default=list)
    approvers = Column(JSON, nullable=False, default=list)

    # Quality data copied from the entry
    qc_notes = Column(Text, nullable=True)
    quality_score = Column(Float, nullable=True)
    inspection_date = Column(DateTime, nullable=True)
    next_inspection_date = Column(DateTime, nullable=True)
    proposed_changes = Column(JSON, nullable=False, default=dict)
    original_data = Column(JSON, nullable=True)

    # Decision
    approved_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    rejected_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approval_date = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    request_notes = Column(Text, nullable=True)
    approver_notes = Column(Text, nullable=True)

    # Activation
    machine_activated = Column(Boolean, nullable=False, default=False)
    activation_date = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    entry = relationship("QCEntry", back_populates="approvals")

    def __repr__(self) -> str:
        return f"<QCApproval {self.approval_type} entry={self.qc_entry_id} [{self.status}]>"
