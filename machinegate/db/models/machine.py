"""Machine records gated by approval workflows.

Machines are owned by the machine registry; this service only reads them
and flips ``is_approved`` as the side effect of an approval decision.
"""

import uuid
from sqlalchemy import Column, String, DateTime, Boolean, JSON, ForeignKey, Uuid
from sqlalchemy.orm import relationship

from machinegate.db.base import Base, utcnow


class Machine(Base):
    __tablename__ = "machines"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    machine_sequence = Column(String(100), nullable=True, index=True)
    category_id = Column(Uuid, ForeignKey("categories.id", ondelete="SET NULL"), nullable=True, index=True)
    created_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    # Free-form attributes, filterable by key/value in approval listings
    extra_data = Column(JSON, nullable=False, default=dict)

    is_approved = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    category = relationship("Category", back_populates="machines")

    def __repr__(self) -> str:
        return f"<Machine {self.name} [{self.machine_sequence}]>"
