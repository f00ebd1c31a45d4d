"""Policy rule model.

One row per scoped decision. Scoping sets are JSON lists of id strings;
an empty list matches any value.
"""

import uuid
from sqlalchemy import (
    Column, String, DateTime, Boolean, Integer, Float, JSON, Text, ForeignKey, Index, Uuid, text,
)

from machinegate.db.base import Base, utcnow


class PolicyRule(Base):
    __tablename__ = "policy_rules"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    action = Column(String(50), nullable=False, index=True)

    # Scoping sets (empty = wildcard)
    user_ids = Column(JSON, nullable=False, default=list)
    role_ids = Column(JSON, nullable=False, default=list)
    department_ids = Column(JSON, nullable=False, default=list)
    category_ids = Column(JSON, nullable=False, default=list)

    # Decision
    permission = Column(String(30), nullable=False)
    approver_roles = Column(JSON, nullable=False, default=list)
    max_value = Column(Float, nullable=True)
    priority = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)

    created_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        # Non-zero priorities are unique per action among active rules
        Index(
            "uq_policy_rules_active_priority",
            "action",
            "priority",
            unique=True,
            postgresql_where=text("is_active AND priority <> 0"),
            sqlite_where=text("is_active = 1 AND priority <> 0"),
        ),
    )

    def __repr__(self) -> str:
        return f"<PolicyRule {self.name} {self.action}:{self.permission} p={self.priority}>"
