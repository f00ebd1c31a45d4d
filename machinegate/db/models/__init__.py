"""Database models for Machine Gate."""

from machinegate.db.models.role import Role
from machinegate.db.models.department import Department
from machinegate.db.models.category import Category
from machinegate.db.models.user import User
from machinegate.db.models.machine import Machine
from machinegate.db.models.policy import PolicyRule
from machinegate.db.models.approval import ApprovalRequest, ApprovalHistory
from machinegate.db.models.qc import QCEntry, QCApproval

__all__ = [
    "Role",
    "Department",
    "Category",
    "User",
    "Machine",
    "PolicyRule",
    "ApprovalRequest",
    "ApprovalHistory",
    "QCEntry",
    "QCApproval",
]
