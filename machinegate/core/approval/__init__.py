"""Approval workflow module for Machine Gate.

Implements the approval request state machine and its persistence.
"""

from .states import ApprovalStatus, ApprovalTransition, ApprovalType, VALID_TRANSITIONS
from .machine import ApprovalStateMachine
from .filters import ApprovalFilters
from .service import ApprovalService

__all__ = [
    "ApprovalStatus",
    "ApprovalTransition",
    "ApprovalType",
    "VALID_TRANSITIONS",
    "ApprovalStateMachine",
    "ApprovalFilters",
    "ApprovalService",
]
