"""Approval workflow states and transitions.

State Machine Diagram:

    ┌──────────┐
    │ PENDING  │ ← Initial state (request opened)
    └────┬─────┘
         │
         ├──────────────────┬──────────────────┐
         │                  │                  │
    ┌────▼─────┐      ┌─────▼────┐      ┌──────▼────┐
    │ APPROVED │      │ REJECTED │      │ CANCELLED │
    └──────────┘      └─────┬────┘      └───────────┘
                            ┊
                            ┊ REOPEN_AFTER_GATED_EDIT
                            ┊ (QC ledger only)
                            ▼
                         PENDING

APPROVED and CANCELLED are terminal. REJECTED accepts edits to the request
but only leaves that state through the guarded reopen transition, which is
not part of the general transition table.
"""

from enum import Enum
from typing import Set, Dict, Optional, NamedTuple, FrozenSet


class ApprovalStatus(str, Enum):
    """Status shared by approval requests and the QC ledger."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class ApprovalTransition(str, Enum):
    """Actions that trigger status transitions."""

    OPEN = "OPEN"                  # (none) → PENDING, recorded at creation
    APPROVE = "APPROVE"            # PENDING → APPROVED
    REJECT = "REJECT"              # PENDING → REJECTED
    CANCEL = "CANCEL"              # PENDING → CANCELLED (requester only)
    REOPEN_AFTER_GATED_EDIT = "REOPEN_AFTER_GATED_EDIT"  # REJECTED → PENDING (guarded)


class ApprovalType(str, Enum):
    """Kinds of machine change that can be gated."""

    MACHINE_CREATION = "MACHINE_CREATION"
    MACHINE_EDIT = "MACHINE_EDIT"
    MACHINE_DELETION = "MACHINE_DELETION"


class QCApprovalType(str, Enum):
    """Kinds of QC ledger entry."""

    MACHINE_QC_ENTRY = "MACHINE_QC_ENTRY"
    MACHINE_QC_EDIT = "MACHINE_QC_EDIT"
    MACHINE_QC_DELETION = "MACHINE_QC_DELETION"
    MACHINE_QC_VERIFICATION = "MACHINE_QC_VERIFICATION"


class RequestPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class TransitionRule(NamedTuple):
    """Defines a valid status transition."""
    from_state: ApprovalStatus
    to_state: ApprovalStatus
    transition: ApprovalTransition
    requires_requester: bool = False
    requires_comment: bool = False


# General transitions available to any caller
TRANSITION_RULES: list[TransitionRule] = [
    TransitionRule(ApprovalStatus.PENDING, ApprovalStatus.APPROVED, ApprovalTransition.APPROVE),
    TransitionRule(ApprovalStatus.PENDING, ApprovalStatus.REJECTED, ApprovalTransition.REJECT),
    TransitionRule(ApprovalStatus.PENDING, ApprovalStatus.CANCELLED, ApprovalTransition.CANCEL,
                   requires_requester=True),
]

# Guarded transition, only reachable through ApprovalStateMachine.reopen_after_gated_edit
GATED_EDIT_REOPEN = TransitionRule(
    ApprovalStatus.REJECTED, ApprovalStatus.PENDING, ApprovalTransition.REOPEN_AFTER_GATED_EDIT,
)

# QC entry attributes whose edit reopens a rejected ledger row
GATED_QC_FIELDS: FrozenSet[str] = frozenset({
    "quality_score",
    "inspection_date",
    "next_inspection_date",
    "report_link",
})

# Build lookup tables for efficient access
VALID_TRANSITIONS: Dict[ApprovalStatus, Set[ApprovalTransition]] = {}
TRANSITION_TARGETS: Dict[tuple[ApprovalStatus, ApprovalTransition], TransitionRule] = {}

for rule in TRANSITION_RULES:
    VALID_TRANSITIONS.setdefault(rule.from_state, set()).add(rule.transition)
    TRANSITION_TARGETS[(rule.from_state, rule.transition)] = rule

# Transitions only the original requester may perform, whatever the status
REQUESTER_ONLY_TRANSITIONS: Set[ApprovalTransition] = {
    rule.transition for rule in TRANSITION_RULES if rule.requires_requester
}


# No outgoing transitions at all
TERMINAL_STATES: Set[ApprovalStatus] = {
    ApprovalStatus.APPROVED,
    ApprovalStatus.CANCELLED,
}

# States in which the request itself may still be edited
EDITABLE_STATES: Set[ApprovalStatus] = {
    ApprovalStatus.PENDING,
    ApprovalStatus.REJECTED,
}

# States reached by an approver's decision
DECIDED_STATES: Set[ApprovalStatus] = {
    ApprovalStatus.APPROVED,
    ApprovalStatus.REJECTED,
}


def can_transition(from_state: ApprovalStatus, transition: ApprovalTransition) -> bool:
    """Check if a transition is valid from the given state."""
    return transition in VALID_TRANSITIONS.get(from_state, set())


def get_transition_rule(from_state: ApprovalStatus, transition: ApprovalTransition) -> Optional[TransitionRule]:
    """Get the transition rule for a state/action combination."""
    return TRANSITION_TARGETS.get((from_state, transition))


def get_target_state(from_state: ApprovalStatus, transition: ApprovalTransition) -> Optional[ApprovalStatus]:
    """Get the target state for a transition."""
    rule = get_transition_rule(from_state, transition)
    return rule.to_state if rule else None
