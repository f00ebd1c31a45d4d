"""Approval state machine implementation.

Validates status transitions and records them in an in-memory history
that the services persist as ``ApprovalHistory`` rows.
"""

import logging
import uuid
from typing import Optional, Dict, Any, Iterable, Union
from uuid import UUID

from machinegate.db.base import utcnow
from .states import (
    ApprovalStatus,
    ApprovalTransition,
    TransitionRule,
    GATED_EDIT_REOPEN,
    GATED_QC_FIELDS,
    REQUESTER_ONLY_TRANSITIONS,
    TERMINAL_STATES,
    can_transition,
    get_transition_rule,
)

logger = logging.getLogger(__name__)


class TransitionError(Exception):
    """Raised when a status transition is invalid."""

    def __init__(self, message: str, from_state: ApprovalStatus, transition: ApprovalTransition):
        super().__init__(message)
        self.from_state = from_state
        self.transition = transition


class NotRequesterError(Exception):
    """Raised when a requester-only transition is attempted by someone else."""

    def __init__(self, transition: ApprovalTransition):
        super().__init__(f"Only the requester can perform {transition.value}")
        self.transition = transition


class ApprovalStateMachine:
    """
    State machine for a single approval request or QC ledger row.

    Manages transitions between approval statuses with:
    - Validation of valid transitions
    - Requester checks for requester-only transitions
    - A transition record for each change
    """

    def __init__(
        self,
        entity_id: Union[UUID, str],
        current_state: Union[ApprovalStatus, str],
        *,
        requester_id: Optional[Union[UUID, str]] = None,
    ):
        """
        Initialize the state machine.

        Args:
            entity_id: ID of the request or ledger row
            current_state: Current approval status
            requester_id: Who opened the request, for requester-only transitions
        """
        self.entity_id = entity_id
        self._state = ApprovalStatus(current_state)
        self.requester_id = str(requester_id) if requester_id else None
        self._transition_history: list[Dict[str, Any]] = []

    @property
    def state(self) -> ApprovalStatus:
        """Current state of the entity."""
        return self._state

    @property
    def is_terminal(self) -> bool:
        """Check if current state is terminal (no further transitions)."""
        return self._state in TERMINAL_STATES

    def can_perform(self, transition: ApprovalTransition, user_id: Optional[Union[UUID, str]] = None) -> bool:
        """Check if a transition can be performed from current state."""
        rule = get_transition_rule(self._state, transition)
        if rule is None:
            return False
        return not rule.requires_requester or self._is_requester(user_id)

    def get_available_transitions(self, user_id: Optional[Union[UUID, str]] = None) -> list[ApprovalTransition]:
        """Get list of general transitions available from current state."""
        return [t for t in ApprovalTransition if self.can_perform(t, user_id)]

    def transition(
        self,
        transition: ApprovalTransition,
        *,
        comment: Optional[str] = None,
        user_id: Optional[Union[UUID, str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ApprovalStatus:
        """
        Perform a status transition.

        Args:
            transition: The transition to perform
            comment: Optional comment (required for some transitions)
            user_id: ID of user performing the transition
            metadata: Additional metadata to record

        Returns:
            The new status after transition

        Raises:
            TransitionError: If the transition is invalid from this status
            NotRequesterError: If a requester-only transition is attempted by another user
        """
        if transition in REQUESTER_ONLY_TRANSITIONS and not self._is_requester(user_id):
            raise NotRequesterError(transition)

        if not can_transition(self._state, transition):
            raise TransitionError(
                f"Cannot perform {transition.value} from status {self._state.value}",
                self._state,
                transition,
            )

        rule = get_transition_rule(self._state, transition)

        if rule.requires_comment and not comment:
            raise TransitionError(
                f"Transition {transition.value} requires a comment",
                self._state,
                transition,
            )

        return self._apply(rule, comment=comment, user_id=user_id, metadata=metadata)

    def reopen_after_gated_edit(
        self,
        changed_fields: Iterable[str],
        *,
        user_id: Optional[Union[UUID, str]] = None,
    ) -> ApprovalStatus:
        """
        Move a REJECTED QC ledger row back to PENDING after a gated edit.

        This is the only way out of REJECTED. It fires only when at least one
        gated QC attribute changed.

        Raises:
            TransitionError: If the row is not REJECTED or no gated field changed
        """
        transition = GATED_EDIT_REOPEN.transition
        if self._state is not GATED_EDIT_REOPEN.from_state:
            raise TransitionError(
                f"Cannot perform {transition.value} from status {self._state.value}",
                self._state,
                transition,
            )

        gated = sorted(set(changed_fields) & GATED_QC_FIELDS)
        if not gated:
            raise TransitionError(
                f"{transition.value} requires a change to one of: {', '.join(sorted(GATED_QC_FIELDS))}",
                self._state,
                transition,
            )

        return self._apply(GATED_EDIT_REOPEN, user_id=user_id, metadata={"changed_fields": gated})

    def get_history(self) -> list[Dict[str, Any]]:
        """Get the transition history for this entity."""
        return self._transition_history.copy()

    def _apply(
        self,
        rule: TransitionRule,
        *,
        comment: Optional[str] = None,
        user_id: Optional[Union[UUID, str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ApprovalStatus:
        record = {
            "id": uuid.uuid4(),
            "entity_id": self.entity_id,
            "from_state": self._state.value,
            "to_state": rule.to_state.value,
            "transition": rule.transition.value,
            "user_id": user_id,
            "comment": comment,
            "metadata": metadata or {},
            "timestamp": utcnow(),
        }
        self._transition_history.append(record)
        self._state = rule.to_state

        logger.debug(f"{self.entity_id}: {record['from_state']} -> {record['to_state']} ({record['transition']})")
        return self._state

    def _is_requester(self, user_id: Optional[Union[UUID, str]]) -> bool:
        return self.requester_id is not None and user_id is not None and str(user_id) == self.requester_id
