"""Policy evaluation engine for Machine Gate.

Resolves an actor's request to perform a protected action into a single
decision: ALLOWED, DENIED, or REQUIRES_APPROVAL (with the approver roles
that must sign off). Evaluation is default-deny: when no rule matches,
the answer is DENIED.
"""

import logging
from typing import Any, Dict, List, Optional, Union
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session

from machinegate.core.errors import ValidationError
from machinegate.db.base import utcnow
from .cache import RuleCache
from .rules import (
    ActionType,
    ActorContext,
    PermissionLevel,
    ResourceContext,
    RuleSnapshot,
    rule_matches,
    sort_rules,
)

logger = logging.getLogger(__name__)

NO_MATCHING_RULE = "no matching rule"
DENIED_BY_RULE = "Access denied by permission rule"
USER_NOT_FOUND = "User not found"
EVALUATION_FAILED = "evaluation failed"


@dataclass
class Decision:
    """
    Result of evaluating one action for one actor.
    """
    action: ActionType
    permission: PermissionLevel
    matched_rule: Optional[RuleSnapshot] = None
    approver_roles: List[str] = field(default_factory=list)
    reason: Optional[str] = None
    evaluated_at: datetime = field(default_factory=utcnow)

    @property
    def allowed(self) -> bool:
        return self.permission is PermissionLevel.ALLOWED

    @property
    def requires_approval(self) -> bool:
        return self.permission is PermissionLevel.REQUIRES_APPROVAL

    @classmethod
    def deny(cls, action: ActionType, reason: str, rule: Optional[RuleSnapshot] = None) -> "Decision":
        return cls(action=action, permission=PermissionLevel.DENIED, matched_rule=rule, reason=reason)

    def to_dict(self) -> Dict[str, Any]:
        """Convert decision to dictionary for API responses."""
        return {
            "action": self.action.value,
            "permission": self.permission.value,
            "allowed": self.allowed,
            "requires_approval": self.requires_approval,
            "approver_roles": list(self.approver_roles),
            "matched_rule": self.matched_rule.to_dict() if self.matched_rule else None,
            "reason": self.reason,
            "evaluated_at": self.evaluated_at.isoformat(),
        }


def _coerce_action(action: Union[ActionType, str]) -> ActionType:
    try:
        return ActionType(action)
    except ValueError:
        raise ValidationError.for_field("action", f"Unknown action: {action}", code="INVALID_ACTION")


class PolicyEngine:
    """
    Evaluates actors against the policy rules of an action.

    Rules are read once per action (through the cache when one is given),
    sorted by precedence, and scanned in order; the first matching rule
    decides.
    """

    def __init__(self, db: Session, cache: Optional[RuleCache] = None):
        """
        Initialize the policy engine.

        Args:
            db: Database session for loading rules and users
            cache: Optional rule cache shared across engine instances
        """
        self.db = db
        self.cache = cache

    def evaluate(
        self,
        actor: ActorContext,
        action: Union[ActionType, str],
        resource: Optional[ResourceContext] = None,
    ) -> Decision:
        """
        Decide whether ``actor`` may perform ``action`` on ``resource``.

        Returns:
            Decision for the highest-precedence matching rule, or a
            default-deny decision when nothing matches
        """
        action = _coerce_action(action)
        resource = resource or ResourceContext()

        for rule in self._rules_for(action):
            matched, _ = rule_matches(rule, actor, resource)
            if not matched:
                continue

            if rule.permission is PermissionLevel.ALLOWED:
                return Decision(action=action, permission=PermissionLevel.ALLOWED, matched_rule=rule)
            if rule.permission is PermissionLevel.REQUIRES_APPROVAL:
                return Decision(
                    action=action,
                    permission=PermissionLevel.REQUIRES_APPROVAL,
                    matched_rule=rule,
                    approver_roles=list(rule.approver_roles),
                )
            return Decision.deny(action, DENIED_BY_RULE, rule)

        return Decision.deny(action, NO_MATCHING_RULE)

    def get_all_permissions(
        self,
        actor: ActorContext,
        resource: Optional[ResourceContext] = None,
    ) -> Dict[ActionType, Decision]:
        """
        Evaluate every known action for ``actor``.

        A failure while evaluating one action is logged and reported as a
        denial for that action only.
        """
        results: Dict[ActionType, Decision] = {}
        for action in ActionType:
            try:
                results[action] = self.evaluate(actor, action, resource)
            except Exception:
                logger.exception(f"Permission evaluation failed for {action.value}")
                results[action] = Decision.deny(action, EVALUATION_FAILED)
        return results

    def resolve_actor(self, user_id: Union[str, UUID]) -> Optional[ActorContext]:
        """Load an active user's actor context, or None if unknown or inactive."""
        from machinegate.db.models import User

        try:
            parsed = user_id if isinstance(user_id, UUID) else UUID(str(user_id))
        except ValueError:
            return None

        user = self.db.query(User).filter(User.id == parsed).first()
        if not user or not user.is_active:
            return None
        return ActorContext.from_user(user)

    def evaluate_for_user(
        self,
        user_id: Union[str, UUID],
        action: Union[ActionType, str],
        resource: Optional[ResourceContext] = None,
    ) -> Decision:
        """Evaluate for a stored user; unknown users are denied."""
        action = _coerce_action(action)
        actor = self.resolve_actor(user_id)
        if actor is None:
            return Decision.deny(action, USER_NOT_FOUND)
        return self.evaluate(actor, action, resource)

    def _rules_for(self, action: ActionType) -> List[RuleSnapshot]:
        if self.cache is None:
            return self._load_rules(action)
        return self.cache.get(action, lambda: self._load_rules(action))

    def _load_rules(self, action: ActionType) -> List[RuleSnapshot]:
        """Fetch active rules for one action and sort them by precedence."""
        from machinegate.db.models import PolicyRule

        rows = self.db.query(PolicyRule).filter(
            PolicyRule.action == action.value,
            PolicyRule.is_active.is_(True),
        ).all()
        return sort_rules([RuleSnapshot.from_model(row) for row in rows])
