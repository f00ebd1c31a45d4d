"""Policy rule definitions for Machine Gate.

A rule grants, denies, or gates one protected action for the actors and
resources it is scoped to. Scoping sets are ANDed together; an empty set
matches anything.
"""

from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple
from dataclasses import dataclass, field
from datetime import datetime

from machinegate.core.references import normalize_id, normalize_ids


class ActionType(str, Enum):
    """Protected operations a rule can govern."""

    # Machine registry
    CREATE_MACHINE = "CREATE_MACHINE"
    EDIT_MACHINE = "EDIT_MACHINE"
    DELETE_MACHINE = "DELETE_MACHINE"
    APPROVE_MACHINE = "APPROVE_MACHINE"
    ACTIVATE_MACHINE = "ACTIVATE_MACHINE"

    # Quality control
    VIEW_QC_APPROVAL = "VIEW_QC_APPROVAL"
    CREATE_QC_APPROVAL = "CREATE_QC_APPROVAL"
    EDIT_QC_APPROVAL = "EDIT_QC_APPROVAL"
    DELETE_QC_APPROVAL = "DELETE_QC_APPROVAL"
    APPROVE_QC_APPROVAL = "APPROVE_QC_APPROVAL"


class PermissionLevel(str, Enum):
    """Outcome a rule assigns when it matches."""

    ALLOWED = "ALLOWED"
    DENIED = "DENIED"
    REQUIRES_APPROVAL = "REQUIRES_APPROVAL"


# Rule column -> context attribute it is checked against
SCOPE_FIELDS: Tuple[str, ...] = ("user_ids", "role_ids", "department_ids", "category_ids")


@dataclass(frozen=True)
class ActorContext:
    """Who is asking."""
    user_id: Optional[str] = None
    role_id: Optional[str] = None
    department_id: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "user_id", normalize_id(self.user_id))
        object.__setattr__(self, "role_id", normalize_id(self.role_id))
        object.__setattr__(self, "department_id", normalize_id(self.department_id))

    @classmethod
    def from_user(cls, user) -> "ActorContext":
        return cls(user_id=user.id, role_id=user.role_id, department_id=user.department_id)


@dataclass(frozen=True)
class ResourceContext:
    """What the action touches."""
    category_id: Optional[str] = None
    numeric_value: Optional[float] = None

    def __post_init__(self):
        object.__setattr__(self, "category_id", normalize_id(self.category_id))


@dataclass(frozen=True)
class RuleSnapshot:
    """
    Immutable copy of an active rule, safe to cache across sessions.
    """
    id: str
    name: str
    action: ActionType
    permission: PermissionLevel
    priority: int = 0
    user_ids: FrozenSet[str] = field(default_factory=frozenset)
    role_ids: FrozenSet[str] = field(default_factory=frozenset)
    department_ids: FrozenSet[str] = field(default_factory=frozenset)
    category_ids: FrozenSet[str] = field(default_factory=frozenset)
    approver_roles: Tuple[str, ...] = ()
    max_value: Optional[float] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, rule) -> "RuleSnapshot":
        """Build a snapshot from a ``PolicyRule`` row."""
        return cls(
            id=str(rule.id),
            name=rule.name,
            action=ActionType(rule.action),
            permission=PermissionLevel(rule.permission),
            priority=rule.priority or 0,
            user_ids=frozenset(normalize_ids(rule.user_ids)),
            role_ids=frozenset(normalize_ids(rule.role_ids)),
            department_ids=frozenset(normalize_ids(rule.department_ids)),
            category_ids=frozenset(normalize_ids(rule.category_ids)),
            approver_roles=tuple(normalize_ids(rule.approver_roles)),
            max_value=rule.max_value,
            created_at=rule.created_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "action": self.action.value,
            "permission": self.permission.value,
            "priority": self.priority,
            "approver_roles": list(self.approver_roles),
            "max_value": self.max_value,
        }


def _precedence_key(rule: RuleSnapshot):
    return (-rule.priority, rule.created_at or datetime.min, rule.id)


def sort_rules(rules: List[RuleSnapshot]) -> List[RuleSnapshot]:
    """
    Order rules for evaluation.

    Highest priority first; equal priorities fall back to the oldest rule,
    then to the id, so the order never depends on storage order.
    """
    return sorted(rules, key=_precedence_key)


def rule_matches(
    rule: RuleSnapshot,
    actor: ActorContext,
    resource: ResourceContext,
) -> tuple[bool, Optional[str]]:
    """
    Check a rule's scoping against the actor and resource.

    A context value that is absent never satisfies a non-empty scope
    or a ceiling.

    Returns:
        Tuple of (matched, reason for the first failed check)
    """
    checks = (
        (rule.user_ids, actor.user_id, "user"),
        (rule.role_ids, actor.role_id, "role"),
        (rule.department_ids, actor.department_id, "department"),
        (rule.category_ids, resource.category_id, "category"),
    )
    for scope, value, label in checks:
        if scope and value not in scope:
            return False, f"{label} not in rule scope"

    if rule.max_value is not None:
        if resource.numeric_value is None:
            return False, "no value to compare against max_value"
        if resource.numeric_value > rule.max_value:
            return False, f"value {resource.numeric_value} exceeds max_value {rule.max_value}"

    return True, None
