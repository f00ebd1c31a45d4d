"""Policy evaluation for Machine Gate.

Evaluates actors against scoped, prioritized permission rules.
"""

from .cache import RuleCache
from .engine import Decision, PolicyEngine
from .rules import ActionType, ActorContext, PermissionLevel, ResourceContext, RuleSnapshot
from .store import PolicyRuleService

__all__ = [
    "RuleCache",
    "Decision",
    "PolicyEngine",
    "ActionType",
    "ActorContext",
    "PermissionLevel",
    "ResourceContext",
    "RuleSnapshot",
    "PolicyRuleService",
]
