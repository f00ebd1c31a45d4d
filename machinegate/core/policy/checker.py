"""Policy enforcement for FastAPI endpoints.

Wraps an endpoint so that it only runs when the policy engine ALLOWS the
current user to perform a given action.
"""

from functools import wraps
from typing import Callable, Union

from fastapi import HTTPException, status

from machinegate.core.errors import ForbiddenError
from .rules import ActionType, ActorContext


def require_action(action: Union[ActionType, str]):
    """
    Decorator factory for endpoints guarded by a policy action.

    The endpoint must declare ``current_user`` and ``engine`` dependencies.
    A REQUIRES_APPROVAL decision is not enough to run the endpoint; callers
    open an approval request instead.

    Usage:
        @router.post("/{approval_id}/decide")
        @require_action(ActionType.APPROVE_MACHINE)
        async def decide(approval_id: UUID, engine: PolicyEngine = Depends(get_policy_engine),
                         current_user: User = Depends(get_current_user)):
            ...
    """
    action = ActionType(action)

    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            current_user = kwargs.get("current_user")
            engine = kwargs.get("engine")

            if not current_user:
                raise HTTPException(
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    detail="Authentication required"
                )
            if engine is None:
                raise RuntimeError(f"{func.__name__} must depend on the policy engine")

            decision = engine.evaluate(ActorContext.from_user(current_user), action)
            if decision.requires_approval:
                raise ForbiddenError(
                    f"{action.value} requires approval",
                    code="APPROVAL_REQUIRED",
                    details=[{"field": "approver_roles", "message": ", ".join(decision.approver_roles)}],
                )
            if not decision.allowed:
                raise ForbiddenError(
                    f"Not permitted to {action.value}: {decision.reason}",
                    code="ACTION_NOT_ALLOWED",
                )

            return await func(*args, **kwargs)

        return wrapper
    return decorator
