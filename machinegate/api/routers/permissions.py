"""Permission check API endpoints."""

from fastapi import APIRouter, Depends

from machinegate.api.deps import get_current_user, get_policy_engine
from machinegate.api.schemas.policy import DecisionResponse, EvaluateRequest, PermissionsResponse
from machinegate.core.policy import ActorContext, PolicyEngine, ResourceContext
from machinegate.db.models import User

router = APIRouter(prefix="/permissions", tags=["permissions"])


@router.post("/evaluate", response_model=DecisionResponse)
async def evaluate_permission(
    body: EvaluateRequest,
    engine: PolicyEngine = Depends(get_policy_engine),
    current_user: User = Depends(get_current_user),
):
    """Evaluate one action for the caller, or for another user by id."""
    resource = ResourceContext(category_id=body.category_id, numeric_value=body.numeric_value)
    if body.user_id:
        decision = engine.evaluate_for_user(body.user_id, body.action, resource)
    else:
        decision = engine.evaluate(ActorContext.from_user(current_user), body.action, resource)
    return decision.to_dict()


@router.get("/me", response_model=PermissionsResponse)
async def my_permissions(
    engine: PolicyEngine = Depends(get_policy_engine),
    current_user: User = Depends(get_current_user),
):
    """Evaluate every action for the caller."""
    decisions = engine.get_all_permissions(ActorContext.from_user(current_user))
    return {
        "user_id": str(current_user.id),
        "permissions": {action.value: decision.to_dict() for action, decision in decisions.items()},
    }
