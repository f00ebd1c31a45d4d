"""Policy rule management endpoints. Administrators only."""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from machinegate.api.deps import get_admin_user, get_db, get_rule_cache
from machinegate.api.schemas.common import PaginatedResponse, SuccessResponse
from machinegate.api.schemas.policy import (
    CacheInvalidateRequest,
    PolicyRuleCreate,
    PolicyRuleResponse,
    PolicyRuleUpdate,
)
from machinegate.core.errors import GateError, ValidationError
from machinegate.core.policy import ActionType, PolicyRuleService, RuleCache
from machinegate.db.models import User

router = APIRouter(prefix="/policy-rules", tags=["policy-rules"])


@router.post("", response_model=PolicyRuleResponse, status_code=status.HTTP_201_CREATED)
async def create_rule(
    body: PolicyRuleCreate,
    db: Session = Depends(get_db),
    cache: RuleCache = Depends(get_rule_cache),
    current_user: User = Depends(get_admin_user),
):
    service = PolicyRuleService(db, cache=cache)
    try:
        rule = service.create_rule(created_by=current_user.id, **body.model_dump())
        db.commit()
    except GateError:
        db.rollback()
        raise
    service.refresh_cache()
    return rule


@router.get("", response_model=PaginatedResponse[PolicyRuleResponse])
async def list_rules(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_admin_user),
    action: Optional[str] = None,
    permission: Optional[str] = None,
    is_active: Optional[bool] = None,
    search: Optional[str] = None,
    sort_by: str = "priority",
    sort_order: str = "desc",
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
):
    """List policy rules, highest priority first by default."""
    return PolicyRuleService(db).list_rules(
        action=action,
        permission=permission,
        is_active=is_active,
        search=search,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        per_page=per_page,
    )


@router.post("/cache/invalidate", response_model=SuccessResponse)
async def invalidate_cache(
    body: CacheInvalidateRequest,
    cache: RuleCache = Depends(get_rule_cache),
    current_user: User = Depends(get_admin_user),
):
    if body.action:
        try:
            action = ActionType(body.action)
        except ValueError:
            raise ValidationError.for_field("action", f"Unknown action: {body.action}", code="INVALID_ACTION")
        cache.invalidate(action)
        return {"message": f"Rule cache cleared for {action.value}"}
    cache.invalidate()
    return {"message": "Rule cache cleared"}


@router.get("/{rule_id}", response_model=PolicyRuleResponse)
async def get_rule(
    rule_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_admin_user),
):
    return PolicyRuleService(db).get_rule(rule_id)


@router.patch("/{rule_id}", response_model=PolicyRuleResponse)
async def update_rule(
    rule_id: str,
    body: PolicyRuleUpdate,
    db: Session = Depends(get_db),
    cache: RuleCache = Depends(get_rule_cache),
    current_user: User = Depends(get_admin_user),
):
    """Update only the fields present in the body."""
    service = PolicyRuleService(db, cache=cache)
    try:
        rule = service.update_rule(rule_id, **body.model_dump(exclude_unset=True))
        db.commit()
    except GateError:
        db.rollback()
        raise
    service.refresh_cache()
    return rule


@router.delete("/{rule_id}", response_model=PolicyRuleResponse)
async def delete_rule(
    rule_id: str,
    db: Session = Depends(get_db),
    cache: RuleCache = Depends(get_rule_cache),
    current_user: User = Depends(get_admin_user),
):
    """Disable a rule. The row is kept."""
    service = PolicyRuleService(db, cache=cache)
    try:
        rule = service.delete_rule(rule_id)
        db.commit()
    except GateError:
        db.rollback()
        raise
    service.refresh_cache()
    return rule
