"""Schemas for policy rules and permission checks.

Enum-valued fields are plain strings here; the services validate them so
that bad values come back as VALIDATION_ERROR rather than a 422.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class PolicyRuleCreate(BaseModel):
    name: str
    description: Optional[str] = None
    action: str
    permission: str
    user_ids: List[str] = []
    role_ids: List[str] = []
    department_ids: List[str] = []
    category_ids: List[str] = []
    approver_roles: List[str] = []
    max_value: Optional[float] = None
    priority: int = 0
    is_active: bool = True


class PolicyRuleUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    action: Optional[str] = None
    permission: Optional[str] = None
    user_ids: Optional[List[str]] = None
    role_ids: Optional[List[str]] = None
    department_ids: Optional[List[str]] = None
    category_ids: Optional[List[str]] = None
    approver_roles: Optional[List[str]] = None
    max_value: Optional[float] = None
    priority: Optional[int] = None
    is_active: Optional[bool] = None


class PolicyRuleResponse(BaseModel):
    id: str
    name: str
    description: Optional[str]
    action: str
    permission: str
    user_ids: List[str]
    role_ids: List[str]
    department_ids: List[str]
    category_ids: List[str]
    approver_roles: List[str]
    max_value: Optional[float]
    priority: int
    is_active: bool
    created_by: Optional[str]
    created_at: Optional[str]
    updated_at: Optional[str]


class EvaluateRequest(BaseModel):
    """Check one action. ``user_id`` defaults to the caller."""
    action: str
    user_id: Optional[str] = None
    category_id: Optional[str] = None
    numeric_value: Optional[float] = None


class MatchedRule(BaseModel):
    id: str
    name: str
    action: str
    permission: str
    priority: int
    approver_roles: List[str]
    max_value: Optional[float]


class DecisionResponse(BaseModel):
    action: str
    permission: str
    allowed: bool
    requires_approval: bool
    approver_roles: List[str]
    matched_rule: Optional[MatchedRule]
    reason: Optional[str]
    evaluated_at: str


class PermissionsResponse(BaseModel):
    user_id: str
    permissions: Dict[str, DecisionResponse]


class CacheInvalidateRequest(BaseModel):
    action: Optional[str] = Field(None, description="Only this action; all actions when omitted")
