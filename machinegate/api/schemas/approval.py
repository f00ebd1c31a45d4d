"""Schemas for approval requests."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class ApprovalCreate(BaseModel):
    machine_id: str
    approval_type: str
    proposed_changes: Optional[Dict[str, Any]] = None
    original_data: Optional[Dict[str, Any]] = None
    request_notes: Optional[str] = None
    approver_roles: List[str] = []
    priority: str = "MEDIUM"


class ApprovalUpdate(BaseModel):
    approval_type: Optional[str] = None
    proposed_changes: Optional[Dict[str, Any]] = None
    request_notes: Optional[str] = None
    approver_roles: Optional[List[str]] = None
    priority: Optional[str] = None


class ApprovalDecision(BaseModel):
    approved: bool
    notes: Optional[str] = None
    rejection_reason: Optional[str] = None


class MachineSummary(BaseModel):
    id: str
    name: str
    machine_sequence: Optional[str]
    category_id: Optional[str]


class RequesterSummary(BaseModel):
    id: str
    username: str
    email: str


class ApprovalResponse(BaseModel):
    id: str
    machine_id: str
    approval_type: str
    status: str
    priority: str
    proposed_changes: Optional[Dict[str, Any]]
    original_data: Optional[Dict[str, Any]]
    request_notes: Optional[str]
    approver_notes: Optional[str]
    approver_roles: List[str]
    requested_by: Optional[str]
    approved_by: Optional[str]
    rejected_by: Optional[str]
    decided_at: Optional[str]
    rejection_reason: Optional[str]
    created_at: Optional[str]
    updated_at: Optional[str]
    machine: Optional[MachineSummary] = None
    requester: Optional[RequesterSummary] = None


class ApprovalHistoryResponse(BaseModel):
    id: str
    from_status: Optional[str]
    to_status: str
    transition: str
    user_id: Optional[str]
    comment: Optional[str]
    extra_data: Optional[Dict[str, Any]]
    created_at: Optional[str]


class ApprovalStatistics(BaseModel):
    total: int
    by_status: Dict[str, int]
    total_pending: int
    pending_by_priority: Dict[str, int]
    by_type: Dict[str, int]
    average_processing_hours: Optional[float]
    overdue: int
    overdue_after_days: int
