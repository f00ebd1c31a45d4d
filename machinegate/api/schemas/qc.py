"""Schemas for QC entries and QC approvals."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from .common import ServiceWarning


class QCEntryUpdate(BaseModel):
    report_link: Optional[str] = None
    files: Optional[List[str]] = None
    extra_data: Optional[Dict[str, Any]] = None
    qc_notes: Optional[str] = None
    quality_score: Optional[float] = None
    inspection_date: Optional[datetime] = None
    next_inspection_date: Optional[datetime] = None
    approval_status: Optional[str] = None
    rejection_reason: Optional[str] = None
    is_active: Optional[bool] = None


class QCEntryResponse(BaseModel):
    id: str
    machine_id: str
    added_by: Optional[str]
    report_link: Optional[str]
    files: List[str]
    extra_data: Optional[Dict[str, Any]]
    qc_notes: Optional[str]
    quality_score: Optional[float]
    inspection_date: Optional[str]
    next_inspection_date: Optional[str]
    is_active: bool
    approval_status: str
    rejection_reason: Optional[str]
    created_at: Optional[str]
    updated_at: Optional[str]


class QCEntryUpdateResponse(BaseModel):
    entry: QCEntryResponse
    warnings: List[ServiceWarning] = []


class QCApprovalCreate(BaseModel):
    approval_type: str = "MACHINE_QC_ENTRY"
    approver_roles: List[str] = []
    approvers: List[str] = []
    request_notes: Optional[str] = None


class QCApprovalDecision(BaseModel):
    approved: bool
    notes: Optional[str] = None
    rejection_reason: Optional[str] = None


class QCApprovalResponse(BaseModel):
    id: str
    machine_id: str
    qc_entry_id: Optional[str]
    requested_by: Optional[str]
    approval_type: str
    status: str
    approver_roles: List[str]
    approvers: List[str]
    qc_notes: Optional[str]
    quality_score: Optional[float]
    inspection_date: Optional[str]
    next_inspection_date: Optional[str]
    approved_by: Optional[str]
    rejected_by: Optional[str]
    approval_date: Optional[str]
    rejection_reason: Optional[str]
    request_notes: Optional[str]
    approver_notes: Optional[str]
    machine_activated: bool
    activation_date: Optional[str]
    created_at: Optional[str]
    updated_at: Optional[str]
    warnings: List[ServiceWarning] = []


class QCApprovalCreateResponse(BaseModel):
    approval: QCApprovalResponse
    created: bool


class QCApprovalStatistics(BaseModel):
    total: int
    by_status: Dict[str, int]
    activated: int
