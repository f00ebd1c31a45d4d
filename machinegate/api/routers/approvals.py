"""Approval workflow API endpoints."""

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from machinegate.api.deps import get_current_user, get_db, get_policy_engine
from machinegate.api.schemas.approval import (
    ApprovalCreate,
    ApprovalDecision,
    ApprovalHistoryResponse,
    ApprovalResponse,
    ApprovalStatistics,
    ApprovalUpdate,
)
from machinegate.api.schemas.common import PaginatedResponse
from machinegate.core.approval import ApprovalFilters, ApprovalService
from machinegate.core.errors import GateError
from machinegate.core.policy import ActionType, PolicyEngine
from machinegate.core.policy.checker import require_action
from machinegate.db.models import User

router = APIRouter(prefix="/approvals", tags=["approvals"])


def approval_filters(
    status: Optional[str] = None,
    approval_type: Optional[str] = None,
    priority: Optional[str] = None,
    machine_id: Optional[str] = None,
    category_id: Optional[str] = None,
    requester: Optional[str] = None,
    sequence: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    metadata_key: Optional[str] = None,
    metadata_value: Optional[str] = None,
    sort_by: str = "created_at",
    sort_order: Optional[str] = None,
) -> ApprovalFilters:
    """Query-string filters shared by the listing endpoints."""
    filters = ApprovalFilters(
        status=status,
        approval_type=approval_type,
        priority=priority,
        machine_id=machine_id,
        category_id=category_id,
        requester=requester,
        sequence=sequence,
        date_from=date_from,
        date_to=date_to,
        metadata_key=metadata_key,
        metadata_value=metadata_value,
        sort_by=sort_by,
    )
    if sort_order:
        filters.sort_order = sort_order
    return filters


def pending_filters(
    filters: ApprovalFilters = Depends(approval_filters),
    sort_order: Optional[str] = None,
) -> ApprovalFilters:
    """Pending queues read oldest first unless a sort order is given."""
    if sort_order is None:
        filters.sort_order = "asc"
    return filters


@router.post("", response_model=ApprovalResponse, status_code=status.HTTP_201_CREATED)
async def create_approval(
    body: ApprovalCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Open an approval request on behalf of the caller."""
    service = ApprovalService(db)
    try:
        result = service.create_request(requested_by=current_user.id, **body.model_dump())
        db.commit()
    except GateError:
        db.rollback()
        raise
    return result


@router.get("", response_model=PaginatedResponse[ApprovalResponse])
async def list_approvals(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    filters: ApprovalFilters = Depends(approval_filters),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
):
    return ApprovalService(db).list_requests(filters, page=page, per_page=per_page)


@router.get("/pending", response_model=PaginatedResponse[ApprovalResponse])
async def list_pending_approvals(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    filters: ApprovalFilters = Depends(pending_filters),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
):
    return ApprovalService(db).list_pending(filters, page=page, per_page=per_page)


@router.get("/mine", response_model=PaginatedResponse[ApprovalResponse])
async def list_my_approvals(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    filters: ApprovalFilters = Depends(approval_filters),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
):
    return ApprovalService(db).list_user_requests(current_user.id, filters, page=page, per_page=per_page)


@router.get("/statistics", response_model=ApprovalStatistics)
async def approval_statistics(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return ApprovalService(db).statistics()


@router.get("/{request_id}", response_model=ApprovalResponse)
async def get_approval(
    request_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return ApprovalService(db).get_request(request_id)


@router.get("/{request_id}/history", response_model=List[ApprovalHistoryResponse])
async def get_approval_history(
    request_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Get the status transition history for an approval request."""
    return ApprovalService(db).get_history(request_id)


@router.post("/{request_id}/decide", response_model=ApprovalResponse)
@require_action(ActionType.APPROVE_MACHINE)
async def decide_approval(
    request_id: str,
    body: ApprovalDecision,
    db: Session = Depends(get_db),
    engine: PolicyEngine = Depends(get_policy_engine),
    current_user: User = Depends(get_current_user),
):
    """Approve or reject a pending request."""
    service = ApprovalService(db)
    try:
        result = service.decide(
            request_id,
            current_user.id,
            body.approved,
            notes=body.notes,
            rejection_reason=body.rejection_reason,
        )
        db.commit()
    except GateError:
        db.rollback()
        raise
    return result


@router.post("/{request_id}/cancel", response_model=ApprovalResponse)
async def cancel_approval(
    request_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Withdraw a pending request. Only its requester may do this."""
    service = ApprovalService(db)
    try:
        result = service.cancel(request_id, current_user.id)
        db.commit()
    except GateError:
        db.rollback()
        raise
    return result


@router.patch("/{request_id}", response_model=ApprovalResponse)
async def update_approval(
    request_id: str,
    body: ApprovalUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    service = ApprovalService(db)
    try:
        result = service.update_request(request_id, current_user.id, **body.model_dump(exclude_unset=True))
        db.commit()
    except GateError:
        db.rollback()
        raise
    return result
