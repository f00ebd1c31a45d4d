"""QC entry and QC approval endpoints."""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from machinegate.api.deps import get_current_user, get_db, get_policy_engine
from machinegate.api.schemas.common import PaginatedResponse
from machinegate.api.schemas.qc import (
    QCApprovalCreate,
    QCApprovalCreateResponse,
    QCApprovalDecision,
    QCApprovalResponse,
    QCApprovalStatistics,
    QCEntryUpdate,
    QCEntryUpdateResponse,
)
from machinegate.core.errors import GateError
from machinegate.core.policy import ActionType, PolicyEngine
from machinegate.core.policy.checker import require_action
from machinegate.core.quality import QCApprovalFilters, QCApprovalService, QCEntryService
from machinegate.db.models import User

entries_router = APIRouter(prefix="/qc-entries", tags=["qc"])
approvals_router = APIRouter(prefix="/qc-approvals", tags=["qc"])


@entries_router.patch("/{entry_id}", response_model=QCEntryUpdateResponse)
@require_action(ActionType.EDIT_QC_APPROVAL)
async def update_entry(
    entry_id: str,
    body: QCEntryUpdate,
    db: Session = Depends(get_db),
    engine: PolicyEngine = Depends(get_policy_engine),
    current_user: User = Depends(get_current_user),
):
    """
    Update a QC entry.

    Ledger synchronization problems are reported in ``warnings``; the entry
    update itself is still saved.
    """
    service = QCEntryService(db)
    try:
        result = service.update_entry(entry_id, updated_by=current_user.id, **body.model_dump(exclude_unset=True))
        db.commit()
    except GateError:
        db.rollback()
        raise
    return result


@approvals_router.post("/entries/{entry_id}", response_model=QCApprovalCreateResponse)
@require_action(ActionType.CREATE_QC_APPROVAL)
async def create_for_entry(
    entry_id: str,
    body: QCApprovalCreate,
    db: Session = Depends(get_db),
    engine: PolicyEngine = Depends(get_policy_engine),
    current_user: User = Depends(get_current_user),
):
    """Open a QC approval for an entry, or return the machine's pending one."""
    service = QCApprovalService(db)
    try:
        result = service.create_for_entry(entry_id, current_user.id, **body.model_dump())
        db.commit()
    except GateError:
        db.rollback()
        raise
    code = status.HTTP_201_CREATED if result["created"] else status.HTTP_200_OK
    return JSONResponse(status_code=code, content=QCApprovalCreateResponse(**result).model_dump())


def qc_approval_filters(
    status: Optional[str] = None,
    approval_type: Optional[str] = None,
    machine_id: Optional[str] = None,
    category_id: Optional[str] = None,
    requested_by: Optional[str] = None,
    search: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    quality_score_min: Optional[float] = None,
    quality_score_max: Optional[float] = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
) -> QCApprovalFilters:
    return QCApprovalFilters(
        status=status,
        approval_type=approval_type,
        machine_id=machine_id,
        category_id=category_id,
        requested_by=requested_by,
        search=search,
        date_from=date_from,
        date_to=date_to,
        quality_score_min=quality_score_min,
        quality_score_max=quality_score_max,
        sort_by=sort_by,
        sort_order=sort_order,
    )


@approvals_router.get("", response_model=PaginatedResponse[QCApprovalResponse])
@require_action(ActionType.VIEW_QC_APPROVAL)
async def list_approvals(
    db: Session = Depends(get_db),
    engine: PolicyEngine = Depends(get_policy_engine),
    current_user: User = Depends(get_current_user),
    filters: QCApprovalFilters = Depends(qc_approval_filters),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
):
    return QCApprovalService(db).list_approvals(filters, page=page, per_page=per_page)


@approvals_router.get("/statistics", response_model=QCApprovalStatistics)
@require_action(ActionType.VIEW_QC_APPROVAL)
async def approval_statistics(
    db: Session = Depends(get_db),
    engine: PolicyEngine = Depends(get_policy_engine),
    current_user: User = Depends(get_current_user),
):
    return QCApprovalService(db).statistics()


@approvals_router.get("/machine/{machine_id}", response_model=PaginatedResponse[QCApprovalResponse])
@require_action(ActionType.VIEW_QC_APPROVAL)
async def list_machine_approvals(
    machine_id: str,
    db: Session = Depends(get_db),
    engine: PolicyEngine = Depends(get_policy_engine),
    current_user: User = Depends(get_current_user),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
):
    return QCApprovalService(db).list_for_machine(machine_id, page=page, per_page=per_page)


@approvals_router.get("/user/{user_id}", response_model=PaginatedResponse[QCApprovalResponse])
@require_action(ActionType.VIEW_QC_APPROVAL)
async def list_user_approvals(
    user_id: str,
    db: Session = Depends(get_db),
    engine: PolicyEngine = Depends(get_policy_engine),
    current_user: User = Depends(get_current_user),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
):
    return QCApprovalService(db).list_for_user(user_id, page=page, per_page=per_page)


@approvals_router.get("/{approval_id}", response_model=QCApprovalResponse)
@require_action(ActionType.VIEW_QC_APPROVAL)
async def get_approval(
    approval_id: str,
    db: Session = Depends(get_db),
    engine: PolicyEngine = Depends(get_policy_engine),
    current_user: User = Depends(get_current_user),
):
    return QCApprovalService(db).get_approval(approval_id)


@approvals_router.post("/{approval_id}/decide", response_model=QCApprovalResponse)
@require_action(ActionType.APPROVE_QC_APPROVAL)
async def decide_approval(
    approval_id: str,
    body: QCApprovalDecision,
    db: Session = Depends(get_db),
    engine: PolicyEngine = Depends(get_policy_engine),
    current_user: User = Depends(get_current_user),
):
    """Approve or reject a pending QC approval and mirror it onto the entry."""
    service = QCApprovalService(db)
    try:
        result = service.decide(
            approval_id,
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


@approvals_router.post("/{approval_id}/activate", response_model=QCApprovalResponse)
@require_action(ActionType.ACTIVATE_MACHINE)
async def activate_machine(
    approval_id: str,
    db: Session = Depends(get_db),
    engine: PolicyEngine = Depends(get_policy_engine),
    current_user: User = Depends(get_current_user),
):
    """Activate the machine behind an approved QC approval."""
    service = QCApprovalService(db)
    try:
        result = service.activate(approval_id, current_user.id)
        db.commit()
    except GateError:
        db.rollback()
        raise
    return result
