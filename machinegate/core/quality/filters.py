"""Filters and sorting for QC approval listings."""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional, Union
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.orm import Query, aliased

from machinegate.core.approval.filters import day_start
from machinegate.core.approval.states import ApprovalStatus, QCApprovalType
from machinegate.core.errors import ValidationError
from machinegate.core.references import parse_uuid
from machinegate.db.models import Machine, QCApproval, User

SORT_COLUMNS = {
    "created_at": QCApproval.created_at,
    "updated_at": QCApproval.updated_at,
    "approval_date": QCApproval.approval_date,
    "status": QCApproval.status,
    "quality_score": QCApproval.quality_score,
}


@dataclass
class QCApprovalFilters:
    """Filter set for ``QCApprovalService.list_approvals``."""
    status: Optional[str] = None
    approval_type: Optional[str] = None
    machine_id: Optional[Union[str, UUID]] = None
    category_id: Optional[Union[str, UUID]] = None
    requested_by: Optional[Union[str, UUID]] = None
    search: Optional[str] = None           # machine name, requester, notes
    date_from: Optional[Union[date, datetime]] = None
    date_to: Optional[Union[date, datetime]] = None   # inclusive, whole day
    quality_score_min: Optional[float] = None
    quality_score_max: Optional[float] = None
    sort_by: str = "created_at"
    sort_order: str = "desc"

    def validate(self) -> None:
        errors = []
        for field, enum_cls in (("status", ApprovalStatus), ("approval_type", QCApprovalType)):
            value = getattr(self, field)
            if value is not None:
                try:
                    enum_cls(value)
                except ValueError:
                    errors.append({"field": field, "message": f"Invalid {field}: {value}"})

        if self.sort_by not in SORT_COLUMNS:
            errors.append({"field": "sort_by", "message": f"Cannot sort by {self.sort_by}"})
        if self.sort_order not in ("asc", "desc"):
            errors.append({"field": "sort_order", "message": "sort_order must be asc or desc"})
        if (
            self.quality_score_min is not None
            and self.quality_score_max is not None
            and self.quality_score_min > self.quality_score_max
        ):
            errors.append({
                "field": "quality_score_min",
                "message": "quality_score_min must not exceed quality_score_max",
            })
        if self.date_from and self.date_to and day_start(self.date_from) > day_start(self.date_to):
            errors.append({"field": "date_from", "message": "date_from must not be after date_to"})

        if errors:
            raise ValidationError("Invalid QC approval filters", details=errors)

    def apply(self, query: Query) -> Query:
        """Add this filter set's conditions to a ``QCApproval`` query."""
        self.validate()

        if self.status:
            query = query.filter(QCApproval.status == self.status)
        if self.approval_type:
            query = query.filter(QCApproval.approval_type == self.approval_type)
        if self.machine_id:
            query = query.filter(QCApproval.machine_id == parse_uuid(self.machine_id, "machine_id"))
        if self.requested_by:
            query = query.filter(QCApproval.requested_by == parse_uuid(self.requested_by, "requested_by"))
        if self.quality_score_min is not None:
            query = query.filter(QCApproval.quality_score >= self.quality_score_min)
        if self.quality_score_max is not None:
            query = query.filter(QCApproval.quality_score <= self.quality_score_max)

        if self.category_id or self.search:
            query = query.join(Machine, Machine.id == QCApproval.machine_id)
            if self.category_id:
                query = query.filter(Machine.category_id == parse_uuid(self.category_id, "category_id"))

        if self.search:
            requester = aliased(User)
            query = query.outerjoin(requester, requester.id == QCApproval.requested_by).filter(or_(
                Machine.name.icontains(self.search, autoescape=True),
                requester.name.icontains(self.search, autoescape=True),
                requester.username.icontains(self.search, autoescape=True),
                QCApproval.qc_notes.icontains(self.search, autoescape=True),
                QCApproval.request_notes.icontains(self.search, autoescape=True),
            ))

        if self.date_from:
            query = query.filter(QCApproval.created_at >= day_start(self.date_from))
        if self.date_to:
            query = query.filter(QCApproval.created_at < day_start(self.date_to) + timedelta(days=1))

        return query

    def order(self, query: Query) -> Query:
        column = SORT_COLUMNS[self.sort_by]
        primary = column.desc() if self.sort_order == "desc" else column.asc()
        return query.order_by(primary, QCApproval.id.asc())
