"""Filters and sorting for approval request listings.

Filters that touch the machine or the requester join those tables
explicitly; nothing relies on relationship loading.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional, Union
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.orm import Query, aliased

from machinegate.core.errors import ValidationError
from machinegate.core.references import parse_uuid
from machinegate.db.models import ApprovalRequest, Machine, User
from .states import ApprovalStatus, ApprovalType, RequestPriority

SORT_COLUMNS = {
    "created_at": ApprovalRequest.created_at,
    "updated_at": ApprovalRequest.updated_at,
    "decided_at": ApprovalRequest.decided_at,
    "status": ApprovalRequest.status,
    "approval_type": ApprovalRequest.approval_type,
    "priority": ApprovalRequest.priority,
}


def day_start(value: Union[date, datetime]) -> datetime:
    if isinstance(value, datetime):
        value = value.date()
    return datetime.combine(value, time.min)


@dataclass
class ApprovalFilters:
    """Filter set for ``ApprovalService.list_requests``."""
    status: Optional[str] = None
    approval_type: Optional[str] = None
    priority: Optional[str] = None
    machine_id: Optional[Union[str, UUID]] = None
    category_id: Optional[Union[str, UUID]] = None
    requested_by: Optional[Union[str, UUID]] = None
    requester: Optional[str] = None        # text over username/email
    sequence: Optional[str] = None         # substring of the machine sequence
    date_from: Optional[Union[date, datetime]] = None
    date_to: Optional[Union[date, datetime]] = None   # inclusive, whole day
    metadata_key: Optional[str] = None
    metadata_value: Optional[str] = None
    sort_by: str = "created_at"
    sort_order: str = "desc"

    def validate(self) -> None:
        """Reject unknown enum values and sort options before querying."""
        errors = []
        for field, enum_cls in (
            ("status", ApprovalStatus),
            ("approval_type", ApprovalType),
            ("priority", RequestPriority),
        ):
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
        if self.metadata_value is not None and not self.metadata_key:
            errors.append({"field": "metadata_key", "message": "metadata_key is required with metadata_value"})
        if self.date_from and self.date_to and day_start(self.date_from) > day_start(self.date_to):
            errors.append({"field": "date_from", "message": "date_from must not be after date_to"})

        if errors:
            raise ValidationError("Invalid approval filters", details=errors)

    def apply(self, query: Query) -> Query:
        """Add this filter set's conditions to an ``ApprovalRequest`` query."""
        self.validate()

        if self.status:
            query = query.filter(ApprovalRequest.status == ApprovalStatus(self.status).value)
        if self.approval_type:
            query = query.filter(ApprovalRequest.approval_type == ApprovalType(self.approval_type).value)
        if self.priority:
            query = query.filter(ApprovalRequest.priority == RequestPriority(self.priority).value)
        if self.machine_id:
            query = query.filter(ApprovalRequest.machine_id == parse_uuid(self.machine_id, "machine_id"))
        if self.requested_by:
            query = query.filter(ApprovalRequest.requested_by == parse_uuid(self.requested_by, "requested_by"))

        if self.category_id or self.sequence or self.metadata_key:
            query = query.join(Machine, Machine.id == ApprovalRequest.machine_id)
            if self.category_id:
                query = query.filter(Machine.category_id == parse_uuid(self.category_id, "category_id"))
            if self.sequence:
                query = query.filter(Machine.machine_sequence.icontains(self.sequence, autoescape=True))
            if self.metadata_key:
                value = Machine.extra_data[self.metadata_key].as_string()
                if self.metadata_value is not None:
                    query = query.filter(value.icontains(self.metadata_value, autoescape=True))
                else:
                    query = query.filter(value.is_not(None))

        if self.requester:
            requester = aliased(User)
            query = query.join(requester, requester.id == ApprovalRequest.requested_by).filter(or_(
                requester.username.icontains(self.requester, autoescape=True),
                requester.email.icontains(self.requester, autoescape=True),
            ))

        if self.date_from:
            query = query.filter(ApprovalRequest.created_at >= day_start(self.date_from))
        if self.date_to:
            query = query.filter(ApprovalRequest.created_at < day_start(self.date_to) + timedelta(days=1))

        return query

    def order(self, query: Query) -> Query:
        """Sort by the requested column, then by id for a stable page order."""
        column = SORT_COLUMNS[self.sort_by]
        primary = column.desc() if self.sort_order == "desc" else column.asc()
        return query.order_by(primary, ApprovalRequest.id.asc())
