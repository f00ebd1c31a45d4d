"""Approval service for managing machine approval workflows.

Provides the high-level API over the approval state machine, including
persistence, the machine approval side effect, history and statistics.
Services flush; the caller owns the transaction and commits.
"""

import logging
from datetime import timedelta
from typing import Optional, Dict, Any, List, Union
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from machinegate.core.errors import (
    ConflictError,
    ForbiddenError,
    InternalError,
    NotFoundError,
    ValidationError,
)
from machinegate.core.references import ReferenceKind, ReferenceValidator, normalize_ids, parse_uuid
from machinegate.db.base import utcnow
from .filters import ApprovalFilters
from .machine import ApprovalStateMachine, NotRequesterError, TransitionError
from .states import (
    ApprovalStatus,
    ApprovalTransition,
    ApprovalType,
    RequestPriority,
    EDITABLE_STATES,
)

logger = logging.getLogger(__name__)

OVERDUE_AFTER = timedelta(days=7)

UPDATABLE_FIELDS = {"approver_roles", "approval_type", "request_notes", "proposed_changes", "priority"}


class ApprovalService:
    """
    High-level service for machine approval requests.

    Handles:
    - Opening requests, one PENDING request per machine and approval type
    - Approver decisions, with the machine approval flag flipped atomically
    - Cancellation by the requester and edits before resubmission
    - Filtered listings and statistics
    """

    def __init__(
        self,
        db: Session,
        notifier=None,
        references: Optional[ReferenceValidator] = None,
    ):
        """
        Initialize the approval service.

        Args:
            db: Database session
            notifier: Fire-and-forget notification collaborator
            references: Reference validator (defaults to one bound to ``db``)
        """
        if notifier is None:
            from machinegate.services.notifications import ApprovalNotifier
            notifier = ApprovalNotifier(db)

        self.db = db
        self.notifier = notifier
        self.references = references or ReferenceValidator(db)

    def create_request(
        self,
        *,
        machine_id: Union[str, UUID],
        requested_by: Union[str, UUID],
        approval_type: Union[ApprovalType, str],
        proposed_changes: Dict[str, Any],
        original_data: Optional[Dict[str, Any]] = None,
        request_notes: Optional[str] = None,
        approver_roles: Optional[List[str]] = None,
        priority: Union[RequestPriority, str] = RequestPriority.MEDIUM,
    ) -> Dict[str, Any]:
        """
        Open a PENDING approval request for a machine change.

        Raises:
            ValidationError: Malformed ids, enum values or payload
            NotFoundError: Machine or requester missing (MACHINE_NOT_FOUND, USER_NOT_FOUND)
            ConflictError: A PENDING request already exists (PENDING_APPROVAL_EXISTS)
        """
        from machinegate.db.models.approval import ApprovalRequest, ApprovalHistory

        approval_type = self._enum(ApprovalType, approval_type, "approval_type")
        priority = self._enum(RequestPriority, priority, "priority")
        self._validate_payload(proposed_changes, original_data)
        approver_roles = self._validate_roles(approver_roles)

        machine = self.references.require(
            ReferenceKind.MACHINE, machine_id, field="machine_id", code="MACHINE_NOT_FOUND"
        )
        requester = self.references.require(
            ReferenceKind.USER, requested_by, field="requested_by", code="USER_NOT_FOUND"
        )

        existing = self.db.query(ApprovalRequest.id).filter(
            ApprovalRequest.machine_id == machine.id,
            ApprovalRequest.approval_type == approval_type.value,
            ApprovalRequest.status == ApprovalStatus.PENDING.value,
        ).first()
        if existing:
            raise self._pending_exists(approval_type)

        request = ApprovalRequest(
            machine_id=machine.id,
            requested_by=requester.id,
            approval_type=approval_type.value,
            proposed_changes=proposed_changes,
            original_data=original_data,
            request_notes=request_notes,
            approver_roles=approver_roles,
            priority=priority.value,
            status=ApprovalStatus.PENDING.value,
        )
        try:
            with self.db.begin_nested():
                self.db.add(request)
                self.db.flush()
                self.db.add(ApprovalHistory(
                    request_id=request.id,
                    from_status=None,
                    to_status=ApprovalStatus.PENDING.value,
                    transition=ApprovalTransition.OPEN.value,
                    user_id=requester.id,
                    comment=request_notes,
                    extra_data={},
                ))
                self.db.flush()
        except IntegrityError as e:
            # Lost the race against a concurrent creator
            raise self._pending_exists(approval_type) from e

        result = self._request_to_dict(request)
        logger.info(f"Approval request {request.id} opened for machine {machine.id} ({approval_type.value})")
        self._notify("request_created", result, machine=machine, requester=requester)
        return result

    def get_request(self, request_id: Union[str, UUID]) -> Dict[str, Any]:
        """Get an approval request by ID."""
        return self._request_to_dict(self._get(request_id))

    def get_history(self, request_id: Union[str, UUID]) -> List[Dict[str, Any]]:
        """Get the status transitions recorded for a request, oldest first."""
        from machinegate.db.models.approval import ApprovalHistory

        request = self._get(request_id)
        rows = self.db.query(ApprovalHistory).filter(
            ApprovalHistory.request_id == request.id
        ).order_by(ApprovalHistory.created_at.asc(), ApprovalHistory.id.asc()).all()

        return [
            {
                "id": str(h.id),
                "from_status": h.from_status,
                "to_status": h.to_status,
                "transition": h.transition,
                "user_id": str(h.user_id) if h.user_id else None,
                "comment": h.comment,
                "extra_data": h.extra_data,
                "created_at": h.created_at.isoformat() if h.created_at else None,
            }
            for h in rows
        ]

    def decide(
        self,
        request_id: Union[str, UUID],
        approver_id: Union[str, UUID],
        approved: bool,
        *,
        notes: Optional[str] = None,
        rejection_reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Approve or reject a PENDING request.

        The status write and, on approval, the machine's ``is_approved`` flag
        are applied in one savepoint, status first. If either write fails
        both are rolled back and INTERNAL is raised.

        Raises:
            NotFoundError: APPROVAL_NOT_FOUND, APPROVER_NOT_FOUND
            ConflictError: ALREADY_PROCESSED when the request is not PENDING
            ForbiddenError: NOT_AN_APPROVER when the request is scoped to other roles
            InternalError: MACHINE_FLAG_UPDATE_FAILED
        """
        from machinegate.db.models.approval import ApprovalRequest
        from machinegate.db.models.machine import Machine

        request = self._get(request_id, for_update=True)
        transition = ApprovalTransition.APPROVE if approved else ApprovalTransition.REJECT
        workflow = ApprovalStateMachine(request.id, request.status, requester_id=request.requested_by)
        try:
            new_status = workflow.transition(transition, user_id=approver_id, comment=notes or rejection_reason)
        except TransitionError:
            raise self._already_processed(request)

        approver = self.references.require(
            ReferenceKind.USER, approver_id, field="approver_id", code="APPROVER_NOT_FOUND"
        )
        if request.approver_roles and str(approver.role_id) not in normalize_ids(request.approver_roles):
            raise ForbiddenError(
                "You are not one of the approvers for this request",
                code="NOT_AN_APPROVER",
            )

        now = utcnow()
        values: Dict[str, Any] = {
            "status": new_status.value,
            "decided_at": now,
            "approver_notes": notes,
            "updated_at": now,
        }
        if approved:
            values["approved_by"] = approver.id
        else:
            values["rejected_by"] = approver.id
            values["rejection_reason"] = rejection_reason

        try:
            with self.db.begin_nested():
                # Compare-and-swap on PENDING guards against a concurrent decide
                swapped = self.db.query(ApprovalRequest).filter(
                    ApprovalRequest.id == request.id,
                    ApprovalRequest.status == ApprovalStatus.PENDING.value,
                ).update(values, synchronize_session="fetch")
                if swapped != 1:
                    raise self._already_processed(request)

                if approved:
                    flipped = self.db.query(Machine).filter(
                        Machine.id == request.machine_id,
                        Machine.deleted_at.is_(None),
                    ).update({"is_approved": True, "updated_at": now}, synchronize_session="fetch")
                    if flipped != 1:
                        raise InternalError(
                            f"Machine {request.machine_id} could not be marked approved",
                            code="MACHINE_FLAG_UPDATE_FAILED",
                        )

                self._record_history(workflow, request.id)
                self.db.flush()
        except SQLAlchemyError as e:
            logger.exception(f"Decision on approval request {request.id} failed")
            raise InternalError(
                "Failed to record the approval decision",
                code="MACHINE_FLAG_UPDATE_FAILED" if approved else "PROCESS_APPROVAL_ERROR",
            ) from e

        self.db.refresh(request)
        result = self._request_to_dict(request)
        logger.info(f"Approval request {request.id} {new_status.value} by {approver.id}")
        self._notify("request_decided", result, approved=approved, approver=approver)
        return result

    def cancel(self, request_id: Union[str, UUID], requester_id: Union[str, UUID]) -> Dict[str, Any]:
        """
        Cancel a PENDING request. Only the original requester may cancel.

        Raises:
            NotFoundError: APPROVAL_NOT_FOUND
            ForbiddenError: NOT_AUTHORIZED for anyone but the requester
            ConflictError: ALREADY_PROCESSED once decided or cancelled
        """
        request = self._get(request_id, for_update=True)
        requester_id = parse_uuid(requester_id, "requester_id")

        workflow = ApprovalStateMachine(request.id, request.status, requester_id=request.requested_by)
        try:
            new_status = workflow.transition(ApprovalTransition.CANCEL, user_id=requester_id)
        except NotRequesterError:
            raise ForbiddenError("Only the requester can cancel this approval request", code="NOT_AUTHORIZED")
        except TransitionError:
            raise self._already_processed(request)

        request.status = new_status.value
        request.updated_at = utcnow()
        self._record_history(workflow, request.id)
        self.db.flush()

        logger.info(f"Approval request {request.id} cancelled by requester")
        return self._request_to_dict(request)

    def update_request(
        self,
        request_id: Union[str, UUID],
        editor_id: Union[str, UUID],
        **updates: Any,
    ) -> Dict[str, Any]:
        """
        Edit a PENDING or REJECTED request ahead of (re)submission.

        Only the requester may edit. Editing does not change the status.

        Raises:
            ValidationError: Unknown fields or invalid values
            ForbiddenError: NOT_AUTHORIZED for anyone but the requester
            ConflictError: ALREADY_PROCESSED once APPROVED or CANCELLED, or
                PENDING_APPROVAL_EXISTS when the new type collides
        """
        from machinegate.db.models.approval import ApprovalRequest

        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(
                "Unknown fields in update",
                details=[{"field": f, "message": "Field cannot be updated"} for f in sorted(unknown)],
            )

        request = self._get(request_id, for_update=True)
        if request.requested_by != parse_uuid(editor_id, "editor_id"):
            raise ForbiddenError("Only the requester can edit this approval request", code="NOT_AUTHORIZED")
        if ApprovalStatus(request.status) not in EDITABLE_STATES:
            raise self._already_processed(request)

        values: Dict[str, Any] = {}
        if "approval_type" in updates:
            values["approval_type"] = self._enum(ApprovalType, updates["approval_type"], "approval_type").value
        if "priority" in updates:
            values["priority"] = self._enum(RequestPriority, updates["priority"], "priority").value
        if "proposed_changes" in updates:
            self._validate_payload(updates["proposed_changes"], None)
            values["proposed_changes"] = updates["proposed_changes"]
        if "approver_roles" in updates:
            values["approver_roles"] = self._validate_roles(updates["approver_roles"])
        if "request_notes" in updates:
            values["request_notes"] = updates["request_notes"]

        new_type = values.get("approval_type", request.approval_type)
        if request.status == ApprovalStatus.PENDING.value and new_type != request.approval_type:
            clash = self.db.query(ApprovalRequest.id).filter(
                ApprovalRequest.machine_id == request.machine_id,
                ApprovalRequest.approval_type == new_type,
                ApprovalRequest.status == ApprovalStatus.PENDING.value,
                ApprovalRequest.id != request.id,
            ).first()
            if clash:
                raise self._pending_exists(ApprovalType(new_type))

        try:
            with self.db.begin_nested():
                for field, value in values.items():
                    setattr(request, field, value)
                request.updated_at = utcnow()
                self.db.flush()
        except IntegrityError as e:
            raise self._pending_exists(ApprovalType(new_type)) from e

        return self._request_to_dict(request)

    def list_requests(
        self,
        filters: Optional[ApprovalFilters] = None,
        *,
        page: int = 1,
        per_page: int = 20,
    ) -> Dict[str, Any]:
        """
        List approval requests with filters, sorting and pagination.

        Items embed the machine and requester display fields, looked up in
        one query each.
        """
        from machinegate.db.models.approval import ApprovalRequest

        if page < 1 or per_page < 1:
            raise ValidationError.for_field("page", "page and per_page must be positive")

        filters = filters or ApprovalFilters()
        query = filters.apply(self.db.query(ApprovalRequest))

        total = query.count()
        rows = filters.order(query).offset((page - 1) * per_page).limit(per_page).all()

        return {
            "items": self._with_display_fields(rows),
            "total": total,
            "page": page,
            "per_page": per_page,
            "pages": (total + per_page - 1) // per_page,
        }

    def list_pending(
        self,
        filters: Optional[ApprovalFilters] = None,
        *,
        page: int = 1,
        per_page: int = 20,
    ) -> Dict[str, Any]:
        """Get requests awaiting a decision, oldest first unless sorted otherwise."""
        filters = filters or ApprovalFilters(sort_order="asc")
        filters.status = ApprovalStatus.PENDING.value
        return self.list_requests(filters, page=page, per_page=per_page)

    def list_user_requests(
        self,
        user_id: Union[str, UUID],
        filters: Optional[ApprovalFilters] = None,
        *,
        page: int = 1,
        per_page: int = 20,
    ) -> Dict[str, Any]:
        """Get requests opened by one user."""
        filters = filters or ApprovalFilters()
        filters.requested_by = parse_uuid(user_id, "user_id")
        return self.list_requests(filters, page=page, per_page=per_page)

    def statistics(self) -> Dict[str, Any]:
        """
        Aggregate counts and latency across all approval requests.

        Returns:
            Totals by status, pending counts by priority, counts by type,
            average PENDING-to-decided latency in hours, and the number of
            requests pending longer than seven days
        """
        from machinegate.db.models.approval import ApprovalRequest

        by_status = {s.value: 0 for s in ApprovalStatus}
        for status, count in self.db.query(
            ApprovalRequest.status, func.count(ApprovalRequest.id)
        ).group_by(ApprovalRequest.status).all():
            by_status[status] = count

        pending_by_priority = {p.value: 0 for p in RequestPriority}
        for priority, count in self.db.query(
            ApprovalRequest.priority, func.count(ApprovalRequest.id)
        ).filter(
            ApprovalRequest.status == ApprovalStatus.PENDING.value
        ).group_by(ApprovalRequest.priority).all():
            pending_by_priority[priority] = count

        by_type = {t.value: 0 for t in ApprovalType}
        for approval_type, count in self.db.query(
            ApprovalRequest.approval_type, func.count(ApprovalRequest.id)
        ).group_by(ApprovalRequest.approval_type).all():
            by_type[approval_type] = count

        # Latency is computed in Python to stay portable across backends
        decided = self.db.query(ApprovalRequest.created_at, ApprovalRequest.decided_at).filter(
            ApprovalRequest.decided_at.isnot(None),
            ApprovalRequest.created_at.isnot(None),
        ).all()
        average_hours = None
        if decided:
            total_seconds = sum((d - c).total_seconds() for c, d in decided)
            average_hours = round(total_seconds / len(decided) / 3600, 2)

        overdue = self.db.query(func.count(ApprovalRequest.id)).filter(
            ApprovalRequest.status == ApprovalStatus.PENDING.value,
            ApprovalRequest.created_at < utcnow() - OVERDUE_AFTER,
        ).scalar()

        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "total_pending": by_status[ApprovalStatus.PENDING.value],
            "pending_by_priority": pending_by_priority,
            "by_type": by_type,
            "average_processing_hours": average_hours,
            "overdue": overdue or 0,
            "overdue_after_days": OVERDUE_AFTER.days,
        }

    def _get(self, request_id: Union[str, UUID], *, for_update: bool = False):
        from machinegate.db.models.approval import ApprovalRequest

        parsed = parse_uuid(request_id, "approval_id")
        query = self.db.query(ApprovalRequest).filter(ApprovalRequest.id == parsed)
        if for_update:
            query = query.with_for_update()
        request = query.first()
        if not request:
            raise NotFoundError(f"Approval request {request_id} not found", code="APPROVAL_NOT_FOUND")
        return request

    def _notify(self, event: str, request: Dict[str, Any], **kwargs: Any) -> None:
        """Hand an event to the notifier. Its failures are logged, never raised."""
        try:
            getattr(self.notifier, event)(request, **kwargs)
        except Exception:
            logger.exception(f"Notifier {event} failed for approval request {request.get('id')}")

    def _record_history(self, workflow: ApprovalStateMachine, request_id: UUID) -> None:
        from machinegate.db.models.approval import ApprovalHistory

        for record in workflow.get_history():
            user_id = record["user_id"]
            self.db.add(ApprovalHistory(
                request_id=request_id,
                from_status=record["from_state"],
                to_status=record["to_state"],
                transition=record["transition"],
                user_id=parse_uuid(user_id, "user_id") if user_id else None,
                comment=record["comment"],
                extra_data=record["metadata"],
                created_at=record["timestamp"],
            ))

    def _validate_roles(self, approver_roles: Optional[List[str]]) -> List[str]:
        if approver_roles is None:
            return []
        if not isinstance(approver_roles, (list, tuple, set)):
            raise ValidationError.for_field("approver_roles", "approver_roles must be a list")
        roles = normalize_ids(approver_roles)
        invalid = self.references.exists_all(ReferenceKind.ROLE, roles)["invalid"]
        if invalid:
            raise ValidationError.for_field(
                "approver_roles",
                f"Unknown or inactive role ids: {', '.join(invalid)}",
                code="INVALID_REFERENCES",
            )
        return roles

    @staticmethod
    def _validate_payload(proposed_changes: Any, original_data: Any) -> None:
        if not isinstance(proposed_changes, dict):
            raise ValidationError.for_field("proposed_changes", "proposed_changes must be an object")
        if original_data is not None and not isinstance(original_data, dict):
            raise ValidationError.for_field("original_data", "original_data must be an object")

    @staticmethod
    def _enum(enum_cls, value, field: str):
        try:
            return enum_cls(value)
        except ValueError:
            allowed = ", ".join(e.value for e in enum_cls)
            raise ValidationError.for_field(field, f"Invalid {field}: {value}. Must be one of: {allowed}")

    @staticmethod
    def _pending_exists(approval_type: ApprovalType) -> ConflictError:
        return ConflictError(
            f"A pending {approval_type.value} request already exists for this machine",
            code="PENDING_APPROVAL_EXISTS",
        )

    @staticmethod
    def _already_processed(request) -> ConflictError:
        return ConflictError(
            f"Approval request has already been processed (status {request.status})",
            code="ALREADY_PROCESSED",
        )

    def _with_display_fields(self, requests) -> List[Dict[str, Any]]:
        """Attach machine and requester display fields via explicit lookups."""
        from machinegate.db.models import Machine, User

        machine_ids = {r.machine_id for r in requests}
        user_ids = {r.requested_by for r in requests if r.requested_by}

        machines = {
            m.id: m for m in self.db.query(Machine).filter(Machine.id.in_(machine_ids)).all()
        } if machine_ids else {}
        users = {
            u.id: u for u in self.db.query(User).filter(User.id.in_(user_ids)).all()
        } if user_ids else {}

        items = []
        for request in requests:
            item = self._request_to_dict(request)
            machine = machines.get(request.machine_id)
            requester = users.get(request.requested_by)
            item["machine"] = {
                "id": str(machine.id),
                "name": machine.name,
                "machine_sequence": machine.machine_sequence,
                "category_id": str(machine.category_id) if machine.category_id else None,
            } if machine else None
            item["requester"] = {
                "id": str(requester.id),
                "username": requester.username,
                "email": requester.email,
            } if requester else None
            items.append(item)
        return items

    def _request_to_dict(self, request) -> Dict[str, Any]:
        """Convert an ApprovalRequest model to dictionary."""
        return {
            "id": str(request.id),
            "machine_id": str(request.machine_id),
            "approval_type": request.approval_type,
            "status": request.status,
            "priority": request.priority,
            "proposed_changes": request.proposed_changes,
            "original_data": request.original_data,
            "request_notes": request.request_notes,
            "approver_notes": request.approver_notes,
            "approver_roles": list(request.approver_roles or []),
            "requested_by": str(request.requested_by) if request.requested_by else None,
            "approved_by": str(request.approved_by) if request.approved_by else None,
            "rejected_by": str(request.rejected_by) if request.rejected_by else None,
            "decided_at": request.decided_at.isoformat() if request.decided_at else None,
            "rejection_reason": request.rejection_reason,
            "created_at": request.created_at.isoformat() if request.created_at else None,
            "updated_at": request.updated_at.isoformat() if request.updated_at else None,
        }
