"""QC entry and QC approval services.

``QCEntryService`` updates inspection records and drives the ledger
synchronizer. ``QCApprovalService`` opens ledger rows for entries and
records approver decisions, mirroring them back onto the entry. It also
serves ledger listings and statistics and the manual machine activation.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from machinegate.core.approval.machine import ApprovalStateMachine, TransitionError
from machinegate.core.approval.states import (
    ApprovalStatus,
    ApprovalTransition,
    QCApprovalType,
    GATED_QC_FIELDS,
)
from machinegate.core.errors import (
    ConflictError,
    ForbiddenError,
    InternalError,
    NotFoundError,
    ValidationError,
)
from machinegate.core.references import ReferenceKind, ReferenceValidator, normalize_ids, parse_uuid
from machinegate.db.base import utcnow
from .filters import QCApprovalFilters
from .sync import EntryApprovalStatus, QCApprovalSynchronizer

logger = logging.getLogger(__name__)

ENTRY_FIELDS = {
    "report_link",
    "files",
    "extra_data",
    "qc_notes",
    "quality_score",
    "inspection_date",
    "next_inspection_date",
    "approval_status",
    "rejection_reason",
    "is_active",
}


def _validate_quality(changes: Dict[str, Any]) -> None:
    errors = []
    score = changes.get("quality_score")
    if score is not None:
        if isinstance(score, bool) or not isinstance(score, (int, float)) or not 0 <= score <= 100:
            errors.append({"field": "quality_score", "message": "Quality score must be between 0 and 100"})
    for field in ("inspection_date", "next_inspection_date"):
        value = changes.get(field)
        if value is not None and not isinstance(value, datetime):
            errors.append({"field": field, "message": f"{field} must be a datetime"})
    if errors:
        raise ValidationError("Invalid QC data", details=errors)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class QCEntryService:
    """Updates QC entries and keeps their ledger rows in step."""

    def __init__(self, db: Session, synchronizer: Optional[QCApprovalSynchronizer] = None):
        self.db = db
        self.synchronizer = synchronizer or QCApprovalSynchronizer(db)

    def get_entry(self, entry_id: Union[str, UUID]) -> Dict[str, Any]:
        return self._entry_to_dict(self._get(entry_id))

    def update_entry(
        self,
        entry_id: Union[str, UUID],
        *,
        updated_by: Optional[Union[str, UUID]] = None,
        **changes: Any,
    ) -> Dict[str, Any]:
        """
        Update a QC entry.

        Approving an entry also activates it. A change of ``approval_status``
        is mirrored onto every linked ledger row; editing a gated field of a
        REJECTED entry without a new status reopens it. Ledger failures come
        back as warnings and do not undo the entry update.

        Returns:
            ``{"entry": {...}, "warnings": [...]}``
        """
        unknown = set(changes) - ENTRY_FIELDS
        if unknown:
            raise ValidationError(
                "Unknown fields in update",
                details=[{"field": f, "message": "Field cannot be updated"} for f in sorted(unknown)],
            )
        _validate_quality(changes)
        if "approval_status" in changes:
            try:
                changes["approval_status"] = EntryApprovalStatus(changes["approval_status"]).value
            except ValueError:
                raise ValidationError.for_field(
                    "approval_status", f"Invalid approval_status: {changes['approval_status']}"
                )

        entry = self._get(entry_id)
        previous_status = entry.approval_status
        changed_gated = [
            f for f in GATED_QC_FIELDS
            if f in changes and changes[f] != getattr(entry, f)
        ]
        status_changed = (
            "approval_status" in changes and changes["approval_status"] != previous_status
        )

        for field, value in changes.items():
            setattr(entry, field, value)
        if entry.approval_status == EntryApprovalStatus.APPROVED.value:
            entry.is_active = True
        entry.updated_at = utcnow()
        self.db.flush()

        warnings: List[Dict[str, Any]] = []
        if status_changed:
            result = self.synchronizer.sync_entry_status(entry, changes)
            if result.warning:
                warnings.append(result.warning)
        elif (
            previous_status == EntryApprovalStatus.REJECTED.value
            and changed_gated
            and "approval_status" not in changes
        ):
            result = self.synchronizer.reopen_after_gated_edit(entry, changed_gated, user_id=updated_by)
            if result.warning:
                warnings.append(result.warning)

        logger.info(f"QC entry {entry.id} updated: {', '.join(sorted(changes))}")
        return {"entry": self._entry_to_dict(entry), "warnings": warnings}

    def _get(self, entry_id: Union[str, UUID]):
        from machinegate.db.models.qc import QCEntry

        parsed = parse_uuid(entry_id, "entry_id")
        entry = self.db.query(QCEntry).filter(QCEntry.id == parsed).first()
        if not entry:
            raise NotFoundError(f"QC entry {entry_id} not found", code="QC_ENTRY_NOT_FOUND")
        return entry

    @staticmethod
    def _entry_to_dict(entry) -> Dict[str, Any]:
        return {
            "id": str(entry.id),
            "machine_id": str(entry.machine_id),
            "added_by": str(entry.added_by) if entry.added_by else None,
            "report_link": entry.report_link,
            "files": list(entry.files or []),
            "extra_data": entry.extra_data,
            "qc_notes": entry.qc_notes,
            "quality_score": entry.quality_score,
            "inspection_date": _iso(entry.inspection_date),
            "next_inspection_date": _iso(entry.next_inspection_date),
            "is_active": entry.is_active,
            "approval_status": entry.approval_status,
            "rejection_reason": entry.rejection_reason,
            "created_at": _iso(entry.created_at),
            "updated_at": _iso(entry.updated_at),
        }


class QCApprovalService:
    """Opens and decides QC ledger rows."""

    def __init__(
        self,
        db: Session,
        references: Optional[ReferenceValidator] = None,
        synchronizer: Optional[QCApprovalSynchronizer] = None,
    ):
        self.db = db
        self.references = references or ReferenceValidator(db)
        self.synchronizer = synchronizer or QCApprovalSynchronizer(db)

    def create_for_entry(
        self,
        entry_id: Union[str, UUID],
        requested_by: Union[str, UUID],
        *,
        approval_type: Union[QCApprovalType, str] = QCApprovalType.MACHINE_QC_ENTRY,
        approver_roles: Optional[List[str]] = None,
        approvers: Optional[List[str]] = None,
        request_notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Open a ledger row for a QC entry.

        If the machine already has a PENDING ledger row it is returned
        unchanged with ``created`` set to False.
        """
        from machinegate.db.models.qc import QCApproval, QCEntry

        try:
            approval_type = QCApprovalType(approval_type)
        except ValueError:
            raise ValidationError.for_field("approval_type", f"Invalid approval_type: {approval_type}")

        entry = self.db.query(QCEntry).filter(QCEntry.id == parse_uuid(entry_id, "entry_id")).first()
        if not entry:
            raise NotFoundError(f"QC entry {entry_id} not found", code="QC_ENTRY_NOT_FOUND")
        requester = self.references.require(
            ReferenceKind.USER, requested_by, field="requested_by", code="USER_NOT_FOUND"
        )

        approver_roles = normalize_ids(approver_roles)
        approvers = normalize_ids(approvers)
        for field, kind, ids in (
            ("approver_roles", ReferenceKind.ROLE, approver_roles),
            ("approvers", ReferenceKind.USER, approvers),
        ):
            invalid = self.references.exists_all(kind, ids)["invalid"]
            if invalid:
                raise ValidationError.for_field(
                    field, f"Unknown or inactive ids: {', '.join(invalid)}", code="INVALID_REFERENCES"
                )

        existing = self.db.query(QCApproval).filter(
            QCApproval.machine_id == entry.machine_id,
            QCApproval.status == ApprovalStatus.PENDING.value,
        ).order_by(QCApproval.created_at.asc()).first()
        if existing:
            return {"approval": self._approval_to_dict(existing), "created": False}

        approval = QCApproval(
            machine_id=entry.machine_id,
            qc_entry_id=entry.id,
            requested_by=requester.id,
            approval_type=approval_type.value,
            status=ApprovalStatus.PENDING.value,
            approver_roles=approver_roles,
            approvers=approvers,
            qc_notes=entry.qc_notes,
            quality_score=entry.quality_score,
            inspection_date=entry.inspection_date,
            next_inspection_date=entry.next_inspection_date,
            proposed_changes={"report_link": entry.report_link, "files": list(entry.files or [])},
            request_notes=request_notes,
        )
        self.db.add(approval)
        self.db.flush()

        logger.info(f"QC approval {approval.id} opened for entry {entry.id}")
        return {"approval": self._approval_to_dict(approval), "created": True}

    def get_approval(self, approval_id: Union[str, UUID]) -> Dict[str, Any]:
        return self._approval_to_dict(self._get(approval_id))

    def decide(
        self,
        approval_id: Union[str, UUID],
        approver_id: Union[str, UUID],
        approved: bool,
        *,
        notes: Optional[str] = None,
        rejection_reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Approve or reject a PENDING ledger row and mirror it onto the entry.

        Approval activates the entry and stamps the activation on the row;
        rejection deactivates the entry and records the reason on both.
        Other rows linked to the entry are then synchronized to its new
        status; failures there come back in ``warnings``.
        """
        from machinegate.db.models.qc import QCApproval, QCEntry

        approval = self._get(approval_id, for_update=True)
        workflow = ApprovalStateMachine(approval.id, approval.status, requester_id=approval.requested_by)
        transition = ApprovalTransition.APPROVE if approved else ApprovalTransition.REJECT
        try:
            new_status = workflow.transition(transition, user_id=approver_id, comment=notes or rejection_reason)
        except TransitionError:
            raise ConflictError(
                f"QC approval has already been processed (status {approval.status})",
                code="ALREADY_PROCESSED",
            )

        approver = self.references.require(
            ReferenceKind.USER, approver_id, field="approver_id", code="APPROVER_NOT_FOUND"
        )
        if approval.approvers and str(approver.id) not in normalize_ids(approval.approvers):
            raise ForbiddenError("You are not an approver for this QC approval", code="NOT_AN_APPROVER")
        if approval.approver_roles and str(approver.role_id) not in normalize_ids(approval.approver_roles):
            raise ForbiddenError("You are not an approver for this QC approval", code="NOT_AN_APPROVER")

        now = utcnow()
        values: Dict[str, Any] = {"status": new_status.value, "approver_notes": notes, "updated_at": now}
        entry_values: Dict[str, Any] = {"updated_at": now}
        if approved:
            values.update(approved_by=approver.id, approval_date=now, machine_activated=True, activation_date=now)
            entry_values.update(is_active=True, approval_status=EntryApprovalStatus.APPROVED.value)
        else:
            values.update(rejected_by=approver.id, rejection_reason=rejection_reason)
            entry_values.update(
                is_active=False,
                approval_status=EntryApprovalStatus.REJECTED.value,
                rejection_reason=rejection_reason,
            )

        try:
            with self.db.begin_nested():
                swapped = self.db.query(QCApproval).filter(
                    QCApproval.id == approval.id,
                    QCApproval.status == ApprovalStatus.PENDING.value,
                ).update(values, synchronize_session="fetch")
                if swapped != 1:
                    raise ConflictError("QC approval has already been processed", code="ALREADY_PROCESSED")
                if approval.qc_entry_id:
                    self.db.query(QCEntry).filter(
                        QCEntry.id == approval.qc_entry_id
                    ).update(entry_values, synchronize_session="fetch")
        except SQLAlchemyError as e:
            logger.exception(f"Decision on QC approval {approval.id} failed")
            raise InternalError("Failed to record the QC decision", code="PROCESS_APPROVAL_ERROR") from e

        # The entry's status changed, so every other row linked to it follows
        warnings: List[Dict[str, Any]] = []
        entry = self.db.get(QCEntry, approval.qc_entry_id) if approval.qc_entry_id else None
        if entry is not None:
            self.db.refresh(entry)
            result = self.synchronizer.sync_entry_status(entry)
            if result.warning:
                warnings.append(result.warning)

        self.db.refresh(approval)
        logger.info(f"QC approval {approval.id} {new_status.value} by {approver.id}")
        return {**self._approval_to_dict(approval), "warnings": warnings}

    def list_approvals(
        self,
        filters: Optional[QCApprovalFilters] = None,
        *,
        page: int = 1,
        per_page: int = 20,
    ) -> Dict[str, Any]:
        """List QC approvals with filters, sorting and pagination."""
        from machinegate.db.models.qc import QCApproval

        if page < 1 or per_page < 1:
            raise ValidationError.for_field("page", "page and per_page must be positive")

        filters = filters or QCApprovalFilters()
        query = filters.apply(self.db.query(QCApproval))

        total = query.count()
        rows = filters.order(query).offset((page - 1) * per_page).limit(per_page).all()

        return {
            "items": [self._approval_to_dict(row) for row in rows],
            "total": total,
            "page": page,
            "per_page": per_page,
            "pages": (total + per_page - 1) // per_page,
        }

    def list_for_machine(
        self, machine_id: Union[str, UUID], *, page: int = 1, per_page: int = 20
    ) -> Dict[str, Any]:
        """A machine's QC approvals, newest first."""
        filters = QCApprovalFilters(machine_id=parse_uuid(machine_id, "machine_id"))
        return self.list_approvals(filters, page=page, per_page=per_page)

    def list_for_user(
        self, user_id: Union[str, UUID], *, page: int = 1, per_page: int = 20
    ) -> Dict[str, Any]:
        """QC approvals requested by one user, newest first."""
        filters = QCApprovalFilters(requested_by=parse_uuid(user_id, "user_id"))
        return self.list_approvals(filters, page=page, per_page=per_page)

    def statistics(self) -> Dict[str, Any]:
        """Counts by status plus the number of rows whose machine was activated."""
        from machinegate.db.models.qc import QCApproval

        by_status = {s.value: 0 for s in ApprovalStatus}
        for status, count in self.db.query(
            QCApproval.status, func.count(QCApproval.id)
        ).group_by(QCApproval.status).all():
            by_status[status] = count

        activated = self.db.query(func.count(QCApproval.id)).filter(
            QCApproval.machine_activated.is_(True)
        ).scalar()

        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "activated": activated or 0,
        }

    def activate(self, approval_id: Union[str, UUID], user_id: Union[str, UUID]) -> Dict[str, Any]:
        """
        Activate the machine behind an APPROVED ledger row that is not yet active.

        Sets ``machine_activated`` and ``activation_date`` on the row and
        activates the linked entry.

        Raises:
            ValidationError: MACHINE_NOT_APPROVED_FOR_ACTIVATION unless APPROVED
            ConflictError: MACHINE_ALREADY_ACTIVATED
        """
        from machinegate.db.models.qc import QCApproval, QCEntry

        approval = self._get(approval_id, for_update=True)
        user = self.references.require(ReferenceKind.USER, user_id, field="user_id", code="USER_NOT_FOUND")
        if approval.status != ApprovalStatus.APPROVED.value:
            raise ValidationError(
                "Machine can only be activated after approval",
                code="MACHINE_NOT_APPROVED_FOR_ACTIVATION",
            )
        if approval.machine_activated:
            raise ConflictError("Machine is already activated", code="MACHINE_ALREADY_ACTIVATED")

        now = utcnow()
        try:
            with self.db.begin_nested():
                swapped = self.db.query(QCApproval).filter(
                    QCApproval.id == approval.id,
                    QCApproval.status == ApprovalStatus.APPROVED.value,
                    QCApproval.machine_activated.is_(False),
                ).update(
                    {"machine_activated": True, "activation_date": now, "updated_at": now},
                    synchronize_session="fetch",
                )
                if swapped != 1:
                    raise ConflictError("Machine is already activated", code="MACHINE_ALREADY_ACTIVATED")
                if approval.qc_entry_id:
                    self.db.query(QCEntry).filter(QCEntry.id == approval.qc_entry_id).update(
                        {"is_active": True, "updated_at": now}, synchronize_session="fetch"
                    )
        except SQLAlchemyError as e:
            logger.exception(f"Activation of QC approval {approval.id} failed")
            raise InternalError("Failed to activate the machine", code="ACTIVATION_FAILED") from e

        self.db.refresh(approval)
        logger.info(f"Machine {approval.machine_id} activated from QC approval {approval.id} by {user.id}")
        return self._approval_to_dict(approval)

    def _get(self, approval_id: Union[str, UUID], *, for_update: bool = False):
        from machinegate.db.models.qc import QCApproval

        query = self.db.query(QCApproval).filter(QCApproval.id == parse_uuid(approval_id, "approval_id"))
        if for_update:
            query = query.with_for_update()
        approval = query.first()
        if not approval:
            raise NotFoundError(f"QC approval {approval_id} not found", code="QC_APPROVAL_NOT_FOUND")
        return approval

    @staticmethod
    def _approval_to_dict(approval) -> Dict[str, Any]:
        return {
            "id": str(approval.id),
            "machine_id": str(approval.machine_id),
            "qc_entry_id": str(approval.qc_entry_id) if approval.qc_entry_id else None,
            "requested_by": str(approval.requested_by) if approval.requested_by else None,
            "approval_type": approval.approval_type,
            "status": approval.status,
            "approver_roles": list(approval.approver_roles or []),
            "approvers": list(approval.approvers or []),
            "qc_notes": approval.qc_notes,
            "quality_score": approval.quality_score,
            "inspection_date": _iso(approval.inspection_date),
            "next_inspection_date": _iso(approval.next_inspection_date),
            "approved_by": str(approval.approved_by) if approval.approved_by else None,
            "rejected_by": str(approval.rejected_by) if approval.rejected_by else None,
            "approval_date": _iso(approval.approval_date),
            "rejection_reason": approval.rejection_reason,
            "request_notes": approval.request_notes,
            "approver_notes": approval.approver_notes,
            "machine_activated": approval.machine_activated,
            "activation_date": _iso(approval.activation_date),
            "created_at": _iso(approval.created_at),
            "updated_at": _iso(approval.updated_at),
        }
