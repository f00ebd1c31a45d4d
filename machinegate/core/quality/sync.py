"""Keeps the QC approval ledger consistent with QC entries.

When an entry's ``approval_status`` changes, every ledger row linked to the
entry is updated in one bulk statement. Failures here are logged and
returned as a warning; they never undo the entry update that triggered them.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from machinegate.core.approval.machine import ApprovalStateMachine
from machinegate.core.approval.states import ApprovalStatus
from machinegate.db.base import utcnow

logger = logging.getLogger(__name__)

SYNC_FAILED = "QC_APPROVAL_SYNC_FAILED"

# Entry fields copied onto ledger rows when they change
COPIED_FIELDS = ("quality_score", "inspection_date", "next_inspection_date")


class EntryApprovalStatus(str, Enum):
    """The QC entry's own three-state approval field."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


STATUS_MAP = {
    EntryApprovalStatus.PENDING: ApprovalStatus.PENDING,
    EntryApprovalStatus.APPROVED: ApprovalStatus.APPROVED,
    EntryApprovalStatus.REJECTED: ApprovalStatus.REJECTED,
}


@dataclass
class SyncResult:
    """Outcome of one synchronization pass."""
    updated: int = 0
    warning: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.warning is None


class QCApprovalSynchronizer:
    """Mirrors QC entry status changes into the QC approval ledger."""

    def __init__(self, db: Session):
        self.db = db

    def sync_entry_status(self, entry, changes: Optional[Mapping[str, Any]] = None) -> SyncResult:
        """
        Apply the entry's current approval status to all linked ledger rows.

        Args:
            entry: The QC entry, already updated and flushed
            changes: Fields changed in the triggering update; copied fields
                are written when present here, including explicit None

        Returns:
            SyncResult with the number of rows updated, or a warning
        """
        changes = changes or {}
        status = STATUS_MAP[EntryApprovalStatus(entry.approval_status)]
        now = utcnow()

        values: Dict[str, Any] = {"status": status.value, "updated_at": now}
        for field in COPIED_FIELDS:
            if field in changes:
                values[field] = changes[field]

        if status is ApprovalStatus.APPROVED:
            values["approval_date"] = now
            if entry.is_active:
                values["machine_activated"] = True
                values["activation_date"] = now
        elif status is ApprovalStatus.REJECTED and entry.rejection_reason:
            values["rejection_reason"] = entry.rejection_reason

        try:
            with self.db.begin_nested():
                updated = self._apply(entry.id, values)
        except SQLAlchemyError as e:
            logger.warning(f"QC ledger sync failed for entry {entry.id}: {e}", exc_info=True)
            return SyncResult(warning={
                "code": SYNC_FAILED,
                "message": "QC entry saved, but linked QC approvals could not be updated",
            })

        logger.info(f"Synced {updated} QC approval(s) for entry {entry.id} to {status.value}")
        return SyncResult(updated=updated)

    def reopen_after_gated_edit(self, entry, changed_fields: Iterable[str], *, user_id=None) -> SyncResult:
        """
        Return a rejected entry and its rejected ledger rows to PENDING.

        Fires the guarded REOPEN_AFTER_GATED_EDIT transition; the caller only
        invokes this when a gated attribute of a REJECTED entry was edited
        without an explicit new approval status.

        Raises:
            TransitionError: If the entry is not REJECTED or no gated field changed
        """
        workflow = ApprovalStateMachine(entry.id, STATUS_MAP[EntryApprovalStatus(entry.approval_status)])
        workflow.reopen_after_gated_edit(changed_fields, user_id=user_id)

        entry.approval_status = EntryApprovalStatus.PENDING.value
        entry.rejection_reason = None
        entry.updated_at = utcnow()
        self.db.flush()

        values = {
            "status": ApprovalStatus.PENDING.value,
            "rejected_by": None,
            "rejection_reason": None,
            "updated_at": utcnow(),
        }
        try:
            with self.db.begin_nested():
                updated = self._apply(entry.id, values, only_status=ApprovalStatus.REJECTED)
        except SQLAlchemyError as e:
            logger.warning(f"QC ledger reopen failed for entry {entry.id}: {e}", exc_info=True)
            return SyncResult(warning={
                "code": SYNC_FAILED,
                "message": "QC entry reopened, but linked QC approvals could not be reset",
            })

        logger.info(f"Reopened {updated} rejected QC approval(s) for entry {entry.id} after gated edit")
        return SyncResult(updated=updated)

    def _apply(
        self,
        entry_id: UUID,
        values: Dict[str, Any],
        only_status: Optional[ApprovalStatus] = None,
    ) -> int:
        """Bulk-update the ledger rows linked to an entry."""
        from machinegate.db.models.qc import QCApproval

        query = self.db.query(QCApproval).filter(QCApproval.qc_entry_id == entry_id)
        if only_status is not None:
            query = query.filter(QCApproval.status == only_status.value)
        return query.update(values, synchronize_session="fetch")
