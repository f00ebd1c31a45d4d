"""Quality-control entries and their secondary approval ledger."""

from .filters import QCApprovalFilters
from .sync import EntryApprovalStatus, QCApprovalSynchronizer, SyncResult
from .service import QCApprovalService, QCEntryService

__all__ = [
    "EntryApprovalStatus",
    "QCApprovalFilters",
    "QCApprovalSynchronizer",
    "SyncResult",
    "QCApprovalService",
    "QCEntryService",
]
