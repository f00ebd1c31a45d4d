"""Services that sit beside the core workflows."""

from machinegate.services.notifications import ApprovalNotifier, NotificationEventType

__all__ = ["ApprovalNotifier", "NotificationEventType"]
