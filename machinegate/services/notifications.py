"""Notifications for approval request events.

Handles:
- Recipient resolution from a request's approver roles
- Message rendering with jinja2 templates
- Hand-off to the Celery webhook delivery task

Notification problems never fail the workflow that triggered them.
"""

import logging
from typing import Any, Dict, List, Optional
from uuid import UUID

from jinja2 import Template
from sqlalchemy.orm import Session

from machinegate.core.config import Settings, get_settings
from machinegate.db.base import utcnow

logger = logging.getLogger(__name__)


class NotificationEventType:
    APPROVAL_PENDING = "approval_pending"
    APPROVAL_APPROVED = "approval_approved"
    APPROVAL_REJECTED = "approval_rejected"


MESSAGE_TEMPLATES = {
    NotificationEventType.APPROVAL_PENDING: {
        "title": "Approval required: {{ approval_type }} for {{ machine_name }}",
        "body": (
            "{{ requester_name }} requested {{ approval_type }} for machine "
            "{{ machine_name }}{% if machine_sequence %} ({{ machine_sequence }}){% endif %}.\n"
            "Priority: {{ priority }}\n"
            "{% if request_notes %}Notes: {{ request_notes }}\n{% endif %}"
            "Review at: {{ action_url }}"
        ),
    },
    NotificationEventType.APPROVAL_APPROVED: {
        "title": "Approved: {{ approval_type }} for {{ machine_name }}",
        "body": (
            "Your {{ approval_type }} request was approved by {{ approver_name }}.\n"
            "{% if approver_notes %}Notes: {{ approver_notes }}\n{% endif %}"
            "Details at: {{ action_url }}"
        ),
    },
    NotificationEventType.APPROVAL_REJECTED: {
        "title": "Rejected: {{ approval_type }} for {{ machine_name }}",
        "body": (
            "Your {{ approval_type }} request was rejected by {{ approver_name }}.\n"
            "Reason: {{ rejection_reason or 'No reason provided' }}\n"
            "Details at: {{ action_url }}"
        ),
    },
}


def _display_name(user) -> str:
    if user is None:
        return "N/A"
    return user.name or user.username or user.email


class ApprovalNotifier:
    """
    Notification collaborator for the approval request manager.

    Every public method returns True when a message was queued and False
    otherwise; exceptions are logged, never raised.
    """

    def __init__(self, db: Optional[Session] = None, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()

    @property
    def action_url(self) -> str:
        return f"{self.settings.app_base_url.rstrip('/')}{self.settings.approvals_path}"

    def request_created(self, request: Dict[str, Any], *, machine=None, requester=None) -> bool:
        """Tell the request's approvers that a new request is waiting."""
        if not self.settings.notifications_enabled:
            return False
        try:
            recipients = self.resolve_approvers(request.get("approver_roles") or [])
            context = self._context(request, machine=machine)
            context["requester_name"] = _display_name(requester)
            return self._dispatch(NotificationEventType.APPROVAL_PENDING, request, context, recipients)
        except Exception:
            logger.exception(f"Failed to notify approvers for request {request.get('id')}")
            return False

    def request_decided(self, request: Dict[str, Any], *, approved: bool, approver=None) -> bool:
        """Tell the requester how their request was decided."""
        if not self.settings.notifications_enabled:
            return False
        event_type = (
            NotificationEventType.APPROVAL_APPROVED if approved
            else NotificationEventType.APPROVAL_REJECTED
        )
        try:
            recipients = [request["requested_by"]] if request.get("requested_by") else []
            context = self._context(request)
            context["approver_name"] = _display_name(approver)
            return self._dispatch(event_type, request, context, recipients)
        except Exception:
            logger.exception(f"Failed to notify requester for request {request.get('id')}")
            return False

    def resolve_approvers(self, approver_roles: List[str]) -> List[str]:
        """
        Active users holding one of the given roles.

        Falls back to active admin-role users when no roles are listed or
        none of the listed roles has an active member.
        """
        from machinegate.db.models import Role, User

        if self.db is None:
            return []

        users = []
        role_ids = []
        for role_id in approver_roles:
            try:
                role_ids.append(UUID(str(role_id)))
            except ValueError:
                logger.warning(f"Skipping malformed approver role id {role_id}")
        if role_ids:
            users = self.db.query(User).filter(
                User.role_id.in_(role_ids),
                User.is_active.is_(True),
            ).all()
        if not users:
            users = self.db.query(User).join(Role, Role.id == User.role_id).filter(
                Role.name == self.settings.admin_role_name,
                User.is_active.is_(True),
            ).all()
        return [str(u.id) for u in users]

    def _context(self, request: Dict[str, Any], machine=None) -> Dict[str, Any]:
        context = {
            "request_id": request.get("id"),
            "approval_type": request.get("approval_type"),
            "priority": request.get("priority"),
            "status": request.get("status"),
            "request_notes": request.get("request_notes"),
            "approver_notes": request.get("approver_notes"),
            "rejection_reason": request.get("rejection_reason"),
            "machine_name": "N/A",
            "machine_sequence": None,
            "action_url": self.action_url,
        }
        if machine is not None:
            context["machine_name"] = machine.name
            context["machine_sequence"] = machine.machine_sequence
        elif request.get("machine"):
            context["machine_name"] = request["machine"].get("name") or "N/A"
            context["machine_sequence"] = request["machine"].get("machine_sequence")
        return context

    def _dispatch(
        self,
        event_type: str,
        request: Dict[str, Any],
        context: Dict[str, Any],
        recipients: List[str],
    ) -> bool:
        if not recipients:
            logger.warning(f"No recipients for {event_type} on request {request.get('id')}")
            return False

        template = MESSAGE_TEMPLATES[event_type]
        payload = {
            "event": event_type,
            "timestamp": utcnow().isoformat(),
            "recipients": recipients,
            "title": Template(template["title"]).render(**context),
            "message": Template(template["body"]).render(**context),
            "action_url": self.action_url,
            "data": {
                "request_id": request.get("id"),
                "machine_id": request.get("machine_id"),
                "approval_type": request.get("approval_type"),
                "status": request.get("status"),
            },
        }

        from machinegate.workers.notification_tasks import send_notification

        send_notification.delay(payload)
        logger.info(f"Queued {event_type} notification for {len(recipients)} recipient(s)")
        return True
