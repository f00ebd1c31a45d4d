"""Tests for approval notifications."""

import logging
from unittest.mock import patch

import pytest

from machinegate.core.config import Settings
from machinegate.services.notifications import ApprovalNotifier, NotificationEventType
from tests.factories import create_machine, create_role, create_user

TASK = "machinegate.workers.notification_tasks.send_notification"


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        notifications_enabled=True,
        app_base_url="https://gate.example.com/",
        approvals_path="/dispatch/approvals",
    )


@pytest.fixture
def notifier(db_session, settings):
    return ApprovalNotifier(db_session, settings=settings)


def request_dict(**overrides):
    data = {
        "id": "req-1",
        "machine_id": "m-1",
        "approval_type": "MACHINE_EDIT",
        "status": "PENDING",
        "priority": "HIGH",
        "approver_roles": [],
        "requested_by": "u-1",
        "request_notes": None,
        "approver_notes": None,
        "rejection_reason": None,
    }
    data.update(overrides)
    return data


class TestRequestCreated:

    def test_notifies_users_with_approver_roles(self, db_session, notifier):
        approver_role = create_role(db_session)
        approver = create_user(db_session, role=approver_role)
        create_user(db_session, role=approver_role, is_active=False)
        create_user(db_session)
        machine = create_machine(db_session, name="Lathe 3", machine_sequence="L-003")
        requester = create_user(db_session, name="Dana")

        with patch(TASK) as task:
            sent = notifier.request_created(
                request_dict(approver_roles=[str(approver_role.id)]), machine=machine, requester=requester,
            )

        assert sent is True
        payload = task.delay.call_args.args[0]
        assert payload["event"] == NotificationEventType.APPROVAL_PENDING
        assert payload["recipients"] == [str(approver.id)]
        assert payload["title"] == "Approval required: MACHINE_EDIT for Lathe 3"
        assert "Dana requested MACHINE_EDIT" in payload["message"]
        assert "(L-003)" in payload["message"]
        assert payload["action_url"] == "https://gate.example.com/dispatch/approvals"
        assert payload["data"]["request_id"] == "req-1"

    def test_falls_back_to_admins(self, db_session, notifier):
        admin_role = create_role(db_session, name="admin")
        admin = create_user(db_session, role=admin_role)

        with patch(TASK) as task:
            assert notifier.request_created(request_dict()) is True

        assert task.delay.call_args.args[0]["recipients"] == [str(admin.id)]

    def test_no_recipients(self, notifier, caplog):
        with patch(TASK) as task, caplog.at_level(logging.WARNING):
            assert notifier.request_created(request_dict()) is False

        task.delay.assert_not_called()
        assert "No recipients" in caplog.text

    def test_disabled(self, db_session, settings):
        settings.notifications_enabled = False
        notifier = ApprovalNotifier(db_session, settings=settings)

        with patch(TASK) as task:
            assert notifier.request_created(request_dict()) is False
        task.delay.assert_not_called()

    def test_dispatch_failure_is_swallowed(self, db_session, notifier, caplog):
        create_user(db_session, role=create_role(db_session, name="admin"))

        with patch(TASK) as task, caplog.at_level(logging.ERROR):
            task.delay.side_effect = ConnectionError("broker down")
            assert notifier.request_created(request_dict()) is False

        assert "Failed to notify approvers" in caplog.text


class TestRequestDecided:

    def test_rejection_goes_to_requester(self, notifier):
        with patch(TASK) as task:
            sent = notifier.request_decided(
                request_dict(status="REJECTED", rejection_reason="Wrong serial number"),
                approved=False,
            )

        assert sent is True
        payload = task.delay.call_args.args[0]
        assert payload["event"] == NotificationEventType.APPROVAL_REJECTED
        assert payload["recipients"] == ["u-1"]
        assert "Reason: Wrong serial number" in payload["message"]

    def test_approval_names_approver(self, db_session, notifier):
        approver = create_user(db_session, name="Sam Reviewer")

        with patch(TASK) as task:
            notifier.request_decided(request_dict(status="APPROVED"), approved=True, approver=approver)

        payload = task.delay.call_args.args[0]
        assert payload["event"] == NotificationEventType.APPROVAL_APPROVED
        assert "approved by Sam Reviewer" in payload["message"]

    def test_without_requester(self, notifier):
        with patch(TASK) as task:
            assert notifier.request_decided(request_dict(requested_by=None), approved=True) is False
        task.delay.assert_not_called()
