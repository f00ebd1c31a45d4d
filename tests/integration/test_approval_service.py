"""Integration tests for the approval request manager."""

import uuid
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from machinegate.core.approval import ApprovalFilters, ApprovalService
from machinegate.core.errors import (
    ConflictError,
    ForbiddenError,
    InternalError,
    NotFoundError,
    ValidationError,
)
from machinegate.db.base import utcnow
from machinegate.db.models import Machine
from tests.factories import (
    create_approval_request,
    create_category,
    create_machine,
    create_role,
    create_user,
)

pytestmark = pytest.mark.integration


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def service(db_session, notifier):
    return ApprovalService(db_session, notifier=notifier)


@pytest.fixture
def approver_role(db_session):
    return create_role(db_session, name="approver")


@pytest.fixture
def approver(db_session, approver_role):
    return create_user(db_session, role=approver_role)


@pytest.fixture
def requester(db_session):
    return create_user(db_session)


@pytest.fixture
def machine(db_session):
    return create_machine(db_session)


def open_request(service, machine, requester, **overrides):
    data = {
        "machine_id": str(machine.id),
        "requested_by": str(requester.id),
        "approval_type": "MACHINE_EDIT",
        "proposed_changes": {"name": "Lathe 2"},
        "original_data": {"name": "Lathe 1"},
    }
    data.update(overrides)
    return service.create_request(**data)


class TestCreateRequest:

    def test_opens_pending_request(self, service, notifier, machine, requester, approver_role):
        request = open_request(service, machine, requester, approver_roles=[str(approver_role.id)])

        assert request["status"] == "PENDING"
        assert request["priority"] == "MEDIUM"
        assert request["approver_roles"] == [str(approver_role.id)]
        assert request["decided_at"] is None
        notifier.request_created.assert_called_once()
        assert notifier.request_created.call_args.kwargs["machine"].id == machine.id

    def test_second_pending_of_same_type_conflicts(self, service, machine, requester):
        open_request(service, machine, requester)

        with pytest.raises(ConflictError) as exc_info:
            open_request(service, machine, requester)

        assert exc_info.value.code == "PENDING_APPROVAL_EXISTS"

    def test_other_type_may_be_pending_alongside(self, service, machine, requester):
        open_request(service, machine, requester)

        request = open_request(service, machine, requester, approval_type="MACHINE_DELETION")

        assert request["approval_type"] == "MACHINE_DELETION"

    def test_unknown_machine(self, service, requester):
        with pytest.raises(NotFoundError) as exc_info:
            service.create_request(
                machine_id=uuid.uuid4(),
                requested_by=requester.id,
                approval_type="MACHINE_EDIT",
                proposed_changes={},
            )

        assert exc_info.value.code == "MACHINE_NOT_FOUND"

    def test_deleted_machine_is_not_found(self, db_session, service, requester):
        gone = create_machine(db_session, deleted_at=utcnow())

        with pytest.raises(NotFoundError):
            open_request(service, gone, requester)

    def test_invalid_type_and_payload(self, service, machine, requester):
        with pytest.raises(ValidationError):
            open_request(service, machine, requester, approval_type="MACHINE_PAINTING")
        with pytest.raises(ValidationError):
            open_request(service, machine, requester, proposed_changes=["not", "a", "dict"])

    def test_unknown_approver_role(self, service, machine, requester):
        with pytest.raises(ValidationError) as exc_info:
            open_request(service, machine, requester, approver_roles=[str(uuid.uuid4())])

        assert exc_info.value.code == "INVALID_REFERENCES"

    def test_records_open_transition(self, service, machine, requester):
        request = open_request(service, machine, requester, request_notes="please")

        history = service.get_history(request["id"])

        assert len(history) == 1
        assert history[0]["from_status"] is None
        assert history[0]["to_status"] == "PENDING"
        assert history[0]["transition"] == "OPEN"
        assert history[0]["comment"] == "please"


class TestDecide:

    def test_approve_flags_machine(self, db_session, service, notifier, machine, requester, approver):
        request = open_request(service, machine, requester)

        result = service.decide(request["id"], approver.id, True, notes="looks good")

        assert result["status"] == "APPROVED"
        assert result["approved_by"] == str(approver.id)
        assert result["approver_notes"] == "looks good"
        assert result["decided_at"] is not None
        db_session.expire_all()
        assert db_session.get(Machine, machine.id).is_approved is True
        notifier.request_decided.assert_called_once()
        assert notifier.request_decided.call_args.kwargs["approved"] is True

    def test_reject_leaves_machine_unapproved(self, db_session, service, machine, requester, approver):
        request = open_request(service, machine, requester)

        result = service.decide(request["id"], approver.id, False, rejection_reason="wrong serial")

        assert result["status"] == "REJECTED"
        assert result["rejected_by"] == str(approver.id)
        assert result["rejection_reason"] == "wrong serial"
        assert result["decided_at"] is not None
        db_session.expire_all()
        assert db_session.get(Machine, machine.id).is_approved is False

    def test_second_decision_is_rejected(self, service, machine, requester, approver):
        request = open_request(service, machine, requester)
        service.decide(request["id"], approver.id, True)

        with pytest.raises(ConflictError) as exc_info:
            service.decide(request["id"], approver.id, False)

        assert exc_info.value.code == "ALREADY_PROCESSED"

    def test_approver_must_hold_listed_role(self, db_session, service, machine, requester, approver_role):
        request = open_request(service, machine, requester, approver_roles=[str(approver_role.id)])
        outsider = create_user(db_session, role=create_role(db_session))

        with pytest.raises(ForbiddenError) as exc_info:
            service.decide(request["id"], outsider.id, True)

        assert exc_info.value.code == "NOT_AN_APPROVER"
        assert service.get_request(request["id"])["status"] == "PENDING"

    def test_unknown_approver(self, service, machine, requester):
        request = open_request(service, machine, requester)

        with pytest.raises(NotFoundError) as exc_info:
            service.decide(request["id"], uuid.uuid4(), True)

        assert exc_info.value.code == "APPROVER_NOT_FOUND"

    def test_unknown_request(self, service, approver):
        with pytest.raises(NotFoundError) as exc_info:
            service.decide(uuid.uuid4(), approver.id, True)

        assert exc_info.value.code == "APPROVAL_NOT_FOUND"

    def test_machine_deleted_before_approval_rolls_back(
        self, db_session, service, notifier, machine, requester, approver
    ):
        request = open_request(service, machine, requester)
        machine.deleted_at = utcnow()
        db_session.flush()

        with pytest.raises(InternalError) as exc_info:
            service.decide(request["id"], approver.id, True)

        assert exc_info.value.code == "MACHINE_FLAG_UPDATE_FAILED"
        assert service.get_request(request["id"])["status"] == "PENDING"
        notifier.request_decided.assert_not_called()

    def test_storage_failure_is_internal(self, service, machine, requester, approver):
        request = open_request(service, machine, requester)

        with patch.object(ApprovalService, "_record_history", side_effect=OperationalError("x", {}, None)):
            with pytest.raises(InternalError) as exc_info:
                service.decide(request["id"], approver.id, False)

        assert exc_info.value.code == "PROCESS_APPROVAL_ERROR"
        assert service.get_request(request["id"])["status"] == "PENDING"

    def test_notifier_failure_does_not_fail_decision(self, db_session, machine, requester, approver):
        notifier = MagicMock()
        notifier.request_created.side_effect = Exception("webhook unreachable")
        notifier.request_decided.side_effect = Exception("webhook unreachable")
        service = ApprovalService(db_session, notifier=notifier)
        request = open_request(service, machine, requester)

        assert request["status"] == "PENDING"
        assert service.decide(request["id"], approver.id, True)["status"] == "APPROVED"
        notifier.request_decided.assert_called_once()
        db_session.expire_all()
        assert db_session.get(Machine, machine.id).is_approved is True

    def test_history_records_decision(self, service, machine, requester, approver):
        request = open_request(service, machine, requester)
        service.decide(request["id"], approver.id, False, rejection_reason="no")

        history = service.get_history(request["id"])

        assert [h["transition"] for h in history] == ["OPEN", "REJECT"]
        assert history[1]["user_id"] == str(approver.id)
        assert history[1]["comment"] == "no"


class TestCancel:

    def test_requester_cancels(self, service, machine, requester):
        request = open_request(service, machine, requester)

        result = service.cancel(request["id"], requester.id)

        assert result["status"] == "CANCELLED"
        assert result["decided_at"] is None

    def test_only_requester_may_cancel(self, service, machine, requester, approver):
        request = open_request(service, machine, requester)

        with pytest.raises(ForbiddenError) as exc_info:
            service.cancel(request["id"], approver.id)

        assert exc_info.value.code == "NOT_AUTHORIZED"

    def test_cannot_cancel_decided_request(self, service, machine, requester, approver):
        request = open_request(service, machine, requester)
        service.decide(request["id"], approver.id, True)

        with pytest.raises(ConflictError) as exc_info:
            service.cancel(request["id"], requester.id)

        assert exc_info.value.code == "ALREADY_PROCESSED"

    def test_cancelled_request_frees_the_slot(self, service, machine, requester):
        request = open_request(service, machine, requester)
        service.cancel(request["id"], requester.id)

        assert open_request(service, machine, requester)["status"] == "PENDING"


class TestUpdateRequest:

    def test_edit_pending_request(self, service, machine, requester):
        request = open_request(service, machine, requester)

        result = service.update_request(request["id"], requester.id, priority="HIGH", request_notes="urgent")

        assert result["priority"] == "HIGH"
        assert result["request_notes"] == "urgent"
        assert result["status"] == "PENDING"

    def test_edit_rejected_request_keeps_status(self, service, machine, requester, approver):
        request = open_request(service, machine, requester)
        service.decide(request["id"], approver.id, False)

        result = service.update_request(request["id"], requester.id, proposed_changes={"name": "Lathe 3"})

        assert result["status"] == "REJECTED"
        assert result["proposed_changes"] == {"name": "Lathe 3"}

    def test_approved_request_is_frozen(self, service, machine, requester, approver):
        request = open_request(service, machine, requester)
        service.decide(request["id"], approver.id, True)

        with pytest.raises(ConflictError):
            service.update_request(request["id"], requester.id, priority="LOW")

    def test_type_change_into_pending_slot_conflicts(self, service, machine, requester):
        open_request(service, machine, requester, approval_type="MACHINE_DELETION")
        request = open_request(service, machine, requester)

        with pytest.raises(ConflictError) as exc_info:
            service.update_request(request["id"], requester.id, approval_type="MACHINE_DELETION")

        assert exc_info.value.code == "PENDING_APPROVAL_EXISTS"

    def test_unknown_field(self, service, machine, requester):
        request = open_request(service, machine, requester)

        with pytest.raises(ValidationError):
            service.update_request(request["id"], requester.id, status="APPROVED")

    def test_only_requester_may_edit(self, db_session, service, machine, requester, approver_role):
        outsider = create_user(db_session, role=create_role(db_session))
        request = open_request(service, machine, requester, approver_roles=[str(approver_role.id)])

        with pytest.raises(ForbiddenError) as exc_info:
            service.update_request(request["id"], outsider.id, approver_roles=[str(outsider.role_id)])

        assert exc_info.value.code == "NOT_AUTHORIZED"
        assert service.get_request(request["id"])["approver_roles"] == [str(approver_role.id)]
        with pytest.raises(ForbiddenError) as exc_info:
            service.decide(request["id"], outsider.id, True)
        assert exc_info.value.code == "NOT_AN_APPROVER"


class TestListings:

    def test_filters(self, db_session, service, requester):
        lathes = create_category(db_session)
        lathe = create_machine(db_session, category=lathes, machine_sequence="LTH-0001")
        press = create_machine(db_session, machine_sequence="PRS-0001", extra_data={"site": "Leeds"})
        create_approval_request(db_session, machine=lathe, requester=requester, priority="HIGH")
        create_approval_request(db_session, machine=press, status="APPROVED", decided_at=utcnow())

        assert service.list_requests(ApprovalFilters(status="PENDING"))["total"] == 1
        assert service.list_requests(ApprovalFilters(priority="HIGH"))["total"] == 1
        assert service.list_requests(ApprovalFilters(category_id=lathes.id))["total"] == 1
        assert service.list_requests(ApprovalFilters(sequence="prs"))["total"] == 1
        assert service.list_requests(ApprovalFilters(requester=requester.username))["total"] == 1
        found = service.list_requests(ApprovalFilters(metadata_key="site", metadata_value="leeds"))
        assert [i["machine"]["machine_sequence"] for i in found["items"]] == ["PRS-0001"]

    def test_items_embed_display_fields(self, db_session, service, machine, requester):
        create_approval_request(db_session, machine=machine, requester=requester)

        item = service.list_requests()["items"][0]

        assert item["machine"]["name"] == machine.name
        assert item["requester"]["username"] == requester.username

    def test_date_range_is_inclusive(self, db_session, service):
        now = utcnow()
        create_approval_request(db_session, created_at=now - timedelta(days=3))
        create_approval_request(db_session, created_at=now)

        result = service.list_requests(ApprovalFilters(date_from=now - timedelta(days=1), date_to=now.date()))

        assert result["total"] == 1

    def test_pending_oldest_first(self, db_session, service):
        now = utcnow()
        newer = create_approval_request(db_session, created_at=now)
        older = create_approval_request(db_session, created_at=now - timedelta(hours=2))
        create_approval_request(db_session, status="CANCELLED")

        items = service.list_pending()["items"]

        assert [i["id"] for i in items] == [str(older.id), str(newer.id)]

    def test_user_requests_and_pagination(self, db_session, service, requester):
        for _ in range(3):
            create_approval_request(db_session, requester=requester)
        create_approval_request(db_session)

        page = service.list_user_requests(requester.id, per_page=2, page=2)

        assert page["total"] == 3
        assert page["pages"] == 2
        assert len(page["items"]) == 1

    def test_invalid_filter(self, service):
        with pytest.raises(ValidationError):
            service.list_requests(ApprovalFilters(status="MAYBE"))


class TestStatistics:

    def test_counts_latency_and_overdue(self, db_session, service):
        now = utcnow()
        create_approval_request(db_session, priority="HIGH", created_at=now - timedelta(days=8))
        create_approval_request(db_session, priority="LOW")
        create_approval_request(
            db_session, status="APPROVED", created_at=now - timedelta(hours=4), decided_at=now,
        )
        create_approval_request(
            db_session, status="REJECTED", approval_type="MACHINE_DELETION",
            created_at=now - timedelta(hours=2), decided_at=now,
        )

        stats = service.statistics()

        assert stats["total"] == 4
        assert stats["total_pending"] == 2
        assert stats["by_status"]["CANCELLED"] == 0
        assert stats["pending_by_priority"] == {"LOW": 1, "MEDIUM": 0, "HIGH": 1}
        assert stats["by_type"]["MACHINE_DELETION"] == 1
        assert stats["average_processing_hours"] == 3.0
        assert stats["overdue"] == 1

    def test_empty(self, service):
        stats = service.statistics()

        assert stats["total"] == 0
        assert stats["average_processing_hours"] is None
