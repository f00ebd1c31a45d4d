"""Integration tests for the HTTP API.

Setup data is committed before requests are made: a router rolls back on a
domain error, which would otherwise discard uncommitted fixtures.
"""

import uuid

import pytest

from tests.factories import (
    create_approval_request,
    create_machine,
    create_qc_approval,
    create_qc_entry,
    create_role,
    create_rule,
    create_user,
)

pytestmark = pytest.mark.integration


@pytest.fixture
def admin(db_session):
    user = create_user(db_session, role=create_role(db_session, name="admin"))
    db_session.commit()
    return user


@pytest.fixture
def member(db_session):
    user = create_user(db_session, role=create_role(db_session, name="member"))
    db_session.commit()
    return user


def grant(db_session, action, user, permission="ALLOWED", **kwargs):
    create_rule(db_session, action=action, permission=permission, users=[user], **kwargs)
    db_session.commit()


class TestAuthentication:

    def test_missing_token(self, client):
        response = client.get("/api/permissions/me")

        assert response.status_code == 401

    def test_garbage_token(self, client):
        response = client.get("/api/permissions/me", headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401

    def test_inactive_user(self, client, db_session, auth_headers):
        user = create_user(db_session, is_active=False)
        db_session.commit()

        response = client.get("/api/permissions/me", headers=auth_headers(user))

        assert response.status_code == 401

    def test_health(self, client):
        assert client.get("/health").json()["status"] == "healthy"


class TestPermissions:

    def test_my_permissions_lists_every_action(self, client, db_session, member, auth_headers):
        grant(db_session, "EDIT_MACHINE", member)

        response = client.get("/api/permissions/me", headers=auth_headers(member))

        assert response.status_code == 200
        permissions = response.json()["permissions"]
        assert permissions["EDIT_MACHINE"]["allowed"] is True
        assert permissions["DELETE_MACHINE"]["permission"] == "DENIED"
        assert "APPROVE_QC_APPROVAL" in permissions

    def test_evaluate_for_caller(self, client, db_session, member, auth_headers):
        grant(db_session, "CREATE_MACHINE", member, max_value=100)

        within = client.post(
            "/api/permissions/evaluate",
            json={"action": "CREATE_MACHINE", "numeric_value": 50},
            headers=auth_headers(member),
        )
        above = client.post(
            "/api/permissions/evaluate",
            json={"action": "CREATE_MACHINE", "numeric_value": 150},
            headers=auth_headers(member),
        )

        assert within.json()["allowed"] is True
        assert above.json()["allowed"] is False

    def test_evaluate_for_unknown_user(self, client, member, auth_headers):
        response = client.post(
            "/api/permissions/evaluate",
            json={"action": "EDIT_MACHINE", "user_id": str(uuid.uuid4())},
            headers=auth_headers(member),
        )

        assert response.status_code == 200
        assert response.json()["permission"] == "DENIED"

    def test_evaluate_unknown_action(self, client, member, auth_headers):
        response = client.post(
            "/api/permissions/evaluate",
            json={"action": "LAUNCH_ROCKET"},
            headers=auth_headers(member),
        )

        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"


class TestPolicyRules:

    def test_admin_creates_rule(self, client, admin, auth_headers):
        response = client.post(
            "/api/policy-rules",
            json={"name": "Open editing", "action": "EDIT_MACHINE", "permission": "ALLOWED", "priority": 2},
            headers=auth_headers(admin),
        )

        assert response.status_code == 201
        assert response.json()["created_by"] == str(admin.id)

    def test_non_admin_forbidden(self, client, member, auth_headers):
        response = client.get("/api/policy-rules", headers=auth_headers(member))

        assert response.status_code == 403

    def test_duplicate_priority_is_conflict(self, client, admin, auth_headers):
        body = {"name": "A", "action": "EDIT_MACHINE", "permission": "ALLOWED", "priority": 7}
        client.post("/api/policy-rules", json=body, headers=auth_headers(admin))

        response = client.post("/api/policy-rules", json={**body, "name": "B"}, headers=auth_headers(admin))

        assert response.status_code == 409
        assert response.json()["code"] == "DUPLICATE_PRIORITY"

    def test_update_and_disable(self, client, admin, auth_headers):
        created = client.post(
            "/api/policy-rules",
            json={"name": "A", "action": "EDIT_MACHINE", "permission": "ALLOWED"},
            headers=auth_headers(admin),
        ).json()

        patched = client.patch(
            f"/api/policy-rules/{created['id']}", json={"permission": "DENIED"}, headers=auth_headers(admin)
        )
        deleted = client.delete(f"/api/policy-rules/{created['id']}", headers=auth_headers(admin))

        assert patched.json()["permission"] == "DENIED"
        assert deleted.json()["is_active"] is False

    def test_rule_takes_effect_immediately(self, client, admin, member, auth_headers):
        evaluate = {"action": "DELETE_MACHINE"}
        before = client.post("/api/permissions/evaluate", json=evaluate, headers=auth_headers(member))

        client.post(
            "/api/policy-rules",
            json={"name": "Members delete", "action": "DELETE_MACHINE", "permission": "ALLOWED",
                  "user_ids": [str(member.id)]},
            headers=auth_headers(admin),
        )
        after = client.post("/api/permissions/evaluate", json=evaluate, headers=auth_headers(member))

        assert before.json()["allowed"] is False
        assert after.json()["allowed"] is True

    def test_cache_invalidate(self, client, admin, auth_headers, rule_cache):
        response = client.post(
            "/api/policy-rules/cache/invalidate", json={"action": "EDIT_MACHINE"}, headers=auth_headers(admin)
        )
        bad = client.post(
            "/api/policy-rules/cache/invalidate", json={"action": "NOPE"}, headers=auth_headers(admin)
        )

        assert response.status_code == 200
        assert bad.status_code == 400

    def test_missing_rule(self, client, admin, auth_headers):
        response = client.get(f"/api/policy-rules/{uuid.uuid4()}", headers=auth_headers(admin))

        assert response.status_code == 404
        assert response.json()["code"] == "RULE_NOT_FOUND"


class TestApprovals:

    def test_create_then_duplicate(self, client, db_session, member, auth_headers):
        machine = create_machine(db_session)
        db_session.commit()
        body = {"machine_id": str(machine.id), "approval_type": "MACHINE_EDIT", "proposed_changes": {"a": 1}}

        first = client.post("/api/approvals", json=body, headers=auth_headers(member))
        second = client.post("/api/approvals", json=body, headers=auth_headers(member))

        assert first.status_code == 201
        assert first.json()["requested_by"] == str(member.id)
        assert second.status_code == 409
        assert second.json()["code"] == "PENDING_APPROVAL_EXISTS"

    def test_decide_requires_policy(self, client, db_session, member, auth_headers):
        request = create_approval_request(db_session)
        db_session.commit()

        response = client.post(
            f"/api/approvals/{request.id}/decide", json={"approved": True}, headers=auth_headers(member)
        )

        assert response.status_code == 403
        assert response.json()["code"] == "ACTION_NOT_ALLOWED"

    def test_requires_approval_does_not_open_endpoint(self, client, db_session, member, auth_headers):
        request = create_approval_request(db_session)
        grant(db_session, "APPROVE_MACHINE", member, permission="REQUIRES_APPROVAL",
              approver_roles=[create_role(db_session)])

        response = client.post(
            f"/api/approvals/{request.id}/decide", json={"approved": True}, headers=auth_headers(member)
        )

        assert response.status_code == 403
        assert response.json()["code"] == "APPROVAL_REQUIRED"

    def test_decide_twice(self, client, db_session, member, auth_headers):
        request = create_approval_request(db_session)
        grant(db_session, "APPROVE_MACHINE", member)

        first = client.post(
            f"/api/approvals/{request.id}/decide", json={"approved": True}, headers=auth_headers(member)
        )
        second = client.post(
            f"/api/approvals/{request.id}/decide", json={"approved": False}, headers=auth_headers(member)
        )

        assert first.json()["status"] == "APPROVED"
        assert second.status_code == 409
        assert second.json()["code"] == "ALREADY_PROCESSED"

    def test_cancel_by_other_user(self, client, db_session, member, auth_headers):
        request = create_approval_request(db_session)
        db_session.commit()

        response = client.post(f"/api/approvals/{request.id}/cancel", headers=auth_headers(member))

        assert response.status_code == 403
        assert response.json()["code"] == "NOT_AUTHORIZED"

    def test_outsider_cannot_rescope_approvers(self, client, db_session, member, auth_headers):
        request = create_approval_request(db_session, approver_roles=[create_role(db_session)])
        grant(db_session, "APPROVE_MACHINE", member)

        patched = client.patch(
            f"/api/approvals/{request.id}",
            json={"approver_roles": [str(member.role_id)]},
            headers=auth_headers(member),
        )
        decided = client.post(
            f"/api/approvals/{request.id}/decide", json={"approved": True}, headers=auth_headers(member)
        )

        assert patched.status_code == 403
        assert patched.json()["code"] == "NOT_AUTHORIZED"
        assert decided.status_code == 403
        assert decided.json()["code"] == "NOT_AN_APPROVER"

    def test_requester_edits_own_request(self, client, db_session, member, auth_headers):
        request = create_approval_request(db_session, requester=member)
        db_session.commit()

        response = client.patch(
            f"/api/approvals/{request.id}", json={"priority": "HIGH"}, headers=auth_headers(member)
        )

        assert response.status_code == 200
        assert response.json()["priority"] == "HIGH"

    def test_listings(self, client, db_session, member, auth_headers):
        create_approval_request(db_session, requester=member)
        create_approval_request(db_session, status="APPROVED")
        db_session.commit()

        pending = client.get("/api/approvals/pending", headers=auth_headers(member)).json()
        mine = client.get("/api/approvals/mine", headers=auth_headers(member)).json()
        stats = client.get("/api/approvals/statistics", headers=auth_headers(member)).json()

        assert pending["total"] == 1
        assert mine["items"][0]["requester"]["id"] == str(member.id)
        assert stats["by_status"]["APPROVED"] == 1

    def test_invalid_filter(self, client, member, auth_headers):
        response = client.get("/api/approvals?status=MAYBE", headers=auth_headers(member))

        assert response.status_code == 400

    def test_history(self, client, db_session, member, auth_headers):
        machine = create_machine(db_session)
        db_session.commit()
        created = client.post(
            "/api/approvals",
            json={"machine_id": str(machine.id), "approval_type": "MACHINE_DELETION", "proposed_changes": {}},
            headers=auth_headers(member),
        ).json()
        client.post(f"/api/approvals/{created['id']}/cancel", headers=auth_headers(member))

        history = client.get(f"/api/approvals/{created['id']}/history", headers=auth_headers(member)).json()

        assert [h["transition"] for h in history] == ["OPEN", "CANCEL"]


class TestQC:

    def test_entry_update_syncs_ledger(self, client, db_session, member, auth_headers):
        entry = create_qc_entry(db_session)
        row = create_qc_approval(db_session, entry=entry)
        grant(db_session, "EDIT_QC_APPROVAL", member)
        grant(db_session, "VIEW_QC_APPROVAL", member)

        response = client.patch(
            f"/api/qc-entries/{entry.id}", json={"approval_status": "APPROVED"}, headers=auth_headers(member)
        )
        ledger = client.get(f"/api/qc-approvals/{row.id}", headers=auth_headers(member))

        assert response.status_code == 200
        assert response.json()["warnings"] == []
        assert response.json()["entry"]["is_active"] is True
        assert ledger.json()["status"] == "APPROVED"

    def test_create_returns_existing_pending(self, client, db_session, member, auth_headers):
        entry = create_qc_entry(db_session)
        grant(db_session, "CREATE_QC_APPROVAL", member)

        first = client.post(f"/api/qc-approvals/entries/{entry.id}", json={}, headers=auth_headers(member))
        second = client.post(f"/api/qc-approvals/entries/{entry.id}", json={}, headers=auth_headers(member))

        assert first.status_code == 201
        assert second.status_code == 200
        assert second.json()["created"] is False
        assert second.json()["approval"]["id"] == first.json()["approval"]["id"]

    def test_decide(self, client, db_session, member, auth_headers):
        row = create_qc_approval(db_session)
        grant(db_session, "APPROVE_QC_APPROVAL", member)

        response = client.post(
            f"/api/qc-approvals/{row.id}/decide",
            json={"approved": False, "rejection_reason": "missing report"},
            headers=auth_headers(member),
        )

        assert response.status_code == 200
        assert response.json()["rejection_reason"] == "missing report"

    def test_guarded_without_rule(self, client, db_session, member, auth_headers):
        row = create_qc_approval(db_session)
        db_session.commit()

        response = client.get(f"/api/qc-approvals/{row.id}", headers=auth_headers(member))

        assert response.status_code == 403

    def test_listing_and_statistics(self, client, db_session, member, auth_headers):
        machine = create_machine(db_session)
        create_qc_approval(db_session, entry=create_qc_entry(db_session, machine=machine))
        create_qc_approval(db_session, status="APPROVED", machine_activated=True)
        grant(db_session, "VIEW_QC_APPROVAL", member)

        listed = client.get("/api/qc-approvals?status=PENDING", headers=auth_headers(member))
        stats = client.get("/api/qc-approvals/statistics", headers=auth_headers(member))
        for_machine = client.get(f"/api/qc-approvals/machine/{machine.id}", headers=auth_headers(member))
        bad = client.get("/api/qc-approvals?sort_by=nope", headers=auth_headers(member))

        assert listed.json()["total"] == 1
        assert stats.json()["activated"] == 1
        assert for_machine.json()["items"][0]["machine_id"] == str(machine.id)
        assert bad.status_code == 400

    def test_activate(self, client, db_session, member, auth_headers):
        row = create_qc_approval(db_session, status="APPROVED")
        pending = create_qc_approval(db_session)
        grant(db_session, "ACTIVATE_MACHINE", member)

        activated = client.post(f"/api/qc-approvals/{row.id}/activate", headers=auth_headers(member))
        again = client.post(f"/api/qc-approvals/{row.id}/activate", headers=auth_headers(member))
        not_approved = client.post(f"/api/qc-approvals/{pending.id}/activate", headers=auth_headers(member))

        assert activated.status_code == 200
        assert activated.json()["machine_activated"] is True
        assert again.status_code == 409
        assert not_approved.json()["code"] == "MACHINE_NOT_APPROVED_FOR_ACTIVATION"
