"""Factory functions for creating test database records.

Each factory creates a model instance, adds it to the session, and flushes
so that database-generated fields (id, created_at, etc.) are populated.
All fields have sensible defaults but can be overridden via keyword arguments.

Usage::

    from tests.factories import create_role, create_user

    def test_something(db_session):
        role = create_role(db_session, name="inspector")
        user = create_user(db_session, role=role)
        assert user.role.name == "inspector"
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from machinegate.db.models import (
    ApprovalRequest,
    Category,
    Department,
    Machine,
    PolicyRule,
    QCApproval,
    QCEntry,
    Role,
    User,
)


_counter = 0


def _next_id() -> int:
    """Return a monotonically increasing integer for unique default values."""
    global _counter
    _counter += 1
    return _counter


def _ids(records) -> List[str]:
    return [str(r.id) for r in records or []]


# ---------------------------------------------------------------------------
# Reference records
# ---------------------------------------------------------------------------


def create_role(session: Session, *, name: Optional[str] = None, is_active: bool = True) -> Role:
    n = _next_id()
    role = Role(name=name or f"role-{n}", is_active=is_active)
    session.add(role)
    session.flush()
    return role


def create_department(session: Session, *, name: Optional[str] = None, is_active: bool = True) -> Department:
    n = _next_id()
    department = Department(name=name or f"Department {n}", is_active=is_active)
    session.add(department)
    session.flush()
    return department


def create_category(session: Session, *, name: Optional[str] = None, is_active: bool = True) -> Category:
    n = _next_id()
    category = Category(name=name or f"Category {n}", is_active=is_active)
    session.add(category)
    session.flush()
    return category


def create_user(
    session: Session,
    *,
    role: Optional[Role] = None,
    department: Optional[Department] = None,
    username: Optional[str] = None,
    email: Optional[str] = None,
    name: Optional[str] = None,
    is_active: bool = True,
) -> User:
    n = _next_id()
    user = User(
        username=username or f"user{n}",
        email=email or f"user-{n}@example.com",
        name=name or f"Test User {n}",
        role_id=role.id if role else None,
        department_id=department.id if department else None,
        is_active=is_active,
    )
    session.add(user)
    session.flush()
    return user


def create_machine(
    session: Session,
    *,
    category: Optional[Category] = None,
    name: Optional[str] = None,
    machine_sequence: Optional[str] = None,
    extra_data: Optional[Dict[str, Any]] = None,
    is_approved: bool = False,
    deleted_at: Optional[datetime] = None,
) -> Machine:
    n = _next_id()
    machine = Machine(
        name=name or f"Machine {n}",
        machine_sequence=machine_sequence or f"SEQ-{n:04d}",
        category_id=category.id if category else None,
        extra_data=extra_data or {},
        is_approved=is_approved,
        deleted_at=deleted_at,
    )
    session.add(machine)
    session.flush()
    return machine


# ---------------------------------------------------------------------------
# Policy rules
# ---------------------------------------------------------------------------


def create_rule(
    session: Session,
    *,
    action: str = "EDIT_MACHINE",
    permission: str = "ALLOWED",
    priority: int = 0,
    name: Optional[str] = None,
    users: Optional[List[User]] = None,
    roles: Optional[List[Role]] = None,
    departments: Optional[List[Department]] = None,
    categories: Optional[List[Category]] = None,
    approver_roles: Optional[List[Role]] = None,
    max_value: Optional[float] = None,
    is_active: bool = True,
    created_at: Optional[datetime] = None,
) -> PolicyRule:
    """Insert a rule directly, bypassing the store's validation."""
    n = _next_id()
    rule = PolicyRule(
        name=name or f"Rule {n}",
        action=action,
        permission=permission,
        priority=priority,
        user_ids=_ids(users),
        role_ids=_ids(roles),
        department_ids=_ids(departments),
        category_ids=_ids(categories),
        approver_roles=_ids(approver_roles),
        max_value=max_value,
        is_active=is_active,
    )
    if created_at is not None:
        rule.created_at = created_at
    session.add(rule)
    session.flush()
    return rule


# ---------------------------------------------------------------------------
# Approval requests
# ---------------------------------------------------------------------------


def create_approval_request(
    session: Session,
    *,
    machine: Optional[Machine] = None,
    requester: Optional[User] = None,
    approval_type: str = "MACHINE_EDIT",
    status: str = "PENDING",
    priority: str = "MEDIUM",
    approver_roles: Optional[List[Role]] = None,
    proposed_changes: Optional[Dict[str, Any]] = None,
    created_at: Optional[datetime] = None,
    decided_at: Optional[datetime] = None,
) -> ApprovalRequest:
    """Insert a request in any status without going through the workflow."""
    if machine is None:
        machine = create_machine(session)
    if requester is None:
        requester = create_user(session)
    request = ApprovalRequest(
        machine_id=machine.id,
        requested_by=requester.id,
        approval_type=approval_type,
        status=status,
        priority=priority,
        approver_roles=_ids(approver_roles),
        proposed_changes=proposed_changes or {"name": "Updated"},
        decided_at=decided_at,
    )
    if created_at is not None:
        request.created_at = created_at
    session.add(request)
    session.flush()
    return request


# ---------------------------------------------------------------------------
# Quality control
# ---------------------------------------------------------------------------


def create_qc_entry(
    session: Session,
    *,
    machine: Optional[Machine] = None,
    added_by: Optional[User] = None,
    approval_status: str = "PENDING",
    quality_score: Optional[float] = 80.0,
    report_link: Optional[str] = None,
    is_active: bool = False,
    rejection_reason: Optional[str] = None,
) -> QCEntry:
    if machine is None:
        machine = create_machine(session)
    n = _next_id()
    entry = QCEntry(
        machine_id=machine.id,
        added_by=added_by.id if added_by else None,
        report_link=report_link or f"https://reports.example.com/qc/{n}",
        files=[],
        extra_data={},
        quality_score=quality_score,
        approval_status=approval_status,
        is_active=is_active,
        rejection_reason=rejection_reason,
    )
    session.add(entry)
    session.flush()
    return entry


def create_qc_approval(
    session: Session,
    *,
    entry: Optional[QCEntry] = None,
    requester: Optional[User] = None,
    status: str = "PENDING",
    approval_type: str = "MACHINE_QC_ENTRY",
    approver_roles: Optional[List[Role]] = None,
    approvers: Optional[List[User]] = None,
    inspection_date: Optional[datetime] = None,
    machine_activated: bool = False,
    created_at: Optional[datetime] = None,
) -> QCApproval:
    if entry is None:
        entry = create_qc_entry(session)
    approval = QCApproval(
        machine_id=entry.machine_id,
        qc_entry_id=entry.id,
        requested_by=requester.id if requester else None,
        approval_type=approval_type,
        status=status,
        approver_roles=_ids(approver_roles),
        approvers=_ids(approvers),
        quality_score=entry.quality_score,
        inspection_date=inspection_date,
        machine_activated=machine_activated,
    )
    if created_at is not None:
        approval.created_at = created_at
    session.add(approval)
    session.flush()
    return approval
