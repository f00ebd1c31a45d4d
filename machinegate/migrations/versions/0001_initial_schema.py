"""Initial schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19

Tables added:
- roles, departments, categories, users, machines: reference records
- policy_rules: scoped permission rules
- approval_requests, approval_history: machine approval workflow
- qc_entries, qc_approvals: quality records and their approval ledger
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create reference, policy, approval and QC tables."""

    # --- roles ---
    op.create_table(
        "roles",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_roles"),
        sa.UniqueConstraint("name", name="uq_roles_name"),
    )

    # --- departments ---
    op.create_table(
        "departments",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_departments"),
        sa.UniqueConstraint("name", name="uq_departments_name"),
    )

    # --- categories ---
    op.create_table(
        "categories",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_categories"),
        sa.UniqueConstraint("name", name="uq_categories_name"),
    )

    # --- users ---
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("username", sa.String(100), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("role_id", sa.Uuid(), nullable=True),
        sa.Column("department_id", sa.Uuid(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_users"),
        sa.ForeignKeyConstraint(["role_id"], ["roles.id"], name="fk_users_role_id"),
        sa.ForeignKeyConstraint(
            ["department_id"], ["departments.id"], name="fk_users_department_id", ondelete="SET NULL"
        ),
    )
    op.create_index("ix_users_username", "users", ["username"], unique=True)
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_role_id", "users", ["role_id"])
    op.create_index("ix_users_department_id", "users", ["department_id"])

    # --- machines ---
    op.create_table(
        "machines",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("machine_sequence", sa.String(100), nullable=True),
        sa.Column("category_id", sa.Uuid(), nullable=True),
        sa.Column("created_by", sa.Uuid(), nullable=True),
        sa.Column("extra_data", sa.JSON(), nullable=False, server_default="{}"),
        sa.Column("is_approved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_machines"),
        sa.ForeignKeyConstraint(
            ["category_id"], ["categories.id"], name="fk_machines_category_id", ondelete="SET NULL"
        ),
        sa.ForeignKeyConstraint(["created_by"], ["users.id"], name="fk_machines_created_by", ondelete="SET NULL"),
    )
    op.create_index("ix_machines_machine_sequence", "machines", ["machine_sequence"])
    op.create_index("ix_machines_category_id", "machines", ["category_id"])

    # --- policy_rules ---
    op.create_table(
        "policy_rules",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("user_ids", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("role_ids", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("department_ids", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("category_ids", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("permission", sa.String(30), nullable=False),
        sa.Column("approver_roles", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("max_value", sa.Float(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_policy_rules"),
        sa.ForeignKeyConstraint(
            ["created_by"], ["users.id"], name="fk_policy_rules_created_by", ondelete="SET NULL"
        ),
    )
    op.create_index("ix_policy_rules_action", "policy_rules", ["action"])
    op.create_index("ix_policy_rules_created_at", "policy_rules", ["created_at"])
    op.create_index(
        "uq_policy_rules_active_priority",
        "policy_rules",
        ["action", "priority"],
        unique=True,
        postgresql_where=sa.text("is_active AND priority <> 0"),
        sqlite_where=sa.text("is_active = 1 AND priority <> 0"),
    )

    # --- approval_requests ---
    op.create_table(
        "approval_requests",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("machine_id", sa.Uuid(), nullable=False),
        sa.Column("approval_type", sa.String(50), nullable=False),
        sa.Column("proposed_changes", sa.JSON(), nullable=False, server_default="{}"),
        sa.Column("original_data", sa.JSON(), nullable=True),
        sa.Column("request_notes", sa.Text(), nullable=True),
        sa.Column("approver_roles", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("priority", sa.String(20), nullable=False, server_default="MEDIUM"),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("requested_by", sa.Uuid(), nullable=True),
        sa.Column("approved_by", sa.Uuid(), nullable=True),
        sa.Column("rejected_by", sa.Uuid(), nullable=True),
        sa.Column("decided_at", sa.DateTime(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("approver_notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_approval_requests"),
        sa.ForeignKeyConstraint(
            ["machine_id"], ["machines.id"], name="fk_approval_requests_machine_id", ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(
            ["requested_by"], ["users.id"], name="fk_approval_requests_requested_by", ondelete="SET NULL"
        ),
        sa.ForeignKeyConstraint(
            ["approved_by"], ["users.id"], name="fk_approval_requests_approved_by", ondelete="SET NULL"
        ),
        sa.ForeignKeyConstraint(
            ["rejected_by"], ["users.id"], name="fk_approval_requests_rejected_by", ondelete="SET NULL"
        ),
    )
    op.create_index("ix_approval_requests_machine_id", "approval_requests", ["machine_id"])
    op.create_index("ix_approval_requests_approval_type", "approval_requests", ["approval_type"])
    op.create_index("ix_approval_requests_status", "approval_requests", ["status"])
    op.create_index("ix_approval_requests_requested_by", "approval_requests", ["requested_by"])
    op.create_index("ix_approval_requests_created_at", "approval_requests", ["created_at"])
    op.create_index(
        "uq_approval_requests_one_pending",
        "approval_requests",
        ["machine_id", "approval_type"],
        unique=True,
        postgresql_where=sa.text("status = 'PENDING'"),
        sqlite_where=sa.text("status = 'PENDING'"),
    )

    # --- approval_history ---
    op.create_table(
        "approval_history",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("request_id", sa.Uuid(), nullable=False),
        sa.Column("from_status", sa.String(20), nullable=True),
        sa.Column("to_status", sa.String(20), nullable=False),
        sa.Column("transition", sa.String(50), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=True),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("extra_data", sa.JSON(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_approval_history"),
        sa.ForeignKeyConstraint(
            ["request_id"], ["approval_requests.id"], name="fk_approval_history_request_id", ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(
            ["user_id"], ["users.id"], name="fk_approval_history_user_id", ondelete="SET NULL"
        ),
    )
    op.create_index("ix_approval_history_request_id", "approval_history", ["request_id"])
    op.create_index("ix_approval_history_created_at", "approval_history", ["created_at"])

    # --- qc_entries ---
    op.create_table(
        "qc_entries",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("machine_id", sa.Uuid(), nullable=False),
        sa.Column("added_by", sa.Uuid(), nullable=True),
        sa.Column("report_link", sa.Text(), nullable=True),
        sa.Column("files", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("extra_data", sa.JSON(), nullable=False, server_default="{}"),
        sa.Column("qc_notes", sa.Text(), nullable=True),
        sa.Column("quality_score", sa.Float(), nullable=True),
        sa.Column("inspection_date", sa.DateTime(), nullable=True),
        sa.Column("next_inspection_date", sa.DateTime(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("approval_status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_qc_entries"),
        sa.ForeignKeyConstraint(
            ["machine_id"], ["machines.id"], name="fk_qc_entries_machine_id", ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(["added_by"], ["users.id"], name="fk_qc_entries_added_by", ondelete="SET NULL"),
    )
    op.create_index("ix_qc_entries_machine_id", "qc_entries", ["machine_id"])
    op.create_index("ix_qc_entries_approval_status", "qc_entries", ["approval_status"])

    # --- qc_approvals ---
    op.create_table(
        "qc_approvals",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("machine_id", sa.Uuid(), nullable=False),
        sa.Column("qc_entry_id", sa.Uuid(), nullable=True),
        sa.Column("requested_by", sa.Uuid(), nullable=True),
        sa.Column("approval_type", sa.String(50), nullable=False, server_default="MACHINE_QC_ENTRY"),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("approver_roles", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("approvers", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("qc_notes", sa.Text(), nullable=True),
        sa.Column("quality_score", sa.Float(), nullable=True),
        sa.Column("inspection_date", sa.DateTime(), nullable=True),
        sa.Column("next_inspection_date", sa.DateTime(), nullable=True),
        sa.Column("proposed_changes", sa.JSON(), nullable=False, server_default="{}"),
        sa.Column("original_data", sa.JSON(), nullable=True),
        sa.Column("approved_by", sa.Uuid(), nullable=True),
        sa.Column("rejected_by", sa.Uuid(), nullable=True),
        sa.Column("approval_date", sa.DateTime(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("request_notes", sa.Text(), nullable=True),
        sa.Column("approver_notes", sa.Text(), nullable=True),
        sa.Column("machine_activated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("activation_date", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_qc_approvals"),
        sa.ForeignKeyConstraint(
            ["machine_id"], ["machines.id"], name="fk_qc_approvals_machine_id", ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(
            ["qc_entry_id"], ["qc_entries.id"], name="fk_qc_approvals_qc_entry_id", ondelete="SET NULL"
        ),
        sa.ForeignKeyConstraint(
            ["requested_by"], ["users.id"], name="fk_qc_approvals_requested_by", ondelete="SET NULL"
        ),
        sa.ForeignKeyConstraint(
            ["approved_by"], ["users.id"], name="fk_qc_approvals_approved_by", ondelete="SET NULL"
        ),
        sa.ForeignKeyConstraint(
            ["rejected_by"], ["users.id"], name="fk_qc_approvals_rejected_by", ondelete="SET NULL"
        ),
    )
    op.create_index("ix_qc_approvals_machine_id", "qc_approvals", ["machine_id"])
    op.create_index("ix_qc_approvals_qc_entry_id", "qc_approvals", ["qc_entry_id"])
    op.create_index("ix_qc_approvals_status", "qc_approvals", ["status"])
    op.create_index("ix_qc_approvals_created_at", "qc_approvals", ["created_at"])


def downgrade() -> None:
    """Drop all tables in reverse dependency order."""
    op.drop_table("qc_approvals")
    op.drop_table("qc_entries")
    op.drop_table("approval_history")
    op.drop_table("approval_requests")
    op.drop_table("policy_rules")
    op.drop_table("machines")
    op.drop_table("users")
    op.drop_table("categories")
    op.drop_table("departments")
    op.drop_table("roles")
