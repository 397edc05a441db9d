"""Initial operations schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _created_at(name: str = "created_at") -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def _jsonb_list(name: str) -> sa.Column:
    return sa.Column(name, postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb"))


def upgrade() -> None:
    op.create_table(
        "branches",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("location", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("manager_name", sa.String(length=255), nullable=True),
        _created_at(),
        sa.UniqueConstraint("name", name="uq_branches_name"),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("username", sa.String(length=100), nullable=False),
        sa.Column("password", sa.String(length=255), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("role", sa.String(length=32), nullable=False, server_default=sa.text("'employee'")),
        sa.Column("branch_id", sa.Integer(), nullable=True),
        sa.Column("department", sa.String(length=255), nullable=True),
        sa.Column("position", sa.String(length=255), nullable=True),
        sa.Column("employee_type", sa.String(length=64), nullable=True),
        sa.Column("has_import_export_permission", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_first_login", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _jsonb_list("allowed_report_types"),
        _created_at(),
        sa.ForeignKeyConstraint(["branch_id"], ["branches.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_users_username", "users", ["username"], unique=True)
    op.create_index("ix_users_role", "users", ["role"], unique=False)
    op.create_index("ix_users_branch_id", "users", ["branch_id"], unique=False)

    op.create_table(
        "technical_teams",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("leader_id", sa.Integer(), nullable=False),
        _jsonb_list("members"),
        _created_at(),
        sa.ForeignKeyConstraint(["leader_id"], ["users.id"], ondelete="RESTRICT"),
    )
    op.create_index("ix_technical_teams_leader_id", "technical_teams", ["leader_id"], unique=False)

    op.create_table(
        "package_requests",
        sa.Column("id", sa.String(length=32), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("customer_name", sa.String(length=255), nullable=True),
        sa.Column("customer_phone", sa.String(length=32), nullable=True),
        sa.Column("customer_location", sa.String(length=255), nullable=True),
        sa.Column("priority", sa.String(length=16), nullable=False, server_default=sa.text("'medium'")),
        sa.Column("status", sa.String(length=32), nullable=False, server_default=sa.text("'NEW'")),
        sa.Column("progress_percent", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("meta", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        _created_at(),
        _created_at("last_modified"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_package_requests_user_id", "package_requests", ["user_id"], unique=False)

    op.create_table(
        "package_attachments",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("package_id", sa.String(length=32), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("url", sa.String(length=1024), nullable=False),
        sa.Column("storage_id", sa.String(length=512), nullable=True),
        sa.Column("file_name", sa.String(length=255), nullable=True),
        sa.Column("uploaded_by", sa.Integer(), nullable=True),
        _created_at("upload_date"),
        sa.ForeignKeyConstraint(["package_id"], ["package_requests.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["uploaded_by"], ["users.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_package_attachments_package_id", "package_attachments", ["package_id"], unique=False)
    op.create_index("ix_package_attachments_uploaded_by", "package_attachments", ["uploaded_by"], unique=False)

    op.create_table(
        "package_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("package_id", sa.String(length=32), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        _created_at("date"),
        sa.ForeignKeyConstraint(["package_id"], ["package_requests.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["actor_id"], ["users.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_package_logs_package_id", "package_logs", ["package_id"], unique=False)
    op.create_index("ix_package_logs_actor_id", "package_logs", ["actor_id"], unique=False)

    op.create_table(
        "reports",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("branch_id", sa.Integer(), nullable=True),
        sa.Column("report_type", sa.String(length=32), nullable=False),
        sa.Column("content", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("status", sa.String(length=64), nullable=True),
        sa.Column("evaluation", postgresql.JSONB(), nullable=True),
        _jsonb_list("modifications"),
        sa.Column("assigned_team_id", sa.Integer(), nullable=True),
        sa.Column("project_workflow_status", sa.String(length=64), nullable=True),
        _jsonb_list("admin_notes"),
        _created_at(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["branch_id"], ["branches.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["assigned_team_id"], ["technical_teams.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_reports_user_id", "reports", ["user_id"], unique=False)
    op.create_index("ix_reports_branch_id", "reports", ["branch_id"], unique=False)

    op.create_table(
        "report_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("report_id", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        _created_at("date"),
        sa.ForeignKeyConstraint(["report_id"], ["reports.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["actor_id"], ["users.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_report_logs_report_id", "report_logs", ["report_id"], unique=False)
    op.create_index("ix_report_logs_actor_id", "report_logs", ["actor_id"], unique=False)

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("link", sa.String(length=512), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _created_at(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"], unique=False)

    op.create_table(
        "fcm_tokens",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("token", sa.String(length=512), nullable=False),
        _created_at("updated_at"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_fcm_tokens_user_id", "fcm_tokens", ["user_id"], unique=False)
    op.create_index("ix_fcm_tokens_token", "fcm_tokens", ["token"], unique=True)

    op.create_table(
        "web_push_subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("endpoint", sa.String(length=1024), nullable=False),
        sa.Column("keys_auth", sa.String(length=255), nullable=True),
        sa.Column("keys_p256dh", sa.String(length=255), nullable=True),
        sa.Column("raw", postgresql.JSONB(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        _created_at(),
        _created_at("updated_at"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("user_id", "endpoint", name="uq_web_push_subscriptions_user_endpoint"),
    )
    op.create_index("ix_web_push_subscriptions_user_id", "web_push_subscriptions", ["user_id"], unique=False)

    op.create_table(
        "workflow_requests",
        sa.Column("id", sa.String(length=32), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("type", sa.String(length=64), nullable=True),
        sa.Column("priority", sa.String(length=32), nullable=True),
        sa.Column("current_stage_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        _jsonb_list("stage_history"),
        sa.Column("container_count_20ft", sa.Integer(), nullable=True),
        sa.Column("container_count_40ft", sa.Integer(), nullable=True),
        sa.Column("expected_departure_date", sa.Date(), nullable=True),
        sa.Column("departure_port", sa.String(length=255), nullable=True),
        _created_at("creation_date"),
        _created_at("last_modified"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_workflow_requests_user_id", "workflow_requests", ["user_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_workflow_requests_user_id", table_name="workflow_requests")
    op.drop_table("workflow_requests")
    op.drop_index("ix_web_push_subscriptions_user_id", table_name="web_push_subscriptions")
    op.drop_table("web_push_subscriptions")
    op.drop_index("ix_fcm_tokens_token", table_name="fcm_tokens")
    op.drop_index("ix_fcm_tokens_user_id", table_name="fcm_tokens")
    op.drop_table("fcm_tokens")
    op.drop_index("ix_notifications_user_id", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_report_logs_actor_id", table_name="report_logs")
    op.drop_index("ix_report_logs_report_id", table_name="report_logs")
    op.drop_table("report_logs")
    op.drop_index("ix_reports_branch_id", table_name="reports")
    op.drop_index("ix_reports_user_id", table_name="reports")
    op.drop_table("reports")
    op.drop_index("ix_package_logs_actor_id", table_name="package_logs")
    op.drop_index("ix_package_logs_package_id", table_name="package_logs")
    op.drop_table("package_logs")
    op.drop_index("ix_package_attachments_uploaded_by", table_name="package_attachments")
    op.drop_index("ix_package_attachments_package_id", table_name="package_attachments")
    op.drop_table("package_attachments")
    op.drop_index("ix_package_requests_user_id", table_name="package_requests")
    op.drop_table("package_requests")
    op.drop_index("ix_technical_teams_leader_id", table_name="technical_teams")
    op.drop_table("technical_teams")
    op.drop_index("ix_users_branch_id", table_name="users")
    op.drop_index("ix_users_role", table_name="users")
    op.drop_index("ix_users_username", table_name="users")
    op.drop_table("users")
    op.drop_table("branches")
