"""Initial schema: users, applications, linked emails, sync ledger, sync state, oauth state.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )
    op.create_index(op.f("ix_users_id"), "users", ["id"])
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)

    op.create_table(
        "applications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("company", sa.String(255), nullable=False),
        sa.Column("role", sa.String(255), nullable=True),
        sa.Column("location", sa.String(255), nullable=True),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("close_reason", sa.String(32), nullable=True),
        sa.Column("job_url", sa.String(1000), nullable=True),
        sa.Column("source_email_id", sa.String(), nullable=True),
        sa.Column("applied_date", sa.DateTime(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )
    op.create_index(op.f("ix_applications_id"), "applications", ["id"])
    op.create_index(op.f("ix_applications_user_id"), "applications", ["user_id"])
    op.create_index(op.f("ix_applications_company"), "applications", ["company"])
    op.create_index(op.f("ix_applications_job_url"), "applications", ["job_url"])
    op.create_index(op.f("ix_applications_source_email_id"), "applications", ["source_email_id"])
    op.create_index("ix_applications_user_company", "applications", ["user_id", "company"])

    op.create_table(
        "application_emails",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "application_id",
            sa.Integer(),
            sa.ForeignKey("applications.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("gmail_message_id", sa.String(), nullable=False),
        sa.Column("from_address", sa.String(255), nullable=True),
        sa.Column("from_name", sa.String(255), nullable=True),
        sa.Column("subject", sa.String(500), nullable=True),
        sa.Column("snippet", sa.Text(), nullable=True),
        sa.Column("email_date", sa.DateTime(), nullable=True),
        sa.Column("email_type", sa.String(32), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("application_id", "gmail_message_id", name="uq_application_emails_app_message"),
    )
    op.create_index(op.f("ix_application_emails_id"), "application_emails", ["id"])
    op.create_index(op.f("ix_application_emails_application_id"), "application_emails", ["application_id"])
    op.create_index(op.f("ix_application_emails_gmail_message_id"), "application_emails", ["gmail_message_id"])

    op.create_table(
        "email_sync_log",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("email_id", sa.String(), nullable=False),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.Column("result", sa.String(16), nullable=False),
        sa.UniqueConstraint("user_id", "email_id", name="uq_email_sync_log_user_email"),
    )
    op.create_index(op.f("ix_email_sync_log_id"), "email_sync_log", ["id"])
    op.create_index(op.f("ix_email_sync_log_user_id"), "email_sync_log", ["user_id"])
    op.create_index(op.f("ix_email_sync_log_email_id"), "email_sync_log", ["email_id"])

    op.create_table(
        "sync_state",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.String(16), nullable=True),
        sa.Column("message", sa.String(255), nullable=True),
        sa.Column("processed", sa.Integer(), nullable=True),
        sa.Column("total", sa.Integer(), nullable=True),
        sa.Column("created", sa.Integer(), nullable=True),
        sa.Column("updated", sa.Integer(), nullable=True),
        sa.Column("skipped", sa.Integer(), nullable=True),
        sa.Column("already_processed", sa.Integer(), nullable=True),
        sa.Column("errors", sa.Integer(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("needs_auth", sa.Boolean(), nullable=True),
        sa.Column("task_id", sa.String(64), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )
    op.create_index(op.f("ix_sync_state_id"), "sync_state", ["id"])
    op.create_index(op.f("ix_sync_state_user_id"), "sync_state", ["user_id"])

    op.create_table(
        "oauth_state",
        sa.Column("state_token", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=True),
        sa.Column("redirect_url", sa.String(512), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(op.f("ix_oauth_state_user_id"), "oauth_state", ["user_id"])


def downgrade() -> None:
    op.drop_table("oauth_state")
    op.drop_table("sync_state")
    op.drop_table("email_sync_log")
    op.drop_table("application_emails")
    op.drop_table("applications")
    op.drop_table("users")
