"""Initial schema: newsletter jobs, worker sessions, contacts and distribution lists

Revision ID: 001
Revises:
Create Date: 2024-01-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JOB_STATUSES = ("pending", "processing", "completed", "error", "cancelled")
SESSION_STATUSES = ("starting", "running", "stopping", "stopped", "crashed")


def upgrade() -> None:
    op.execute(f"""
        DO $$ BEGIN
            CREATE TYPE newsletter_job_status AS ENUM {JOB_STATUSES!r};
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)

    op.execute(f"""
        DO $$ BEGIN
            CREATE TYPE worker_session_status AS ENUM {SESSION_STATUSES!r};
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)

    op.create_table(
        "contacts",
        sa.Column("id", sa.Integer, autoincrement=True, nullable=False),
        sa.Column("first_name", sa.String(255), nullable=False, server_default=""),
        sa.Column("last_name", sa.String(255), nullable=False, server_default=""),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_contacts_email", "contacts", ["email"])

    op.create_table(
        "distribution_lists",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "distribution_list_contacts",
        sa.Column("list_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("contact_id", sa.Integer, nullable=False),
        sa.ForeignKeyConstraint(["list_id"], ["distribution_lists.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["contact_id"], ["contacts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("list_id", "contact_id"),
    )

    op.create_table(
        "newsletter_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("subject", sa.String(998), nullable=False),
        sa.Column("html_content", sa.Text, nullable=False),
        sa.Column("text_content", sa.Text, nullable=True),
        sa.Column("list_ids", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column(
            "status",
            postgresql.ENUM(*JOB_STATUSES, name="newsletter_job_status", create_type=False),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("total_recipients", sa.Integer, nullable=False, server_default="0"),
        sa.Column("sent_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer, nullable=False, server_default="3"),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(255), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_newsletter_jobs_status", "newsletter_jobs", ["status"])
    op.create_index(
        "ix_newsletter_jobs_queue_poll",
        "newsletter_jobs",
        ["status", "created_at"],
    )

    op.create_table(
        "worker_sessions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("instance_id", sa.String(255), nullable=False),
        sa.Column("hostname", sa.String(255), nullable=False),
        sa.Column("pid", sa.Integer, nullable=False),
        sa.Column(
            "status",
            postgresql.ENUM(*SESSION_STATUSES, name="worker_session_status", create_type=False),
            nullable=False,
            server_default="starting",
        ),
        sa.Column("last_heartbeat_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_job_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("current_job_subject", sa.String(998), nullable=True),
        sa.Column("jobs_processed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("jobs_failed", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "started_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("stopped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("instance_id", name="uq_worker_sessions_instance_id"),
    )
    op.create_index("ix_worker_sessions_status", "worker_sessions", ["status"])

    # Partial index for the staleness sweep and exclusivity check
    op.execute("""
        CREATE INDEX ix_worker_sessions_live
        ON worker_sessions (last_heartbeat_at)
        WHERE status IN ('starting', 'running', 'stopping')
    """)


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS ix_worker_sessions_live")
    op.drop_index("ix_worker_sessions_status")
    op.drop_table("worker_sessions")

    op.drop_index("ix_newsletter_jobs_queue_poll")
    op.drop_index("ix_newsletter_jobs_status")
    op.drop_table("newsletter_jobs")

    op.drop_table("distribution_list_contacts")
    op.drop_table("distribution_lists")
    op.drop_index("ix_contacts_email")
    op.drop_table("contacts")

    op.execute("DROP TYPE IF EXISTS worker_session_status")
    op.execute("DROP TYPE IF EXISTS newsletter_job_status")
