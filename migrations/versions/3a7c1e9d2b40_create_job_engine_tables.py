"""create job engine tables

Revision ID: 3a7c1e9d2b40
Revises:
Create Date: 2026-01-30 09:12:41.518203

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3a7c1e9d2b40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "jobs",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "broker_id",
            sa.Text,
            nullable=False,
            unique=True,
            comment="Broker-visible id correlating in-flight hints with this row",
        ),
        sa.Column("queue_name", sa.Text, nullable=False, server_default="default"),
        sa.Column("job_type", sa.Text, nullable=False, comment="Processor key"),
        sa.Column(
            "priority",
            sa.Integer,
            nullable=False,
            server_default="0",
            comment="Higher is served first",
        ),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            server_default="waiting",
            comment="waiting|active|completed|failed|cancelled",
        ),
        sa.Column("payload", sa.JSON, nullable=False),
        sa.Column("options", sa.JSON, nullable=False),
        sa.Column(
            "scheduled_for",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            comment="Earliest dequeue time",
        ),
        # Retry accounting
        sa.Column(
            "attempts",
            sa.Integer,
            nullable=False,
            server_default="0",
            comment="Attempts started (claims)",
        ),
        sa.Column("max_retries", sa.Integer, nullable=False, server_default="3"),
        sa.Column(
            "retry_delay",
            sa.Integer,
            nullable=False,
            server_default="5000",
            comment="Base backoff in ms",
        ),
        # Lease
        sa.Column("worker_id", sa.Text, nullable=True),
        sa.Column("process_id", sa.Integer, nullable=True),
        sa.Column("lease_expires_at", sa.TIMESTAMP(timezone=True), nullable=True),
        # Execution
        sa.Column("progress", sa.Integer, nullable=False, server_default="0"),
        sa.Column("started_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.BigInteger, nullable=True),
        # Annotations
        sa.Column("metadata", sa.JSON, nullable=False),
        sa.Column("tags", sa.JSON, nullable=False),
        # Schedule provenance
        sa.Column("schedule_id", sa.UUID(as_uuid=True), nullable=True),
        sa.Column(
            "schedule_fire_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="Scheduled occurrence this job materializes",
        ),
        # Manual retry
        sa.Column(
            "retried_as",
            sa.UUID(as_uuid=True),
            nullable=True,
            comment="Job created by a manual retry of this one",
        ),
        # Timestamps
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        # Constraints
        sa.CheckConstraint(
            "status IN ('waiting', 'active', 'completed', 'failed', 'cancelled')",
            name="jobs_status_check",
        ),
        sa.CheckConstraint("progress BETWEEN 0 AND 100", name="jobs_progress_check"),
        sa.UniqueConstraint(
            "schedule_id", "schedule_fire_at", name="uq_jobs_schedule_occurrence"
        ),
    )

    # Claim path: eligible jobs of a queue by priority then age
    op.create_index(
        "ix_jobs_claim", "jobs", ["queue_name", "status", "priority", "created_at"]
    )
    op.create_index("ix_jobs_status_lease", "jobs", ["status", "lease_expires_at"])
    op.create_index("ix_jobs_type_status", "jobs", ["job_type", "status"])
    op.create_index("ix_jobs_created_at", "jobs", ["created_at"])

    op.create_table(
        "job_results",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "job_id",
            sa.UUID(as_uuid=True),
            sa.ForeignKey("jobs.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("result", sa.JSON, nullable=True),
        sa.Column("duration_ms", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )

    op.create_table(
        "job_failures",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "job_id",
            sa.UUID(as_uuid=True),
            sa.ForeignKey("jobs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("error_type", sa.Text, nullable=False),
        sa.Column("error_message", sa.Text, nullable=False),
        sa.Column("error_stack", sa.Text, nullable=True),
        sa.Column("attempt_number", sa.Integer, nullable=False),
        sa.Column("will_retry", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("retry_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "failed_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_job_failures_job_id", "job_failures", ["job_id"])

    op.create_table(
        "job_schedules",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.Text, nullable=False, unique=True),
        sa.Column("description", sa.Text, nullable=True),
        # Template
        sa.Column("job_type", sa.Text, nullable=False),
        sa.Column("queue_name", sa.Text, nullable=False, server_default="default"),
        sa.Column("payload", sa.JSON, nullable=False),
        sa.Column("options", sa.JSON, nullable=False),
        # Rule
        sa.Column("cron_expression", sa.Text, nullable=False),
        sa.Column("timezone", sa.Text, nullable=False, server_default="UTC"),
        sa.Column("enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("max_runs", sa.Integer, nullable=True),
        sa.Column("end_date", sa.TIMESTAMP(timezone=True), nullable=True),
        # Firing state
        sa.Column("next_run_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("last_run_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("last_job_id", sa.UUID(as_uuid=True), nullable=True),
        sa.Column("total_runs", sa.Integer, nullable=False, server_default="0"),
        sa.Column("successful_runs", sa.Integer, nullable=False, server_default="0"),
        sa.Column("failed_runs", sa.Integer, nullable=False, server_default="0"),
        sa.Column("metadata", sa.JSON, nullable=False),
        sa.Column("tags", sa.JSON, nullable=False),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_job_schedules_due", "job_schedules", ["enabled", "next_run_at"]
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("job_schedules")
    op.drop_table("job_failures")
    op.drop_table("job_results")
    op.drop_table("jobs")
