"""
Schedule ledger model: recurring job templates driven by cron expressions.
"""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, Boolean, Index, Integer, Text, Uuid, func, update
from sqlalchemy.orm import Mapped, mapped_column

from jobs_engine.infra.database import Base, UTCDateTime, utcnow


class JobSchedule(Base):
    """A job template plus a cron rule that periodically produces jobs."""

    __tablename__ = "job_schedules"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Template
    job_type: Mapped[str] = mapped_column(Text, nullable=False)
    queue_name: Mapped[str] = mapped_column(Text, nullable=False, default="default")
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    options: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    # Rule
    cron_expression: Mapped[str] = mapped_column(Text, nullable=False)
    timezone: Mapped[str] = mapped_column(Text, nullable=False, default="UTC")
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    max_runs: Mapped[int | None] = mapped_column(Integer, nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Firing state
    next_run_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_run_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_job_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    total_runs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_runs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_runs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    meta: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, server_default=func.now()
    )

    __table_args__ = (Index("ix_job_schedules_due", "enabled", "next_run_at"),)

    def runs_exhausted(self) -> bool:
        return self.max_runs is not None and self.total_runs >= self.max_runs

    def is_due(self, now: datetime) -> bool:
        """Whether the scheduler should produce a job for this schedule now."""
        if not self.enabled or self.next_run_at is None:
            return False
        if self.runs_exhausted():
            return False
        if self.end_date is not None and now >= self.end_date:
            return False
        return self.next_run_at <= now


def record_outcome_statement(schedule_id: UUID, succeeded: bool):
    """UPDATE bumping the success or failure counter of a schedule."""
    counter = JobSchedule.successful_runs if succeeded else JobSchedule.failed_runs
    return (
        update(JobSchedule)
        .where(JobSchedule.id == schedule_id)
        .values({counter: counter + 1})
        .execution_options(synchronize_session=False)
    )
