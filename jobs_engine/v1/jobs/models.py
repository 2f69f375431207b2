"""
Job ledger models: jobs, their results and their failure history.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from jobs_engine.infra.database import Base, UTCDateTime, utcnow


class JobStatus(str, Enum):
    """Job status enumeration."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Job(Base):
    """
    A durable unit of work.

    The row is the single source of truth for job state. Worker coordination
    happens through ``worker_id`` and ``lease_expires_at``, which are set on
    claim and cleared by every transition out of ``active``.
    """

    __tablename__ = "jobs"

    # Identity
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    broker_id: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        unique=True,
        default=lambda: uuid4().hex,
        comment="Broker-visible id correlating in-flight hints with this row",
    )

    # Routing
    queue_name: Mapped[str] = mapped_column(Text, nullable=False, default="default")
    job_type: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Processor key"
    )
    priority: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Higher is served first"
    )

    # State
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.WAITING.value,
        comment="waiting|active|completed|failed|cancelled",
    )
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    options: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    scheduled_for: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, comment="Earliest dequeue time"
    )

    # Retry accounting
    attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Attempts started (claims)"
    )
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    retry_delay: Mapped[int] = mapped_column(
        Integer, nullable=False, default=5000, comment="Base backoff in ms"
    )

    # Lease
    worker_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    process_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )

    # Execution
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # Annotations
    meta: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    # Schedule provenance
    schedule_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    schedule_fire_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="Scheduled occurrence this job materializes"
    )

    # Manual retry
    retried_as: Mapped[UUID | None] = mapped_column(
        Uuid, nullable=True, comment="Job created by a manual retry of this one"
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('waiting', 'active', 'completed', 'failed', 'cancelled')",
            name="jobs_status_check",
        ),
        CheckConstraint("progress BETWEEN 0 AND 100", name="jobs_progress_check"),
        UniqueConstraint(
            "schedule_id", "schedule_fire_at", name="uq_jobs_schedule_occurrence"
        ),
        Index("ix_jobs_claim", "queue_name", "status", "priority", "created_at"),
        Index("ix_jobs_status_lease", "status", "lease_expires_at"),
        Index("ix_jobs_type_status", "job_type", "status"),
        Index("ix_jobs_created_at", "created_at"),
    )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def timeout_ms(self, default_ms: int) -> int:
        """Execution deadline for one attempt, from options or the default."""
        timeout = (self.options or {}).get("timeout")
        return int(timeout) if timeout else default_ms


class JobResult(Base):
    """Result of the single successful execution of a job."""

    __tablename__ = "job_results"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    job_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    result: Mapped[Any] = mapped_column(JSON, nullable=True)
    duration_ms: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, server_default=func.now()
    )


class JobFailure(Base):
    """One failed attempt. Rows are appended, never updated."""

    __tablename__ = "job_failures"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    job_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    error_type: Mapped[str] = mapped_column(Text, nullable=False)
    error_message: Mapped[str] = mapped_column(Text, nullable=False)
    error_stack: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    will_retry: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    failed_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, server_default=func.now()
    )
