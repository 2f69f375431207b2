"""
Job ledger: the only component that writes job rows.

Every mutation is one transaction guarded by a compare-and-swap on the row's
status (and, for a lease holder, on ``worker_id``), so concurrent workers,
reapers and API callers can never both win a transition.
"""

import os
import traceback
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from jobs_engine.config.logging import get_logger
from jobs_engine.config.settings import Settings
from jobs_engine.infra.database import utcnow
from jobs_engine.v1.core.exceptions import (
    ConflictError,
    JobExecutionError,
    LeaseLostError,
    PersistenceError,
    ValidationError,
)
from jobs_engine.v1.jobs.models import Job, JobFailure, JobResult, JobStatus
from jobs_engine.v1.jobs.schemas import JobCreate
from jobs_engine.v1.schedules.models import record_outcome_statement

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def describe_error(error: BaseException) -> tuple[str, str, str | None]:
    """Return ``(error_type, message, stack)`` for the failure history."""
    if isinstance(error, JobExecutionError):
        stack = error.stack
        if stack is None and error.__cause__ is not None:
            stack = "".join(traceback.format_exception(error.__cause__))
        return error.error_type, error.message, stack

    stack = "".join(traceback.format_exception(error))
    return type(error).__name__, str(error) or type(error).__name__, stack


class JobLedger:
    """Durable record of every job and its lifecycle."""

    CLAIM_ATTEMPTS = 5

    def __init__(self, settings: Settings, clock: Clock = utcnow):
        self.settings = settings
        self.clock = clock

    def now(self) -> datetime:
        return self.clock()

    @asynccontextmanager
    async def _transaction(
        self, session: AsyncSession, operation: str, **context: Any
    ) -> AsyncIterator[None]:
        """Roll back on any error and surface database failures as PersistenceError.

        Driver connection errors (refused, reset) arrive as ``OSError`` rather
        than wrapped DBAPI errors and are treated the same way.
        """
        try:
            yield
        except (IntegrityError, ConflictError, JobExecutionError, ValidationError):
            await session.rollback()
            raise
        except (SQLAlchemyError, OSError) as e:
            await session.rollback()
            logger.error(
                "Ledger write failed", operation=operation, error=str(e), **context
            )
            raise PersistenceError(
                f"Job ledger {operation} failed", details={"error": str(e), **context}
            ) from e

    async def create(
        self,
        session: AsyncSession,
        job_create: JobCreate,
        schedule_id: UUID | None = None,
        schedule_fire_at: datetime | None = None,
        retry_of: UUID | None = None,
    ) -> Job:
        """Persist a new job in ``waiting``.

        With ``retry_of`` the original job is marked ``retried_as`` the new one
        in the same transaction, so each original is retried at most once.

        Raises:
            ValidationError: if the job's timeout does not fit inside the lease
            IntegrityError: if the scheduled occurrence was already materialized
            ConflictError: if ``retry_of`` was already retried
        """
        options = job_create.options
        timeout_ms = options.timeout or self.settings.job_timeout_ms
        if timeout_ms >= self.settings.lease_ms:
            raise ValidationError(
                "Job timeout must be shorter than the worker lease",
                details={"timeout_ms": timeout_ms, "lease_ms": self.settings.lease_ms},
            )

        now = self.now()
        job = Job(
            id=uuid4(),
            broker_id=uuid4().hex,
            queue_name=job_create.queue,
            job_type=job_create.type,
            priority=options.priority,
            status=JobStatus.WAITING.value,
            payload=job_create.payload,
            options=options.model_dump(by_alias=True, exclude_none=True),
            scheduled_for=now + timedelta(milliseconds=options.delay),
            attempts=0,
            max_retries=(
                options.max_retries
                if options.max_retries is not None
                else self.settings.job_max_retries
            ),
            retry_delay=(
                options.retry_delay
                if options.retry_delay is not None
                else self.settings.job_retry_delay_ms
            ),
            progress=0,
            meta=job_create.metadata,
            tags=job_create.tags,
            schedule_id=schedule_id,
            schedule_fire_at=schedule_fire_at,
            created_at=now,
            updated_at=now,
        )

        async with self._transaction(session, "create", job_type=job_create.type):
            if retry_of is not None:
                marked = await session.execute(
                    update(Job)
                    .where(Job.id == retry_of, Job.retried_as.is_(None))
                    .values(retried_as=job.id, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if marked.rowcount != 1:
                    raise ConflictError(
                        "Job was already retried",
                        details={"job_id": str(retry_of)},
                    )
            session.add(job)
            await session.commit()

        logger.info(
            "Job created",
            job_id=str(job.id),
            job_type=job.job_type,
            queue=job.queue_name,
            priority=job.priority,
            scheduled_for=job.scheduled_for.isoformat(),
        )
        return job

    async def get(self, session: AsyncSession, job_id: UUID) -> Job | None:
        return await session.get(Job, job_id, populate_existing=True)

    async def claim(
        self,
        session: AsyncSession,
        queue_name: str,
        worker_id: str,
        lease_duration: timedelta,
        process_id: int | None = None,
    ) -> Job | None:
        """
        Atomically take the next eligible waiting job of a queue.

        Eligible means ``scheduled_for <= now`` with attempts left. Ordering is
        priority descending, then creation time ascending. The candidate row is
        locked with ``FOR UPDATE SKIP LOCKED`` where the backend supports it and
        the transition is a compare-and-swap on ``status = 'waiting'``, so two
        concurrent claims never return the same job.
        """
        process_id = process_id if process_id is not None else os.getpid()

        async with self._transaction(session, "claim", queue=queue_name):
            for _ in range(self.CLAIM_ATTEMPTS):
                now = self.now()
                candidate_id = await session.scalar(
                    select(Job.id)
                    .where(
                        Job.queue_name == queue_name,
                        Job.status == JobStatus.WAITING.value,
                        Job.scheduled_for <= now,
                        Job.attempts < Job.max_retries + 1,
                    )
                    .order_by(Job.priority.desc(), Job.created_at.asc())
                    .limit(1)
                    .with_for_update(skip_locked=True)
                )

                if candidate_id is None:
                    await session.commit()
                    return None

                result = await session.execute(
                    update(Job)
                    .where(
                        Job.id == candidate_id,
                        Job.status == JobStatus.WAITING.value,
                    )
                    .values(
                        status=JobStatus.ACTIVE.value,
                        worker_id=worker_id,
                        process_id=process_id,
                        lease_expires_at=now + lease_duration,
                        started_at=now,
                        attempts=Job.attempts + 1,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )

                if result.rowcount == 1:
                    job = await session.get(Job, candidate_id, populate_existing=True)
                    await session.commit()
                    logger.info(
                        "Job claimed",
                        job_id=str(job.id),
                        job_type=job.job_type,
                        queue=queue_name,
                        worker_id=worker_id,
                        attempt=job.attempts,
                    )
                    return job

                # Another worker won the race for this row
                await session.rollback()

        return None

    async def complete(
        self,
        session: AsyncSession,
        job_id: UUID,
        worker_id: str,
        result: Any,
        duration_ms: int,
    ) -> Job:
        """Mark an active job completed and store its single JobResult.

        Raises:
            LeaseLostError: if the worker no longer holds the job
        """
        now = self.now()
        async with self._transaction(session, "complete", job_id=str(job_id)):
            updated = await session.execute(
                update(Job)
                .where(
                    Job.id == job_id,
                    Job.status == JobStatus.ACTIVE.value,
                    Job.worker_id == worker_id,
                )
                .values(
                    status=JobStatus.COMPLETED.value,
                    progress=100,
                    completed_at=now,
                    duration_ms=duration_ms,
                    lease_expires_at=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount != 1:
                raise LeaseLostError(
                    f"Worker {worker_id} no longer holds job {job_id}",
                    details={"job_id": str(job_id), "worker_id": worker_id},
                )

            session.add(
                JobResult(
                    job_id=job_id,
                    result=result,
                    duration_ms=duration_ms,
                    created_at=now,
                )
            )
            await self._record_schedule_outcome(session, job_id, succeeded=True)
            job = await session.get(Job, job_id, populate_existing=True)
            await session.commit()

        logger.info(
            "Job completed",
            job_id=str(job_id),
            job_type=job.job_type,
            duration_ms=duration_ms,
            attempt=job.attempts,
        )
        return job

    async def fail(
        self,
        session: AsyncSession,
        job_id: UUID,
        worker_id: str | None,
        error: BaseException,
        attempt_number: int,
        will_retry: bool,
        retry_at: datetime | None = None,
        duration_ms: int | None = None,
    ) -> JobFailure:
        """
        Append a JobFailure for one attempt.

        With ``will_retry`` false the job moves to terminal ``failed``;
        otherwise it stays active until ``requeue`` hands it back.

        Raises:
            LeaseLostError: if the worker no longer holds the job
        """
        now = self.now()
        error_type, message, stack = describe_error(error)

        values: dict[str, Any] = {"updated_at": now}
        if not will_retry:
            values.update(
                status=JobStatus.FAILED.value,
                completed_at=now,
                lease_expires_at=None,
                duration_ms=duration_ms,
            )

        conditions = [Job.id == job_id, Job.status == JobStatus.ACTIVE.value]
        if worker_id is not None:
            conditions.append(Job.worker_id == worker_id)

        async with self._transaction(session, "fail", job_id=str(job_id)):
            updated = await session.execute(
                update(Job)
                .where(*conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount != 1:
                raise LeaseLostError(
                    f"Worker {worker_id} no longer holds job {job_id}",
                    details={"job_id": str(job_id), "worker_id": worker_id},
                )

            failure = JobFailure(
                job_id=job_id,
                error_type=error_type,
                error_message=message,
                error_stack=stack,
                attempt_number=attempt_number,
                will_retry=will_retry,
                retry_at=retry_at if will_retry else None,
                failed_at=now,
            )
            session.add(failure)
            if not will_retry:
                await self._record_schedule_outcome(session, job_id, succeeded=False)
            await session.commit()

        log = logger.warning if will_retry else logger.error
        log(
            "Job attempt failed",
            job_id=str(job_id),
            error_type=error_type,
            error=message,
            attempt=attempt_number,
            will_retry=will_retry,
            retry_at=retry_at.isoformat() if retry_at and will_retry else None,
        )
        return failure

    async def requeue(
        self,
        session: AsyncSession,
        job_id: UUID,
        worker_id: str | None,
        delay: timedelta,
    ) -> Job:
        """Return an active job to ``waiting`` with ``scheduled_for = now + delay``.

        Raises:
            LeaseLostError: if the worker no longer holds the job
        """
        now = self.now()
        conditions = [Job.id == job_id, Job.status == JobStatus.ACTIVE.value]
        if worker_id is not None:
            conditions.append(Job.worker_id == worker_id)

        async with self._transaction(session, "requeue", job_id=str(job_id)):
            updated = await session.execute(
                update(Job)
                .where(*conditions)
                .values(
                    status=JobStatus.WAITING.value,
                    scheduled_for=now + delay,
                    worker_id=None,
                    process_id=None,
                    lease_expires_at=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount != 1:
                raise LeaseLostError(
                    f"Worker {worker_id} no longer holds job {job_id}",
                    details={"job_id": str(job_id), "worker_id": worker_id},
                )
            job = await session.get(Job, job_id, populate_existing=True)
            await session.commit()

        logger.info(
            "Job requeued",
            job_id=str(job_id),
            delay_ms=int(delay.total_seconds() * 1000),
            scheduled_for=job.scheduled_for.isoformat(),
        )
        return job

    async def reap_expired_leases(
        self, session: AsyncSession, queue_name: str | None = None
    ) -> int:
        """
        Recover active jobs whose lease expired without a terminal update.

        The stalled attempt was counted when it was claimed, so reaping does
        not add to ``attempts``; it appends a LeaseLost failure and returns the
        job to ``waiting``, or to ``failed`` once the attempt budget is spent.
        """
        now = self.now()
        query = select(Job.id, Job.attempts, Job.max_retries, Job.worker_id).where(
            Job.status == JobStatus.ACTIVE.value,
            Job.lease_expires_at < now,
        )
        if queue_name is not None:
            query = query.where(Job.queue_name == queue_name)

        reaped = 0
        async with self._transaction(session, "reap", queue=queue_name):
            rows = (
                await session.execute(query.with_for_update(skip_locked=True))
            ).all()

            for row in rows:
                exhausted = row.attempts >= row.max_retries + 1
                values: dict[str, Any] = {
                    "worker_id": None,
                    "process_id": None,
                    "lease_expires_at": None,
                    "updated_at": now,
                }
                if exhausted:
                    values.update(status=JobStatus.FAILED.value, completed_at=now)
                else:
                    values.update(status=JobStatus.WAITING.value, scheduled_for=now)

                updated = await session.execute(
                    update(Job)
                    .where(
                        Job.id == row.id,
                        Job.status == JobStatus.ACTIVE.value,
                        Job.lease_expires_at < now,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if updated.rowcount != 1:
                    continue

                session.add(
                    JobFailure(
                        job_id=row.id,
                        error_type=LeaseLostError.error_type,
                        error_message=(
                            f"Lease held by worker {row.worker_id} expired "
                            "without a terminal update"
                        ),
                        attempt_number=row.attempts,
                        will_retry=not exhausted,
                        retry_at=None if exhausted else now,
                        failed_at=now,
                    )
                )
                if exhausted:
                    await self._record_schedule_outcome(
                        session, row.id, succeeded=False
                    )
                reaped += 1

            await session.commit()

        if reaped:
            logger.warning("Reaped expired leases", queue=queue_name, count=reaped)
        return reaped

    async def renew_leases(
        self,
        session: AsyncSession,
        worker_id: str,
        job_ids: list[UUID],
        lease_duration: timedelta,
    ) -> int:
        """Extend the leases a live worker still holds (heartbeat)."""
        if not job_ids:
            return 0

        now = self.now()
        async with self._transaction(session, "renew_leases", worker_id=worker_id):
            updated = await session.execute(
                update(Job)
                .where(
                    Job.id.in_(job_ids),
                    Job.status == JobStatus.ACTIVE.value,
                    Job.worker_id == worker_id,
                )
                .values(lease_expires_at=now + lease_duration, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return updated.rowcount

    async def update_progress(
        self, session: AsyncSession, job_id: UUID, worker_id: str, progress: int
    ) -> bool:
        now = self.now()
        async with self._transaction(session, "update_progress", job_id=str(job_id)):
            updated = await session.execute(
                update(Job)
                .where(
                    Job.id == job_id,
                    Job.status == JobStatus.ACTIVE.value,
                    Job.worker_id == worker_id,
                )
                .values(progress=max(0, min(100, progress)), updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return updated.rowcount == 1

    async def cancel(self, session: AsyncSession, job_id: UUID) -> bool:
        """Cancel a waiting or active job. A running processor's outcome is discarded."""
        now = self.now()
        async with self._transaction(session, "cancel", job_id=str(job_id)):
            updated = await session.execute(
                update(Job)
                .where(
                    Job.id == job_id,
                    Job.status.in_(
                        [JobStatus.WAITING.value, JobStatus.ACTIVE.value]
                    ),
                )
                .values(
                    status=JobStatus.CANCELLED.value,
                    completed_at=now,
                    lease_expires_at=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        cancelled = updated.rowcount == 1
        if cancelled:
            logger.info("Job cancelled", job_id=str(job_id))
        return cancelled

    async def waiting_job_ids(
        self, session: AsyncSession, queue_name: str, limit: int | None = None
    ) -> list[UUID]:
        """Waiting jobs of a queue in claim order; used to rebuild the broker."""
        query = (
            select(Job.id)
            .where(
                Job.queue_name == queue_name,
                Job.status == JobStatus.WAITING.value,
            )
            .order_by(Job.priority.desc(), Job.created_at.asc())
        )
        if limit is not None:
            query = query.limit(limit)
        return list((await session.scalars(query)).all())

    async def _record_schedule_outcome(
        self, session: AsyncSession, job_id: UUID, succeeded: bool
    ) -> None:
        schedule_id = await session.scalar(
            select(Job.schedule_id).where(Job.id == job_id)
        )
        if schedule_id is None:
            return

        await session.execute(record_outcome_statement(schedule_id, succeeded))
