"""
Job service: submission and management on top of the ledger and broker.
"""

import logging
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import and_, delete, desc, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from jobs_engine.config.settings import Settings
from jobs_engine.v1.core.exceptions import ConflictError, NotFoundError, ValidationError
from jobs_engine.v1.jobs.broker import Broker
from jobs_engine.v1.jobs.ledger import JobLedger
from jobs_engine.v1.jobs.models import (
    Job,
    JobFailure,
    JobResult,
    JobStatus,
)
from jobs_engine.v1.jobs.schemas import (
    JobCreate,
    JobDetail,
    JobFailureResponse,
    JobListResponse,
    JobOptions,
    JobResponse,
    JobResultResponse,
    JobSubmitResponse,
)

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = (JobStatus.FAILED.value, JobStatus.CANCELLED.value)


class JobService:
    """Service for submitting and managing jobs."""

    def __init__(self, settings: Settings, ledger: JobLedger, broker: Broker | None):
        self.settings = settings
        self.ledger = ledger
        self.broker = broker

    async def submit(
        self,
        session: AsyncSession,
        job_create: JobCreate,
        schedule_id: UUID | None = None,
        schedule_fire_at: datetime | None = None,
        retry_of: UUID | None = None,
    ) -> Job:
        """
        Persist a job and make it visible to workers.

        The ledger row is committed before it is published, never the reverse.
        """
        job = await self.ledger.create(
            session,
            job_create,
            schedule_id=schedule_id,
            schedule_fire_at=schedule_fire_at,
            retry_of=retry_of,
        )
        if self.broker is not None:
            self.broker.publish(job.queue_name, job.id)
        return job

    async def enqueue(
        self, session: AsyncSession, job_create: JobCreate
    ) -> JobSubmitResponse:
        job = await self.submit(session, job_create)

        logger.info(
            "Job submitted",
            extra={
                "job_id": str(job.id),
                "type": job.job_type,
                "queue": job.queue_name,
                "priority": job.priority,
            },
        )

        return JobSubmitResponse(
            job_id=job.id, queue=job.queue_name, status=job.status
        )

    async def get_job_by_id(self, session: AsyncSession, job_id: UUID) -> Job | None:
        return await self.ledger.get(session, job_id)

    async def get_job(self, session: AsyncSession, job_id: UUID) -> JobDetail:
        """Job with its result and failure history."""
        job = await self.ledger.get(session, job_id)
        if job is None:
            raise NotFoundError("Job not found", details={"job_id": str(job_id)})

        result = await session.scalar(
            select(JobResult).where(JobResult.job_id == job_id)
        )
        failures = (
            await session.scalars(
                select(JobFailure)
                .where(JobFailure.job_id == job_id)
                .order_by(JobFailure.attempt_number, JobFailure.failed_at)
            )
        ).all()

        return JobDetail(
            job=JobResponse.model_validate(job),
            result=JobResultResponse.model_validate(result) if result else None,
            failures=[JobFailureResponse.model_validate(f) for f in failures],
        )

    async def list_jobs(
        self,
        session: AsyncSession,
        statuses: list[str] | None = None,
        queue: str | None = None,
        job_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> JobListResponse:
        base_query = select(Job)
        if statuses:
            base_query = base_query.where(Job.status.in_(statuses))
        if queue:
            base_query = base_query.where(Job.queue_name == queue)
        if job_type:
            base_query = base_query.where(Job.job_type == job_type)

        count_query = select(func.count()).select_from(base_query.subquery())
        total = (await session.execute(count_query)).scalar() or 0

        jobs = (
            await session.scalars(
                base_query.order_by(desc(Job.created_at)).offset(offset).limit(limit)
            )
        ).all()

        return JobListResponse(
            jobs=[JobResponse.model_validate(job) for job in jobs],
            total=total,
            limit=limit,
            offset=offset,
        )

    async def list_failed(
        self,
        session: AsyncSession,
        queue: str | None = None,
        job_type: str | None = None,
        limit: int = 50,
    ) -> list[Job]:
        """Failed jobs not yet retried, most recent first."""
        query = select(Job).where(
            Job.status == JobStatus.FAILED.value, Job.retried_as.is_(None)
        )
        if queue:
            query = query.where(Job.queue_name == queue)
        if job_type:
            query = query.where(Job.job_type == job_type)
        query = query.order_by(desc(Job.completed_at)).limit(limit)
        return list((await session.scalars(query)).all())

    async def retry_job(self, session: AsyncSession, job_id: UUID) -> Job:
        """
        Re-run a failed or cancelled job as a new waiting job.

        The original keeps its terminal status and points at the new job through
        ``retried_as``; the new job records the original in ``metadata.retry_of``.

        Raises:
            ConflictError: the job was already retried
        """
        original = await self.ledger.get(session, job_id)
        if original is None:
            raise NotFoundError("Job not found", details={"job_id": str(job_id)})
        if original.status not in RETRYABLE_STATUSES:
            raise ValidationError(
                "Only failed or cancelled jobs can be retried",
                details={"job_id": str(job_id), "status": original.status},
            )
        if original.retried_as is not None:
            raise ConflictError(
                "Job was already retried",
                details={"job_id": str(job_id), "retried_as": str(original.retried_as)},
            )

        options = dict(original.options or {})
        options.pop("delay", None)
        job_create = JobCreate(
            type=original.job_type,
            queue=original.queue_name,
            payload=original.payload,
            options=JobOptions.model_validate(
                {
                    **options,
                    "priority": original.priority,
                    "maxRetries": original.max_retries,
                    "retryDelay": original.retry_delay,
                }
            ),
            metadata={**(original.meta or {}), "retry_of": str(original.id)},
            tags=original.tags or [],
        )
        job = await self.submit(session, job_create, retry_of=original.id)

        logger.info(
            "Job retried",
            extra={"job_id": str(job.id), "retry_of": str(original.id)},
        )
        return job

    async def retry_failed(
        self,
        session: AsyncSession,
        job_type: str | None = None,
        queue: str | None = None,
        limit: int = 100,
    ) -> dict[UUID, UUID]:
        """Retry failed jobs selected by type and/or queue. Returns old id -> new id."""
        if not job_type and not queue:
            raise ValidationError("Retry by type or queue needs a type or a queue")

        failed = await self.list_failed(session, queue=queue, job_type=job_type, limit=limit)
        retried: dict[UUID, UUID] = {}
        for job in failed:
            try:
                new_job = await self.retry_job(session, job.id)
            except ConflictError:
                # Retried concurrently since it was listed
                continue
            retried[job.id] = new_job.id
        return retried

    async def retry_by_type(
        self, session: AsyncSession, job_type: str, limit: int = 100
    ) -> dict[UUID, UUID]:
        return await self.retry_failed(session, job_type=job_type, limit=limit)

    async def retry_by_queue(
        self, session: AsyncSession, queue: str, limit: int = 100
    ) -> dict[UUID, UUID]:
        return await self.retry_failed(session, queue=queue, limit=limit)

    async def cancel_job(self, session: AsyncSession, job_id: UUID) -> bool:
        return await self.ledger.cancel(session, job_id)

    async def cleanup(
        self,
        session: AsyncSession,
        completed_older_than_hours: int | None = None,
        failed_older_than_days: int | None = None,
        include_completed: bool = True,
        include_failed: bool = True,
    ) -> int:
        """Delete terminal jobs past their retention, with their history."""
        completed_hours = (
            completed_older_than_hours
            if completed_older_than_hours is not None
            else self.settings.job_clean_completed_after_hours
        )
        failed_days = (
            failed_older_than_days
            if failed_older_than_days is not None
            else self.settings.job_clean_failed_after_days
        )
        now = self.ledger.now()
        completed_cutoff = now - timedelta(hours=completed_hours)
        failed_cutoff = now - timedelta(days=failed_days)

        conditions = []
        if include_completed:
            conditions.append(
                and_(
                    Job.status == JobStatus.COMPLETED.value,
                    Job.completed_at < completed_cutoff,
                )
            )
        if include_failed:
            conditions.append(
                and_(
                    Job.status.in_(RETRYABLE_STATUSES),
                    Job.completed_at < failed_cutoff,
                )
            )
        if not conditions:
            return 0

        stale_ids = (
            await session.scalars(select(Job.id).where(or_(*conditions)))
        ).all()

        if not stale_ids:
            return 0

        await session.execute(
            delete(JobResult)
            .where(JobResult.job_id.in_(stale_ids))
            .execution_options(synchronize_session=False)
        )
        await session.execute(
            delete(JobFailure)
            .where(JobFailure.job_id.in_(stale_ids))
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(
            delete(Job)
            .where(Job.id.in_(stale_ids))
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        deleted_count = result.rowcount
        logger.info(
            "Cleaned up old jobs",
            extra={
                "deleted_count": deleted_count,
                "completed_after_hours": completed_hours,
                "failed_after_days": failed_days,
            },
        )
        return deleted_count
