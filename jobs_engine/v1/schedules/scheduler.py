"""
Scheduler: turns due schedules into jobs.

Several scheduler processes may run against the same database. Each firing
first advances ``next_run_at`` with a compare-and-swap on its old value, so
only one process wins a given occurrence; the unique
``(schedule_id, schedule_fire_at)`` constraint on jobs is the second guard.
"""

import asyncio
from datetime import datetime
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from jobs_engine.config.logging import get_logger
from jobs_engine.config.settings import Settings
from jobs_engine.infra.database import Database, utcnow
from jobs_engine.v1.core.exceptions import JobsEngineException
from jobs_engine.v1.jobs.ledger import Clock
from jobs_engine.v1.jobs.models import Job
from jobs_engine.v1.jobs.schemas import JobCreate, JobOptions
from jobs_engine.v1.jobs.service import JobService
from jobs_engine.v1.schedules.cron import next_fire_time
from jobs_engine.v1.schedules.models import JobSchedule

logger = get_logger(__name__)


class Scheduler:
    def __init__(
        self,
        settings: Settings,
        database: Database,
        job_service: JobService,
        clock: Clock = utcnow,
    ):
        self.settings = settings
        self.database = database
        self.job_service = job_service
        self.clock = clock
        self._stopping = asyncio.Event()

    async def tick(self, now: datetime | None = None) -> list[Job]:
        """Fire every due schedule once. Returns the jobs produced."""
        now = now or self.clock()

        async with self.database.session() as session:
            due = (
                await session.scalars(
                    select(JobSchedule).where(
                        JobSchedule.enabled.is_(True),
                        JobSchedule.next_run_at <= now,
                    )
                )
            ).all()
            occurrences = [(s.id, s.next_run_at) for s in due if s.is_due(now)]
            finished = [s.id for s in due if not s.is_due(now)]

            if finished:
                # Run limit reached or past end date: stop evaluating them.
                await session.execute(
                    update(JobSchedule)
                    .where(JobSchedule.id.in_(finished))
                    .values(enabled=False, next_run_at=None, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                logger.info("Schedules finished", count=len(finished))
            await session.commit()

        produced = []
        for schedule_id, fire_at in occurrences:
            job = await self.fire(schedule_id, fire_at, now)
            if job is not None:
                produced.append(job)
        return produced

    async def fire(
        self, schedule_id: UUID, fire_at: datetime, now: datetime
    ) -> Job | None:
        """Claim one occurrence of a schedule and enqueue its job."""
        log = logger.bind(schedule_id=str(schedule_id), fire_at=fire_at.isoformat())

        async with self.database.session() as session:
            schedule = await session.get(JobSchedule, schedule_id)
            if schedule is None:
                return None

            # Base on max(now, fire_at) so downtime never replays a backlog.
            next_run_at = next_fire_time(
                schedule.cron_expression, schedule.timezone, max(now, fire_at)
            )
            claimed = await session.execute(
                update(JobSchedule)
                .where(
                    JobSchedule.id == schedule_id,
                    JobSchedule.enabled.is_(True),
                    JobSchedule.next_run_at == fire_at,
                )
                .values(next_run_at=next_run_at, last_run_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if claimed.rowcount != 1:
                log.debug("Occurrence already fired elsewhere")
                return None

            job_create = self._job_from_schedule(schedule, fire_at)

        try:
            async with self.database.session() as session:
                job = await self.job_service.submit(
                    session,
                    job_create,
                    schedule_id=schedule_id,
                    schedule_fire_at=fire_at,
                )
                await session.execute(
                    update(JobSchedule)
                    .where(JobSchedule.id == schedule_id)
                    .values(
                        last_job_id=job.id,
                        total_runs=JobSchedule.total_runs + 1,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        except IntegrityError:
            log.info("Occurrence already materialized")
            return None
        except (JobsEngineException, SQLAlchemyError, PydanticValidationError):
            log.exception("Failed to enqueue scheduled job")
            return None

        log.info(
            "Scheduled job enqueued",
            job_id=str(job.id),
            next_run_at=next_run_at.isoformat(),
        )
        return job

    def _job_from_schedule(self, schedule: JobSchedule, fire_at: datetime) -> JobCreate:
        return JobCreate(
            type=schedule.job_type,
            queue=schedule.queue_name,
            payload=dict(schedule.payload or {}),
            options=JobOptions.model_validate(schedule.options or {}),
            metadata={
                **(schedule.meta or {}),
                "schedule": schedule.name,
                "fire_at": fire_at.isoformat(),
            },
            tags=list(schedule.tags or []),
        )

    async def run(self) -> None:
        """Tick every ``scheduler_interval_s`` until ``stop()``."""
        self._stopping.clear()
        logger.info("Scheduler started", interval_s=self.settings.scheduler_interval_s)

        while not self._stopping.is_set():
            try:
                await self.tick()
            except (JobsEngineException, SQLAlchemyError):
                logger.exception("Scheduler tick failed")

            try:
                await asyncio.wait_for(
                    self._stopping.wait(), timeout=self.settings.scheduler_interval_s
                )
            except asyncio.TimeoutError:
                pass

        logger.info("Scheduler stopped")

    def stop(self) -> None:
        self._stopping.set()
