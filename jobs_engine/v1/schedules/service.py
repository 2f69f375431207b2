"""
Schedule service: the schedule ledger's management surface.
"""

import logging

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from jobs_engine.config.settings import Settings
from jobs_engine.infra.database import utcnow
from jobs_engine.v1.core.exceptions import ConflictError, NotFoundError
from jobs_engine.v1.jobs.ledger import Clock
from jobs_engine.v1.schedules.cron import next_fire_time, resolve_timezone, validate_cron
from jobs_engine.v1.schedules.models import JobSchedule
from jobs_engine.v1.schedules.schemas import ScheduleCreate

logger = logging.getLogger(__name__)


class ScheduleService:
    """Create, inspect and toggle recurring schedules."""

    def __init__(self, settings: Settings, clock: Clock = utcnow):
        self.settings = settings
        self.clock = clock

    async def create(
        self, session: AsyncSession, schedule_create: ScheduleCreate
    ) -> JobSchedule:
        """
        Persist a schedule with its first ``next_run_at`` computed.

        Raises:
            ValidationError: invalid cron expression or timezone
            ConflictError: a schedule with the same name exists
        """
        cron_expression = validate_cron(schedule_create.cron_expression)
        resolve_timezone(schedule_create.timezone)

        now = self.clock()
        schedule = JobSchedule(
            name=schedule_create.name,
            description=schedule_create.description,
            job_type=schedule_create.job_type,
            queue_name=schedule_create.queue,
            payload=schedule_create.payload,
            options=schedule_create.options.model_dump(by_alias=True, exclude_none=True),
            cron_expression=cron_expression,
            timezone=schedule_create.timezone,
            enabled=schedule_create.enabled,
            max_runs=schedule_create.max_runs,
            end_date=schedule_create.end_date,
            next_run_at=(
                next_fire_time(cron_expression, schedule_create.timezone, now)
                if schedule_create.enabled
                else None
            ),
            meta=schedule_create.metadata,
            tags=schedule_create.tags,
            created_at=now,
            updated_at=now,
        )

        session.add(schedule)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            raise ConflictError(
                f"Schedule already exists: {schedule_create.name}",
                details={"name": schedule_create.name},
            ) from None

        logger.info(
            "Schedule created",
            extra={
                "schedule": schedule.name,
                "cron": schedule.cron_expression,
                "next_run_at": (
                    schedule.next_run_at.isoformat() if schedule.next_run_at else None
                ),
            },
        )
        return schedule

    async def list_schedules(
        self, session: AsyncSession, enabled: bool | None = None
    ) -> list[JobSchedule]:
        query = select(JobSchedule)
        if enabled is not None:
            query = query.where(JobSchedule.enabled == enabled)
        return list((await session.scalars(query.order_by(JobSchedule.name))).all())

    async def get_by_name(self, session: AsyncSession, name: str) -> JobSchedule:
        schedule = await session.scalar(
            select(JobSchedule)
            .where(JobSchedule.name == name)
            .execution_options(populate_existing=True)
        )
        if schedule is None:
            raise NotFoundError("Schedule not found", details={"name": name})
        return schedule

    async def set_enabled(
        self, session: AsyncSession, name: str, enabled: bool
    ) -> JobSchedule:
        """Enable or disable a schedule; enabling recomputes ``next_run_at`` from now."""
        schedule = await self.get_by_name(session, name)
        now = self.clock()

        schedule.enabled = enabled
        schedule.next_run_at = (
            next_fire_time(schedule.cron_expression, schedule.timezone, now)
            if enabled
            else None
        )
        schedule.updated_at = now
        await session.commit()

        logger.info(
            "Schedule %s", "enabled" if enabled else "disabled",
            extra={"schedule": name},
        )
        return schedule

    async def delete(self, session: AsyncSession, name: str) -> None:
        schedule = await self.get_by_name(session, name)
        await session.execute(
            delete(JobSchedule)
            .where(JobSchedule.id == schedule.id)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        logger.info("Schedule deleted", extra={"schedule": name})
