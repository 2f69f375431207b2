from datetime import UTC, datetime

from fastapi import APIRouter
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from jobs_engine.config.settings import Settings, SettingsDep
from jobs_engine.infra.database import SessionDep
from jobs_engine.v1.core.exceptions import create_success_response
from jobs_engine.v1.jobs.models import Job, JobStatus

router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class QueueHealth(BaseModel):
    """Queue and worker health status."""

    active_workers: int
    active_jobs: int = 0
    expired_leases: int = 0
    queue_depth: int = 0


@router.get("/healthz", response_model=dict)
async def health_check(
    settings: Settings = SettingsDep, session: AsyncSession = SessionDep
):
    """Health check endpoint with database and queue status."""

    timestamp = datetime.now(UTC).isoformat()

    db_health = await _check_database_health(session)

    queue_health = None
    if db_health.connected:
        try:
            queue_health = await _check_queue_health(session)
        except SQLAlchemyError:
            # Queue health failure doesn't fail overall health
            queue_health = None

    health_data = {
        "ok": db_health.connected,
        "version": settings.version,
        "environment": settings.environment,
        "timestamp": timestamp,
        "database": db_health.model_dump(),
        "queues": queue_health.model_dump() if queue_health else None,
    }

    return create_success_response(data=health_data)


async def _check_database_health(session: AsyncSession) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        await session.execute(text("SELECT 1"))

        end_time = datetime.now(UTC)
        response_time_ms = (end_time - start_time).total_seconds() * 1000

        return DatabaseHealth(
            connected=True, response_time_ms=round(response_time_ms, 2)
        )

    except (SQLAlchemyError, OSError) as e:
        return DatabaseHealth(connected=False, error=str(e))


async def _check_queue_health(session: AsyncSession) -> QueueHealth:
    """Check worker activity and queue depth."""
    now = datetime.now(UTC)

    active_workers = (
        await session.execute(
            select(func.count(func.distinct(Job.worker_id))).where(
                Job.status == JobStatus.ACTIVE.value
            )
        )
    ).scalar() or 0

    active_jobs = (
        await session.execute(
            select(func.count(Job.id)).where(Job.status == JobStatus.ACTIVE.value)
        )
    ).scalar() or 0

    # Active jobs whose worker stopped renewing; the reaper will return them
    expired_leases = (
        await session.execute(
            select(func.count(Job.id)).where(
                Job.status == JobStatus.ACTIVE.value, Job.lease_expires_at < now
            )
        )
    ).scalar() or 0

    queue_depth = (
        await session.execute(
            select(func.count(Job.id)).where(
                Job.status.in_([JobStatus.WAITING.value, JobStatus.ACTIVE.value])
            )
        )
    ).scalar() or 0

    return QueueHealth(
        active_workers=active_workers,
        active_jobs=active_jobs,
        expired_leases=expired_leases,
        queue_depth=queue_depth,
    )
