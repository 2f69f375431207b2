"""
Job management API endpoints.

Submission, inspection, manual retry, cancellation and statistics.
"""

import logging
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Query
from sqlalchemy.ext.asyncio import AsyncSession

from jobs_engine.engine import Engine, EngineDep
from jobs_engine.infra.database import SessionDep
from jobs_engine.v1.core.exceptions import (
    NotFoundError,
    ValidationError,
    create_success_response,
)
from jobs_engine.v1.jobs.models import JobStatus
from jobs_engine.v1.jobs.schemas import (
    JobCreate,
    JobResponse,
    JobRetryRequest,
    JobRetryResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("", response_model=dict, status_code=201)
async def submit_job(
    job_create: JobCreate,
    session: AsyncSession = SessionDep,
    engine: Engine = EngineDep,
) -> dict[str, Any]:
    """Submit a new job."""
    result = await engine.jobs.enqueue(session, job_create)
    return create_success_response(data=result.model_dump(mode="json", by_alias=True))


@router.get("", response_model=dict)
async def list_jobs(
    status: list[JobStatus] | None = Query(
        default=None, description="Filter by status"
    ),
    queue: str | None = Query(default=None, description="Filter by queue"),
    type: str | None = Query(default=None, description="Filter by job type"),
    limit: int = Query(default=50, ge=1, le=1000, description="Maximum results"),
    offset: int = Query(default=0, ge=0, description="Results offset"),
    session: AsyncSession = SessionDep,
    engine: Engine = EngineDep,
) -> dict[str, Any]:
    """List jobs with filtering and pagination."""
    response = await engine.jobs.list_jobs(
        session,
        statuses=[s.value for s in status] if status else None,
        queue=queue,
        job_type=type,
        limit=limit,
        offset=offset,
    )
    return create_success_response(data=response.model_dump(mode="json", by_alias=True))


@router.get("/failed", response_model=dict)
async def list_failed_jobs(
    queue: str | None = Query(default=None),
    type: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=1000),
    session: AsyncSession = SessionDep,
    engine: Engine = EngineDep,
) -> dict[str, Any]:
    """Jobs that exhausted their retries."""
    jobs = await engine.jobs.list_failed(session, queue=queue, job_type=type, limit=limit)
    return create_success_response(
        data=[
            JobResponse.model_validate(job).model_dump(mode="json", by_alias=True)
            for job in jobs
        ]
    )


@router.get("/stats/overview", response_model=dict)
async def get_job_stats(
    window_hours: int | None = Query(default=None, ge=1, le=24 * 365),
    session: AsyncSession = SessionDep,
    engine: Engine = EngineDep,
) -> dict[str, Any]:
    """Job statistics by status, queue and type."""
    stats = await engine.stats.get_stats(session, window_hours=window_hours)
    return create_success_response(data=stats.model_dump(mode="json"))


@router.post("/retry", response_model=dict)
async def retry_failed_jobs(
    request: JobRetryRequest,
    session: AsyncSession = SessionDep,
    engine: Engine = EngineDep,
) -> dict[str, Any]:
    """Re-run failed jobs of a type or a queue."""
    if request.job_type:
        retried = await engine.jobs.retry_by_type(
            session, request.job_type, limit=request.limit
        )
    elif request.queue:
        retried = await engine.jobs.retry_by_queue(
            session, request.queue, limit=request.limit
        )
    else:
        raise ValidationError("Provide a job type or a queue to retry")

    logger.info(
        "Failed jobs retried via API",
        extra={"type": request.job_type, "queue": request.queue, "count": len(retried)},
    )
    response = JobRetryResponse(
        retried={str(old): str(new) for old, new in retried.items()},
        count=len(retried),
    )
    return create_success_response(data=response.model_dump())


@router.get("/{job_id}", response_model=dict)
async def get_job(
    job_id: UUID,
    session: AsyncSession = SessionDep,
    engine: Engine = EngineDep,
) -> dict[str, Any]:
    """Get a job with its result and failure history."""
    detail = await engine.jobs.get_job(session, job_id)
    return create_success_response(data=detail.model_dump(mode="json", by_alias=True))


@router.post("/{job_id}/retry", response_model=dict)
async def retry_job(
    job_id: UUID,
    session: AsyncSession = SessionDep,
    engine: Engine = EngineDep,
) -> dict[str, Any]:
    """Re-run a failed or cancelled job as a new job."""
    job = await engine.jobs.retry_job(session, job_id)
    return create_success_response(
        data={"jobId": str(job.id), "retryOf": str(job_id), "status": job.status},
        message="Job retried",
    )


@router.post("/{job_id}/cancel", response_model=dict)
async def cancel_job(
    job_id: UUID,
    session: AsyncSession = SessionDep,
    engine: Engine = EngineDep,
) -> dict[str, Any]:
    """Cancel a waiting or active job."""
    cancelled = await engine.jobs.cancel_job(session, job_id)
    if not cancelled:
        job = await engine.jobs.get_job_by_id(session, job_id)
        if job is None:
            raise NotFoundError("Job not found", details={"job_id": str(job_id)})
        raise ValidationError(
            "Only waiting or active jobs can be cancelled",
            details={"job_id": str(job_id), "status": job.status},
        )

    logger.info("Job cancelled via API", extra={"job_id": str(job_id)})
    return create_success_response(
        data={"jobId": str(job_id), "status": JobStatus.CANCELLED.value},
        message="Job cancelled",
    )
