"""
Read-only projections over the job ledger.
"""

from datetime import timedelta

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from jobs_engine.v1.jobs.ledger import JobLedger
from jobs_engine.v1.jobs.models import Job, JobFailure, JobStatus
from jobs_engine.v1.jobs.schemas import (
    JobStatsResponse,
    JobTypeStats,
    QueueStats,
    RecentFailure,
)

DEPTH_STATUSES = (JobStatus.WAITING.value, JobStatus.ACTIVE.value)


class StatsAggregator:
    """Aggregates job rows by status, queue and type over an optional window."""

    def __init__(self, ledger: JobLedger, recent_failures_limit: int = 20):
        self.ledger = ledger
        self.recent_failures_limit = recent_failures_limit

    async def get_stats(
        self, session: AsyncSession, window_hours: int | None = None
    ) -> JobStatsResponse:
        # All reads share one transaction; on PostgreSQL that is a snapshot.
        if session.bind.dialect.name == "postgresql" and not session.in_transaction():
            await session.connection(
                execution_options={"isolation_level": "REPEATABLE READ"}
            )

        window_filter = []
        failure_filter = []
        if window_hours is not None:
            since = self.ledger.now() - timedelta(hours=window_hours)
            window_filter.append(Job.created_at >= since)
            failure_filter.append(JobFailure.failed_at >= since)

        status_rows = (
            await session.execute(
                select(Job.queue_name, Job.status, func.count(Job.id))
                .where(*window_filter)
                .group_by(Job.queue_name, Job.status)
            )
        ).all()

        by_status: dict[str, int] = {status.value: 0 for status in JobStatus}
        by_queue: dict[str, dict[str, int]] = {}
        for queue_name, status, count in status_rows:
            by_status[status] = by_status.get(status, 0) + count
            by_queue.setdefault(queue_name, {})[status] = count

        queues = [
            QueueStats(
                queue_name=queue_name,
                by_status=counts,
                depth=sum(counts.get(s, 0) for s in DEPTH_STATUSES),
            )
            for queue_name, counts in sorted(by_queue.items())
        ]

        type_rows = (
            await session.execute(
                select(
                    Job.job_type,
                    func.count(Job.id),
                    func.sum(
                        case((Job.status == JobStatus.COMPLETED.value, 1), else_=0)
                    ),
                    func.sum(case((Job.status == JobStatus.FAILED.value, 1), else_=0)),
                    func.avg(
                        case(
                            (Job.status == JobStatus.COMPLETED.value, Job.duration_ms),
                            else_=None,
                        )
                    ),
                )
                .where(*window_filter)
                .group_by(Job.job_type)
                .order_by(func.count(Job.id).desc())
            )
        ).all()

        job_types = [
            JobTypeStats(
                job_type=job_type,
                total_jobs=total,
                completed=int(completed or 0),
                failed=int(failed or 0),
                avg_duration_ms=float(avg) if avg is not None else None,
            )
            for job_type, total, completed, failed, avg in type_rows
        ]

        avg_duration = (
            await session.execute(
                select(func.avg(Job.duration_ms)).where(
                    Job.status == JobStatus.COMPLETED.value, *window_filter
                )
            )
        ).scalar()

        failure_rows = (
            await session.execute(
                select(JobFailure, Job.job_type, Job.queue_name)
                .join(Job, Job.id == JobFailure.job_id)
                .where(*failure_filter)
                .order_by(JobFailure.failed_at.desc())
                .limit(self.recent_failures_limit)
            )
        ).all()

        recent_failures = [
            RecentFailure(
                job_id=failure.job_id,
                job_type=job_type,
                queue_name=queue_name,
                error_type=failure.error_type,
                error_message=failure.error_message,
                attempt_number=failure.attempt_number,
                will_retry=failure.will_retry,
                failed_at=failure.failed_at,
            )
            for failure, job_type, queue_name in failure_rows
        ]

        await session.commit()

        return JobStatsResponse(
            window_hours=window_hours,
            total_jobs=sum(by_status.values()),
            by_status=by_status,
            queues=queues,
            job_types=job_types,
            queue_depth=sum(by_status[s] for s in DEPTH_STATUSES),
            avg_duration_ms=float(avg_duration) if avg_duration is not None else None,
            recent_failures=recent_failures,
        )
