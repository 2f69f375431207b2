"""
Retry governor: decides whether a failed attempt is retried and when.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from jobs_engine.config.logging import get_logger
from jobs_engine.config.settings import Settings
from jobs_engine.v1.core.exceptions import JobExecutionError, LeaseLostError
from jobs_engine.v1.jobs.ledger import JobLedger
from jobs_engine.v1.jobs.models import Job

logger = get_logger(__name__)


@dataclass(frozen=True)
class RetryDecision:
    will_retry: bool
    delay: timedelta
    retry_at: datetime | None


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, JobExecutionError):
        return error.retryable
    return True


class RetryGovernor:
    """Exponential backoff with a hard ceiling, bounded by the job's attempt budget."""

    def __init__(self, settings: Settings, ledger: JobLedger):
        self.settings = settings
        self.ledger = ledger

    @property
    def max_delay(self) -> timedelta:
        return timedelta(seconds=self.settings.job_max_backoff_s)

    def compute_delay(self, job: Job) -> timedelta:
        """``min(retry_delay * 2^(attempts-1), max_backoff)``"""
        exponent = max(job.attempts - 1, 0)
        delay = timedelta(milliseconds=job.retry_delay * (2**exponent))
        return min(delay, self.max_delay)

    def decide(self, job: Job, error: BaseException) -> RetryDecision:
        will_retry = is_retryable(error) and job.attempts < job.max_attempts
        if not will_retry:
            return RetryDecision(will_retry=False, delay=timedelta(0), retry_at=None)

        delay = self.compute_delay(job)
        return RetryDecision(
            will_retry=True, delay=delay, retry_at=self.ledger.now() + delay
        )

    async def handle_failure(
        self,
        session: AsyncSession,
        job: Job,
        error: BaseException,
        worker_id: str | None,
        duration_ms: int | None = None,
    ) -> RetryDecision | None:
        """
        Record the failed attempt and requeue or dead-letter the job.

        Returns the decision, or None when the worker had already lost the job
        (reaped or cancelled), in which case nothing is written.
        """
        decision = self.decide(job, error)

        try:
            await self.ledger.fail(
                session,
                job.id,
                worker_id,
                error,
                attempt_number=job.attempts,
                will_retry=decision.will_retry,
                retry_at=decision.retry_at,
                duration_ms=duration_ms,
            )
            if decision.will_retry:
                await self.ledger.requeue(session, job.id, worker_id, decision.delay)
        except LeaseLostError:
            logger.warning(
                "Discarding failure for job no longer held by this worker",
                job_id=str(job.id),
                worker_id=worker_id,
            )
            return None

        if not decision.will_retry:
            logger.error(
                "Job failed permanently",
                job_id=str(job.id),
                job_type=job.job_type,
                attempts=job.attempts,
                max_attempts=job.max_attempts,
            )

        return decision
