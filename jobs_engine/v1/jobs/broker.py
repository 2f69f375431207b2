"""
Broker: makes waiting jobs visible to workers without table scans per slot.

The broker is a cache over the ledger. Hints are per-process and may be lost
or duplicated; a hint only wakes a worker, which then claims through the
ledger. Workers also wake on every poll tick, so jobs published by other
processes are found without cross-process signalling.
"""

import asyncio
from collections.abc import AsyncIterator
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from jobs_engine.config.logging import get_logger
from jobs_engine.v1.jobs.ledger import JobLedger

logger = get_logger(__name__)


class Broker:
    def __init__(
        self, ledger: JobLedger, poll_interval_s: float = 1.0, max_hints: int = 10_000
    ):
        self.ledger = ledger
        self.poll_interval_s = poll_interval_s
        self.max_hints = max_hints
        self._queues: dict[str, asyncio.Queue[UUID]] = {}
        self._closed = False

    def _queue(self, queue_name: str) -> asyncio.Queue[UUID]:
        if queue_name not in self._queues:
            self._queues[queue_name] = asyncio.Queue(maxsize=self.max_hints)
        return self._queues[queue_name]

    def publish(self, queue_name: str, job_id: UUID) -> None:
        """Make a committed waiting job visible to subscribers of ``queue_name``."""
        try:
            self._queue(queue_name).put_nowait(job_id)
        except asyncio.QueueFull:
            # Nobody is draining this queue here; workers find the job by polling.
            logger.debug("Broker hint dropped", queue=queue_name, job_id=str(job_id))

    def pending(self, queue_name: str) -> int:
        return self._queue(queue_name).qsize()

    async def subscribe(self, queue_name: str) -> AsyncIterator[UUID | None]:
        """
        Yield job id hints for a queue; ``None`` marks a poll tick.

        Runs until ``close()`` is called.
        """
        queue = self._queue(queue_name)
        while not self._closed:
            try:
                job_id = await asyncio.wait_for(
                    queue.get(), timeout=self.poll_interval_s
                )
            except asyncio.TimeoutError:
                yield None
            else:
                yield job_id

    async def rebuild(self, session: AsyncSession, queue_name: str) -> int:
        """Re-publish every waiting job of a queue from the ledger."""
        queue = self._queue(queue_name)
        while not queue.empty():
            queue.get_nowait()

        job_ids = await self.ledger.waiting_job_ids(
            session, queue_name, limit=self.max_hints
        )
        for job_id in job_ids:
            queue.put_nowait(job_id)

        logger.info("Broker rebuilt from ledger", queue=queue_name, waiting=len(job_ids))
        return len(job_ids)

    def close(self) -> None:
        self._closed = True

