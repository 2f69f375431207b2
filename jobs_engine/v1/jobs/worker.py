"""
Worker pool: bounded concurrent execution of claimed jobs.
"""

import asyncio
import os
import socket
import time
import traceback
from datetime import timedelta
from collections.abc import Callable, Coroutine
from functools import partial
from typing import Any
from uuid import UUID, uuid4

from jobs_engine.config.logging import get_logger
from jobs_engine.config.settings import Settings
from jobs_engine.infra.database import Database
from jobs_engine.v1.core.exceptions import (
    JobExecutionError,
    JobTimeoutError,
    LeaseLostError,
    ProcessorError,
    UnknownJobTypeError,
)
from jobs_engine.v1.core.registries import JobRegistry, job_registry
from jobs_engine.v1.jobs.broker import Broker
from jobs_engine.v1.jobs.context import JobContext
from jobs_engine.v1.jobs.ledger import JobLedger
from jobs_engine.v1.jobs.models import Job
from jobs_engine.v1.jobs.retry import RetryGovernor

logger = get_logger(__name__)


def make_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"


class WorkerPool:
    """
    Runs up to ``concurrency`` jobs at once for a set of queues.

    Features:
    - One dispatch loop per queue, woken by the broker or a poll tick
    - A semaphore bounds in-flight jobs across all queues
    - Per-job deadline from ``options.timeout``; late results are discarded
    - Heartbeats renew leases of held jobs; a reaper recovers expired ones
    - Graceful shutdown with a grace period for in-flight jobs
    """

    def __init__(
        self,
        settings: Settings,
        database: Database,
        ledger: JobLedger,
        broker: Broker,
        governor: RetryGovernor,
        registry: JobRegistry = job_registry,
        queues: list[str] | None = None,
        concurrency: int | None = None,
        worker_id: str | None = None,
    ):
        self.settings = settings
        self.database = database
        self.ledger = ledger
        self.broker = broker
        self.governor = governor
        self.registry = registry
        self.queues = queues or list(settings.job_queues)
        self.concurrency = concurrency or settings.job_concurrency
        self.worker_id = worker_id or make_worker_id()
        self.lease_duration = timedelta(seconds=settings.job_lease_s)

        self.running = False
        self.active_jobs: dict[UUID, Job] = {}
        self._slots = asyncio.Semaphore(self.concurrency)
        self._job_tasks: set[asyncio.Task] = set()
        self._loop_tasks: list[asyncio.Task] = []
        self._stopped = asyncio.Event()
        self.log = logger.bind(worker_id=self.worker_id)

    async def start(self) -> None:
        """Rebuild broker visibility from the ledger and start the loops."""
        if self.running:
            raise RuntimeError("Worker pool is already running")

        self.running = True
        self._stopped.clear()
        self.log.info(
            "Starting worker pool",
            queues=self.queues,
            concurrency=self.concurrency,
            lease_s=self.settings.job_lease_s,
        )

        for queue_name in self.queues:
            async with self.database.session() as session:
                await self.broker.rebuild(session, queue_name)

        self._loop_tasks = []
        for queue_name in self.queues:
            self._spawn_loop(
                f"dispatch:{queue_name}", partial(self._dispatch_loop, queue_name)
            )
        self._spawn_loop("heartbeat", self._heartbeat_loop)
        self._spawn_loop("reaper", self._reap_loop)

    def _spawn_loop(
        self, name: str, loop: Callable[[], Coroutine[Any, Any, None]]
    ) -> None:
        task = asyncio.create_task(loop())
        task.add_done_callback(partial(self._on_loop_done, name, loop))
        self._loop_tasks.append(task)

    def _on_loop_done(
        self,
        name: str,
        loop: Callable[[], Coroutine[Any, Any, None]],
        task: asyncio.Task,
    ) -> None:
        """Restart a loop that crashed while the pool is still running."""
        if task.cancelled() or not self.running:
            return
        exc = task.exception()
        if exc is None:
            self.log.info("Worker loop finished", loop=name)
            return
        self.log.error("Worker loop crashed, restarting", loop=name, error=repr(exc))
        if task in self._loop_tasks:
            self._loop_tasks.remove(task)
        self._spawn_loop(name, loop)

    async def run(self) -> None:
        """Start and block until ``stop()`` or cancellation."""
        await self.start()
        try:
            await self._stopped.wait()
        except asyncio.CancelledError:
            pass
        finally:
            if self.running:
                await self.stop()

    async def stop(self, grace_s: float | None = None) -> None:
        """Stop claiming and wait for in-flight jobs up to the grace period."""
        self.log.info("Stopping worker pool", active_jobs=len(self.active_jobs))
        self.running = False
        self._stopped.set()

        loop_tasks, self._loop_tasks = self._loop_tasks, []
        for task in loop_tasks:
            task.cancel()
        await asyncio.gather(*loop_tasks, return_exceptions=True)

        grace = self.settings.job_shutdown_grace_s if grace_s is None else grace_s
        if self._job_tasks:
            _, pending = await asyncio.wait(set(self._job_tasks), timeout=grace)
            if pending:
                # Leases of abandoned jobs expire and the reaper returns them.
                self.log.warning(
                    "Worker stopped with active jobs", active_jobs=len(pending)
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

    async def process_next(self, queue_name: str) -> Job | None:
        """Claim one job from ``queue_name`` and execute it inline.

        Returns the job as persisted after the attempt, or None if nothing
        was claimable.
        """
        job = await self._claim(queue_name)
        if job is None:
            return None

        await self.execute(job)
        async with self.database.session() as session:
            return await self.ledger.get(session, job.id)

    async def _claim(self, queue_name: str) -> Job | None:
        async with self.database.session() as session:
            return await self.ledger.claim(
                session, queue_name, self.worker_id, self.lease_duration
            )

    async def _dispatch_loop(self, queue_name: str) -> None:
        async for _hint in self.broker.subscribe(queue_name):
            if not self.running:
                break
            try:
                await self._drain(queue_name)
            except Exception:
                self.log.exception("Error claiming jobs", queue=queue_name)
                await asyncio.sleep(self.settings.job_poll_interval_ms / 1000)

    async def _drain(self, queue_name: str) -> None:
        """Claim and start jobs while slots and claimable jobs remain."""
        while self.running:
            await self._slots.acquire()
            try:
                job = await self._claim(queue_name)
            except BaseException:
                self._slots.release()
                raise

            if job is None:
                self._slots.release()
                return

            task = asyncio.create_task(self._run_slot(job))
            self._job_tasks.add(task)
            task.add_done_callback(self._job_tasks.discard)

    async def _run_slot(self, job: Job) -> None:
        try:
            await self.execute(job)
        except Exception:
            # The lease is left to expire; the reaper returns the job.
            self.log.exception(
                "Could not record job outcome", job_id=str(job.id)
            )
        finally:
            self._slots.release()

    async def execute(self, job: Job) -> None:
        """Run one claimed attempt and record its outcome."""
        log = self.log.bind(
            job_id=str(job.id),
            job_type=job.job_type,
            queue=job.queue_name,
            attempt=job.attempts,
        )
        self.active_jobs[job.id] = job
        started = time.monotonic()

        try:
            try:
                handler = self.registry.get(job.job_type)
            except UnknownJobTypeError as e:
                log.error("No processor registered for job type")
                await self._fail(job, e, started)
                return

            timeout_ms = job.timeout_ms(self.settings.job_timeout_ms)
            ctx = JobContext(
                job_id=job.id,
                job_type=job.job_type,
                queue_name=job.queue_name,
                payload=dict(job.payload or {}),
                options=dict(job.options or {}),
                attempt=job.attempts,
                max_attempts=job.max_attempts,
                deadline=self.ledger.now() + timedelta(milliseconds=timeout_ms),
                database=self.database,
                reporter=partial(self._report_progress, job),
            )

            log.info("Processing job started", timeout_ms=timeout_ms)
            task = asyncio.create_task(handler.handle(ctx))
            try:
                done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)
            except asyncio.CancelledError:
                task.cancel()
                raise

            if task not in done:
                task.add_done_callback(partial(self._discard_late_outcome, job.id))
                task.cancel()
                await self._fail(
                    job,
                    JobTimeoutError(
                        f"Job exceeded its deadline of {timeout_ms}ms",
                        details={"timeout_ms": timeout_ms},
                    ),
                    started,
                )
                return

            if task.cancelled():
                await self._fail(job, ProcessorError("Processor was cancelled"), started)
                return

            exc = task.exception()
            if exc is not None:
                await self._fail(job, self._wrap_error(exc), started)
                return

            await self._complete(job, task.result(), started, log)
        finally:
            self.active_jobs.pop(job.id, None)

    def _wrap_error(self, exc: BaseException) -> JobExecutionError:
        if isinstance(exc, JobExecutionError):
            return exc
        error = ProcessorError(
            str(exc) or type(exc).__name__,
            details={"exception": type(exc).__name__},
            stack="".join(traceback.format_exception(exc)),
        )
        error.__cause__ = exc
        return error

    async def _complete(self, job: Job, result: Any, started: float, log) -> None:
        duration_ms = int((time.monotonic() - started) * 1000)
        try:
            async with self.database.session() as session:
                await self.ledger.complete(
                    session, job.id, self.worker_id, result, duration_ms
                )
        except LeaseLostError:
            log.warning("Discarding result for job no longer held by this worker")
            return
        log.info("Processing job completed", duration_ms=duration_ms)

    async def _fail(self, job: Job, error: BaseException, started: float) -> None:
        duration_ms = int((time.monotonic() - started) * 1000)
        async with self.database.session() as session:
            await self.governor.handle_failure(
                session, job, error, self.worker_id, duration_ms=duration_ms
            )

    async def _report_progress(self, job: Job, progress: int) -> None:
        try:
            async with self.database.session() as session:
                await self.ledger.update_progress(
                    session, job.id, self.worker_id, progress
                )
        except Exception as e:
            self.log.warning(
                "Progress update failed", job_id=str(job.id), error=str(e)
            )

    def _discard_late_outcome(self, job_id: UUID, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        if task.exception() is None:
            self.log.warning(
                "Discarding result that arrived after the deadline", job_id=str(job_id)
            )
        else:
            self.log.info(
                "Processor failed after the deadline",
                job_id=str(job_id),
                error=str(task.exception()),
            )

    async def _heartbeat_loop(self) -> None:
        """Renew leases for jobs this worker holds."""
        while self.running:
            await asyncio.sleep(self.settings.job_heartbeat_interval_s)
            if not self.active_jobs:
                continue
            try:
                async with self.database.session() as session:
                    renewed = await self.ledger.renew_leases(
                        session,
                        self.worker_id,
                        list(self.active_jobs),
                        self.lease_duration,
                    )
                self.log.debug("Leases renewed", count=renewed)
            except Exception:
                self.log.exception("Error renewing leases")

    async def _reap_loop(self) -> None:
        """Return jobs abandoned by crashed workers to their queues."""
        while self.running:
            try:
                for queue_name in self.queues:
                    async with self.database.session() as session:
                        await self.ledger.reap_expired_leases(session, queue_name)
            except Exception:
                self.log.exception("Error reaping expired leases")
            await asyncio.sleep(self.settings.job_reap_interval_s)
