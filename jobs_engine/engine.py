"""
Wiring of the engine components for one process.
"""

from dataclasses import dataclass

from fastapi import Depends

from jobs_engine.config.settings import Settings, get_settings
from jobs_engine.infra.database import Database, get_database, utcnow
from jobs_engine.v1.core.registries import JobRegistry, job_registry
from jobs_engine.v1.jobs.broker import Broker
from jobs_engine.v1.jobs.ledger import Clock, JobLedger
from jobs_engine.v1.jobs.registry_init import register_job_handlers
from jobs_engine.v1.jobs.retry import RetryGovernor
from jobs_engine.v1.jobs.service import JobService
from jobs_engine.v1.jobs.stats import StatsAggregator
from jobs_engine.v1.jobs.worker import WorkerPool
from jobs_engine.v1.schedules.scheduler import Scheduler
from jobs_engine.v1.schedules.service import ScheduleService


@dataclass
class Engine:
    settings: Settings
    database: Database
    ledger: JobLedger
    broker: Broker
    governor: RetryGovernor
    jobs: JobService
    schedules: ScheduleService
    stats: StatsAggregator
    registry: JobRegistry
    clock: Clock = utcnow

    def worker_pool(
        self,
        queues: list[str] | None = None,
        concurrency: int | None = None,
        worker_id: str | None = None,
    ) -> WorkerPool:
        return WorkerPool(
            self.settings,
            self.database,
            self.ledger,
            self.broker,
            self.governor,
            registry=self.registry,
            queues=queues,
            concurrency=concurrency,
            worker_id=worker_id,
        )

    def scheduler(self) -> Scheduler:
        return Scheduler(self.settings, self.database, self.jobs, clock=self.clock)


def build_engine(
    settings: Settings,
    database: Database | None = None,
    clock: Clock = utcnow,
    registry: JobRegistry = job_registry,
    register_handlers: bool = True,
) -> Engine:
    """Assemble ledger, broker, services and built-in processors."""
    database = database or Database(settings)
    ledger = JobLedger(settings, clock=clock)
    broker = Broker(ledger, poll_interval_s=settings.job_poll_interval_ms / 1000)
    jobs = JobService(settings, ledger, broker)

    if register_handlers:
        register_job_handlers(registry, jobs)

    return Engine(
        settings=settings,
        database=database,
        ledger=ledger,
        broker=broker,
        governor=RetryGovernor(settings, ledger),
        jobs=jobs,
        schedules=ScheduleService(settings, clock=clock),
        stats=StatsAggregator(ledger),
        registry=registry,
        clock=clock,
    )


# Process-wide engine used by the HTTP layer
_engine: Engine | None = None


def get_engine(
    settings: Settings = Depends(get_settings),
    database: Database = Depends(get_database),
) -> Engine:
    """Get or create the process-wide engine."""
    global _engine
    if _engine is None:
        _engine = build_engine(settings, database)
    return _engine


# Convenience type alias for dependency injection
EngineDep = Depends(get_engine)
