import asyncio
from datetime import UTC, datetime

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from jobs_engine.v1.core.exceptions import ConflictError, NotFoundError, ValidationError
from jobs_engine.v1.jobs.models import Job, JobStatus
from jobs_engine.v1.schedules.models import JobSchedule
from jobs_engine.v1.schedules.schemas import ScheduleCreate
from tests.conftest import RecordingHandler


def _at(day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 1, day, hour, minute, tzinfo=UTC)


def nightly(name: str = "nightly-report", **fields) -> ScheduleCreate:
    return ScheduleCreate(
        name=name,
        job_type=fields.pop("job_type", "report"),
        cron_expression=fields.pop("cron_expression", "0 2 * * *"),
        payload=fields.pop("payload", {"kind": "daily"}),
        **fields,
    )


async def _create(engine, schedule_create: ScheduleCreate) -> JobSchedule:
    async with engine.database.session() as session:
        return await engine.schedules.create(session, schedule_create)


async def _reload(engine, name: str) -> JobSchedule:
    async with engine.database.session() as session:
        return await engine.schedules.get_by_name(session, name)


async def _job_count(engine) -> int:
    async with engine.database.session() as session:
        return await session.scalar(select(func.count(Job.id)))


class TestScheduleService:
    async def test_create_computes_first_run(self, engine):
        schedule = await _create(engine, nightly())

        assert schedule.enabled is True
        assert schedule.next_run_at == _at(30, 2)
        assert schedule.total_runs == 0

    async def test_create_in_timezone(self, engine):
        schedule = await _create(
            engine, nightly(cron_expression="0 9 * * *", timezone="America/New_York")
        )

        # 09:00 EST is 14:00 UTC
        assert schedule.next_run_at == _at(30, 14)

    async def test_disabled_schedule_has_no_next_run(self, engine):
        schedule = await _create(engine, nightly(enabled=False))

        assert schedule.next_run_at is None

    async def test_duplicate_name_conflicts(self, engine):
        await _create(engine, nightly())

        with pytest.raises(ConflictError):
            await _create(engine, nightly())

    async def test_invalid_cron_rejected(self, engine):
        with pytest.raises(ValidationError, match="Invalid cron expression"):
            await _create(engine, nightly(cron_expression="not a cron"))

    async def test_unknown_timezone_rejected(self, engine):
        with pytest.raises(ValidationError, match="Unknown timezone"):
            await _create(engine, nightly(timezone="Mars/Olympus"))

    async def test_disable_and_enable(self, engine, clock):
        await _create(engine, nightly())

        async with engine.database.session() as session:
            disabled = await engine.schedules.set_enabled(session, "nightly-report", False)
        assert disabled.enabled is False
        assert disabled.next_run_at is None

        clock.set(_at(30, 3))
        async with engine.database.session() as session:
            enabled = await engine.schedules.set_enabled(session, "nightly-report", True)
        assert enabled.next_run_at == _at(31, 2)

    async def test_list_filters_enabled(self, engine):
        await _create(engine, nightly("a-report"))
        await _create(engine, nightly("b-report", enabled=False))

        async with engine.database.session() as session:
            everything = await engine.schedules.list_schedules(session)
            enabled = await engine.schedules.list_schedules(session, enabled=True)

        assert [s.name for s in everything] == ["a-report", "b-report"]
        assert [s.name for s in enabled] == ["a-report"]

    async def test_delete(self, engine):
        await _create(engine, nightly())

        async with engine.database.session() as session:
            await engine.schedules.delete(session, "nightly-report")

        with pytest.raises(NotFoundError):
            await _reload(engine, "nightly-report")


class TestScheduler:
    async def test_nothing_fires_before_next_run(self, engine, clock):
        await _create(engine, nightly())

        clock.set(_at(30, 1, 59))
        assert await engine.scheduler().tick() == []

    async def test_fires_once_and_advances(self, engine, clock):
        schedule = await _create(engine, nightly())
        clock.set(_at(30, 2))

        jobs = await engine.scheduler().tick()

        assert len(jobs) == 1
        job = jobs[0]
        assert job.job_type == "report"
        assert job.payload == {"kind": "daily"}
        assert job.status == JobStatus.WAITING.value
        assert job.schedule_id == schedule.id
        assert job.schedule_fire_at == _at(30, 2)
        assert job.meta["schedule"] == "nightly-report"

        stored = await _reload(engine, "nightly-report")
        assert stored.next_run_at == _at(31, 2)
        assert stored.last_run_at == _at(30, 2)
        assert stored.last_job_id == job.id
        assert stored.total_runs == 1

        # Same instant again: the occurrence is already consumed
        assert await engine.scheduler().tick() == []
        assert await _job_count(engine) == 1

    async def test_concurrent_ticks_produce_one_job(self, engine, clock):
        await _create(engine, nightly())
        clock.set(_at(30, 2, 0))

        results = await asyncio.gather(
            engine.scheduler().tick(), engine.scheduler().tick()
        )

        assert sum(len(jobs) for jobs in results) == 1
        assert await _job_count(engine) == 1

    async def test_stale_occurrence_is_not_fired_twice(self, engine, clock):
        schedule = await _create(engine, nightly())
        clock.set(_at(30, 2))
        scheduler = engine.scheduler()

        assert await scheduler.fire(schedule.id, _at(30, 2), clock()) is not None
        assert await scheduler.fire(schedule.id, _at(30, 2), clock()) is None
        assert await _job_count(engine) == 1

    async def test_occurrence_is_unique_per_schedule(self, engine, make_job):
        schedule = await _create(engine, nightly())

        async with engine.database.session() as session:
            await engine.ledger.create(
                session, make_job("report"), schedule_id=schedule.id,
                schedule_fire_at=_at(30, 2),
            )
        with pytest.raises(IntegrityError):
            async with engine.database.session() as session:
                await engine.ledger.create(
                    session, make_job("report"), schedule_id=schedule.id,
                    schedule_fire_at=_at(30, 2),
                )

    async def test_downtime_does_not_replay_backlog(self, engine, clock):
        await _create(engine, nightly())

        # Three occurrences were missed while nothing was running
        clock.set(datetime(2026, 2, 2, 5, 0, tzinfo=UTC))
        jobs = await engine.scheduler().tick()

        assert len(jobs) == 1
        stored = await _reload(engine, "nightly-report")
        assert stored.next_run_at == datetime(2026, 2, 3, 2, 0, tzinfo=UTC)

    async def test_max_runs_disables_schedule(self, engine, clock):
        await _create(engine, nightly(max_runs=2))
        scheduler = engine.scheduler()

        clock.set(_at(30, 2))
        assert len(await scheduler.tick()) == 1
        clock.set(_at(31, 2))
        assert len(await scheduler.tick()) == 1

        clock.set(datetime(2026, 2, 1, 2, 0, tzinfo=UTC))
        assert await scheduler.tick() == []

        stored = await _reload(engine, "nightly-report")
        assert stored.enabled is False
        assert stored.next_run_at is None
        assert stored.total_runs == 2
        assert await _job_count(engine) == 2

    async def test_end_date_disables_schedule(self, engine, clock):
        await _create(engine, nightly(end_date=_at(30, 12)))

        clock.set(_at(31, 2))
        assert await engine.scheduler().tick() == []

        stored = await _reload(engine, "nightly-report")
        assert stored.enabled is False

    async def test_disabled_schedules_are_not_evaluated(self, engine, clock):
        await _create(engine, nightly())
        async with engine.database.session() as session:
            await engine.schedules.set_enabled(session, "nightly-report", False)

        clock.set(_at(31, 2))
        assert await engine.scheduler().tick() == []
        assert await _job_count(engine) == 0

    async def test_scheduled_job_outcomes_are_counted(self, engine, registry, clock):
        registry.register("report", RecordingHandler())
        registry.register("broken", RecordingHandler(failures=100))
        await _create(engine, nightly("good"))
        await _create(engine, nightly("bad", job_type="broken", options={"maxRetries": 0}))

        clock.set(_at(30, 2))
        assert len(await engine.scheduler().tick()) == 2

        pool = engine.worker_pool(worker_id="w1")
        assert (await pool.process_next("default")) is not None
        assert (await pool.process_next("default")) is not None

        good = await _reload(engine, "good")
        bad = await _reload(engine, "bad")
        assert (good.successful_runs, good.failed_runs) == (1, 0)
        assert (bad.successful_runs, bad.failed_runs) == (0, 1)

    async def test_run_stops_on_request(self, engine):
        scheduler = engine.scheduler()

        runner = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.1)
        scheduler.stop()

        await asyncio.wait_for(runner, timeout=2)
