import asyncio
from datetime import timedelta

import httpx
from sqlalchemy import select

from jobs_engine.v1.core.exceptions import PersistenceError
from jobs_engine.v1.jobs.models import JobFailure, JobResult, JobStatus
from jobs_engine.v1.jobs.processors import HttpRequestHandler
from tests.conftest import RecordingHandler


async def _failures(database, job_id) -> list[JobFailure]:
    async with database.session() as session:
        return list(
            (
                await session.scalars(
                    select(JobFailure)
                    .where(JobFailure.job_id == job_id)
                    .order_by(JobFailure.attempt_number)
                )
            ).all()
        )


async def _results(database, job_id) -> list[JobResult]:
    async with database.session() as session:
        return list(
            (await session.scalars(select(JobResult).where(JobResult.job_id == job_id))).all()
        )


async def _submit(engine, job_create):
    async with engine.database.session() as session:
        return await engine.jobs.submit(session, job_create)


async def _wait_for_status(engine, job_ids, status, timeout=10.0):
    async def _poll():
        while True:
            async with engine.database.session() as session:
                jobs = [await engine.ledger.get(session, job_id) for job_id in job_ids]
            if all(job.status == status for job in jobs):
                return jobs
            await asyncio.sleep(0.05)

    return await asyncio.wait_for(_poll(), timeout)


async def test_successful_job_completes(engine, registry, make_job):
    handler = RecordingHandler(result={"sent": 1})
    registry.register("send-email", handler)
    job = await _submit(engine, make_job("send-email", payload={"to": "x"}))

    processed = await engine.worker_pool(worker_id="w1").process_next("default")

    assert processed.id == job.id
    assert processed.status == JobStatus.COMPLETED.value
    assert processed.attempts == 1
    assert handler.calls[0].payload == {"to": "x"}
    assert handler.calls[0].attempt == 1
    assert handler.calls[0].max_attempts == 4
    results = await _results(engine.database, job.id)
    assert [r.result for r in results] == [{"sent": 1}]


async def test_process_next_with_empty_queue(engine):
    assert await engine.worker_pool().process_next("default") is None


async def test_always_failing_job_exhausts_retries(engine, registry, make_job, clock):
    registry.register("flaky", RecordingHandler(failures=100))
    job = await _submit(engine, make_job("flaky", max_retries=2))
    pool = engine.worker_pool(worker_id="w1")

    states = []
    for _ in range(3):
        processed = await pool.process_next("default")
        states.append((processed.status, processed.attempts))
        clock.advance(minutes=10)

    assert states == [
        (JobStatus.WAITING.value, 1),
        (JobStatus.WAITING.value, 2),
        (JobStatus.FAILED.value, 3),
    ]
    assert await pool.process_next("default") is None

    failures = await _failures(engine.database, job.id)
    assert [f.attempt_number for f in failures] == [1, 2, 3]
    assert [f.will_retry for f in failures] == [True, True, False]
    assert failures[0].error_type == "ProcessorError"
    assert "boom on attempt 1" in failures[0].error_message
    assert failures[0].error_stack
    assert await _results(engine.database, job.id) == []


async def test_retry_waits_for_backoff(engine, registry, make_job, clock):
    registry.register("flaky", RecordingHandler(failures=1))
    await _submit(engine, make_job("flaky"))
    pool = engine.worker_pool(worker_id="w1")

    first = await pool.process_next("default")
    assert first.status == JobStatus.WAITING.value
    assert first.scheduled_for == clock() + timedelta(seconds=1)

    # Not eligible until the backoff has passed
    assert await pool.process_next("default") is None
    clock.advance(seconds=1)
    second = await pool.process_next("default")
    assert second.status == JobStatus.COMPLETED.value


async def test_success_on_third_attempt(engine, registry, make_job, clock):
    registry.register("flaky", RecordingHandler(failures=2, result={"done": True}))
    job = await _submit(engine, make_job("flaky", max_retries=5))
    pool = engine.worker_pool(worker_id="w1")

    for _ in range(3):
        processed = await pool.process_next("default")
        clock.advance(minutes=10)

    assert processed.status == JobStatus.COMPLETED.value
    assert processed.attempts == 3
    assert len(await _results(engine.database, job.id)) == 1
    assert len(await _failures(engine.database, job.id)) == 2


async def test_unknown_job_type_fails_without_retry(engine, make_job):
    job = await _submit(engine, make_job("no-such-type"))

    processed = await engine.worker_pool().process_next("default")

    assert processed.status == JobStatus.FAILED.value
    assert processed.attempts == 1
    failures = await _failures(engine.database, job.id)
    assert len(failures) == 1
    assert failures[0].error_type == "UnknownJobType"
    assert failures[0].will_retry is False


class SlowHandler:
    async def handle(self, ctx):
        await asyncio.sleep(10)
        return {"too": "late"}


async def test_deadline_fails_attempt(engine, registry, make_job):
    registry.register("slow", SlowHandler())
    job = await _submit(engine, make_job("slow", timeout=1000))

    processed = await engine.worker_pool().process_next("default")

    assert processed.status == JobStatus.WAITING.value
    failures = await _failures(engine.database, job.id)
    assert failures[0].error_type == "TimeoutError"
    assert await _results(engine.database, job.id) == []


class StubbornHandler:
    """Ignores cancellation and returns after its deadline."""

    def __init__(self):
        self.finished = asyncio.Event()

    async def handle(self, ctx):
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            await asyncio.sleep(0.05)
        self.finished.set()
        return {"zombie": True}


async def test_result_after_deadline_is_discarded(engine, registry, make_job):
    handler = StubbornHandler()
    registry.register("stubborn", handler)
    job = await _submit(engine, make_job("stubborn", timeout=1000))

    processed = await engine.worker_pool().process_next("default")
    await asyncio.wait_for(handler.finished.wait(), timeout=2)
    await asyncio.sleep(0.05)

    assert processed.status == JobStatus.WAITING.value
    assert await _results(engine.database, job.id) == []
    async with engine.database.session() as session:
        stored = await engine.ledger.get(session, job.id)
    assert stored.status == JobStatus.WAITING.value
    assert stored.attempts == 1


class ProgressHandler:
    async def handle(self, ctx):
        await ctx.update_progress(50)
        return {"progressed": True}


async def test_progress_write_failure_does_not_fail_job(
    engine, registry, make_job, monkeypatch
):
    async def broken_update_progress(*args, **kwargs):
        raise PersistenceError("database unavailable")

    monkeypatch.setattr(engine.ledger, "update_progress", broken_update_progress)
    registry.register("progress", ProgressHandler())
    await _submit(engine, make_job("progress"))

    processed = await engine.worker_pool().process_next("default")

    assert processed.status == JobStatus.COMPLETED.value


async def test_http_request_fails_twice_then_succeeds(engine, registry, make_job, clock):
    responses = iter([500, 500, 200])
    requests = []

    def respond(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        status = next(responses)
        if status == 200:
            return httpx.Response(200, json={"accepted": True})
        return httpx.Response(status, text="upstream unavailable")

    registry.register("http-request", HttpRequestHandler(httpx.MockTransport(respond)))
    job = await _submit(
        engine,
        make_job(
            "http-request",
            payload={"url": "https://hooks.example.com/ping", "method": "post", "body": {"n": 1}},
            max_retries=3,
        ),
    )
    pool = engine.worker_pool(worker_id="w1")

    for _ in range(3):
        processed = await pool.process_next("default")
        clock.advance(minutes=10)

    assert processed.status == JobStatus.COMPLETED.value
    assert processed.attempts == 3
    assert [r.method for r in requests] == ["POST", "POST", "POST"]

    failures = await _failures(engine.database, job.id)
    assert len(failures) == 2
    assert all("HTTP 500" in f.error_message for f in failures)

    results = await _results(engine.database, job.id)
    assert len(results) == 1
    assert results[0].result["status"] == 200
    assert results[0].result["body"] == {"accepted": True}


class ConcurrencyProbe:
    def __init__(self):
        self.running = 0
        self.peak = 0

    async def handle(self, ctx):
        self.running += 1
        self.peak = max(self.peak, self.running)
        await asyncio.sleep(0.1)
        self.running -= 1
        return None


async def test_pool_bounds_concurrency(engine, registry, make_job):
    probe = ConcurrencyProbe()
    registry.register("probe", probe)
    jobs = [await _submit(engine, make_job("probe")) for _ in range(6)]

    pool = engine.worker_pool(concurrency=2)
    await pool.start()
    try:
        await _wait_for_status(engine, [j.id for j in jobs], JobStatus.COMPLETED.value)
    finally:
        await pool.stop()

    assert probe.peak == 2
    assert pool.active_jobs == {}


async def test_pool_picks_up_jobs_submitted_while_running(engine, registry, make_job):
    registry.register("echo", RecordingHandler())
    pool = engine.worker_pool(concurrency=1)
    await pool.start()
    try:
        job = await _submit(engine, make_job("echo"))
        await _wait_for_status(engine, [job.id], JobStatus.COMPLETED.value)
    finally:
        await pool.stop()

    assert pool.running is False


async def test_stop_waits_for_in_flight_jobs(engine, registry, make_job):
    class Sleeper:
        async def handle(self, ctx):
            await asyncio.sleep(0.3)
            return {"slept": True}

    registry.register("sleeper", Sleeper())
    job = await _submit(engine, make_job("sleeper"))
    pool = engine.worker_pool(concurrency=1)
    await pool.start()
    await _wait_for_status(engine, [job.id], JobStatus.ACTIVE.value)

    await pool.stop(grace_s=5)

    async with engine.database.session() as session:
        stored = await engine.ledger.get(session, job.id)
    assert stored.status == JobStatus.COMPLETED.value


async def test_pool_keeps_claiming_after_connection_error(
    engine, registry, make_job, monkeypatch
):
    registry.register("echo", RecordingHandler())
    claim = engine.ledger.claim
    calls = []

    async def flaky_claim(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise ConnectionRefusedError("db down")
        return await claim(*args, **kwargs)

    monkeypatch.setattr(engine.ledger, "claim", flaky_claim)

    pool = engine.worker_pool(concurrency=1)
    await pool.start()
    try:
        job = await _submit(engine, make_job("echo"))
        await _wait_for_status(engine, [job.id], JobStatus.COMPLETED.value)
        assert pool.running is True
    finally:
        await pool.stop()

    assert len(calls) >= 2


async def test_pool_restarts_a_dispatch_loop_that_died(
    engine, registry, make_job, monkeypatch
):
    registry.register("echo", RecordingHandler())
    subscribe = engine.broker.subscribe
    subscriptions = []

    def broken_once(queue_name):
        subscriptions.append(queue_name)
        if len(subscriptions) == 1:
            raise RuntimeError("broker unavailable")
        return subscribe(queue_name)

    monkeypatch.setattr(engine.broker, "subscribe", broken_once)

    pool = engine.worker_pool(concurrency=1)
    await pool.start()
    try:
        job = await _submit(engine, make_job("echo"))
        await _wait_for_status(engine, [job.id], JobStatus.COMPLETED.value)
        assert pool.running is True
    finally:
        await pool.stop()

    assert subscriptions == ["default", "default"]
