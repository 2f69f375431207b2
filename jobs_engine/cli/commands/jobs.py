"""Job Commands - Submit, inspect, retry and cancel jobs"""

from uuid import UUID

import typer
from pydantic import ValidationError as PydanticValidationError

from jobs_engine.engine import Engine
from jobs_engine.v1.jobs.schemas import JobCreate, JobOptions

from ..utils.formatting import (
    console,
    create_job_panel,
    create_job_types_table,
    create_jobs_table,
    create_stats_panel,
    print_error,
    print_info,
    print_success,
    print_warning,
)
from ..utils.runtime import parse_json_option, run_with_engine

app = typer.Typer(name="jobs", help="Job submission and management commands")


def _parse_id(value: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        print_error(f"Invalid job id: {value}")
        raise typer.Exit(1) from None


@app.command("submit")
def submit_job(
    job_type: str = typer.Argument(..., help="Job type, e.g. http-request"),
    payload: str | None = typer.Option(None, "--payload", "-p", help="JSON payload"),
    queue: str = typer.Option("default", "--queue", "-q", help="Queue name"),
    priority: int = typer.Option(0, "--priority", help="Higher runs first"),
    max_retries: int | None = typer.Option(None, "--max-retries", help="Retry budget"),
    delay: int = typer.Option(0, "--delay", help="Delay in milliseconds"),
    timeout: int | None = typer.Option(None, "--timeout", help="Deadline in milliseconds"),
):
    """📤 Submit a job"""
    try:
        job_create = JobCreate(
            type=job_type,
            queue=queue,
            payload=parse_json_option(payload, "--payload") or {},
            options=JobOptions(
                priority=priority, max_retries=max_retries, delay=delay, timeout=timeout
            ),
        )
    except PydanticValidationError as e:
        print_error(f"Invalid job: {e.errors()[0]['msg']}")
        raise typer.Exit(1) from None

    async def _submit(engine: Engine):
        async with engine.database.session() as session:
            return await engine.jobs.enqueue(session, job_create)

    result = run_with_engine(_submit)
    print_success(f"Job submitted: {result.job_id} (queue {result.queue})")


@app.command("show")
def show_job(job_id: str = typer.Argument(..., help="Job id")):
    """🔎 Show a job with its result and failures"""
    uuid = _parse_id(job_id)

    async def _show(engine: Engine):
        async with engine.database.session() as session:
            return await engine.jobs.get_job(session, uuid)

    console.print(create_job_panel(run_with_engine(_show)))


@app.command("list")
def list_jobs(
    status: list[str] | None = typer.Option(None, "--status", "-s", help="Filter by status"),
    queue: str | None = typer.Option(None, "--queue", "-q"),
    job_type: str | None = typer.Option(None, "--type", "-t"),
    limit: int = typer.Option(20, "--limit", "-n"),
):
    """📋 List recent jobs"""

    async def _list(engine: Engine):
        async with engine.database.session() as session:
            return await engine.jobs.list_jobs(
                session, statuses=status, queue=queue, job_type=job_type, limit=limit
            )

    response = run_with_engine(_list)
    console.print(create_jobs_table(response.jobs))
    print_info(f"Showing {len(response.jobs)} of {response.total} jobs")


@app.command("failed")
def list_failed(
    queue: str | None = typer.Option(None, "--queue", "-q"),
    job_type: str | None = typer.Option(None, "--type", "-t"),
    limit: int = typer.Option(20, "--limit", "-n"),
):
    """💀 List jobs that exhausted their retries"""

    async def _failed(engine: Engine):
        async with engine.database.session() as session:
            return await engine.jobs.list_failed(
                session, queue=queue, job_type=job_type, limit=limit
            )

    jobs = run_with_engine(_failed)
    if not jobs:
        print_info("No failed jobs")
        return
    console.print(create_jobs_table(jobs, title="Failed Jobs"))


@app.command("retry")
def retry_jobs(
    job_id: str | None = typer.Argument(None, help="Job id to retry"),
    job_type: str | None = typer.Option(None, "--type", "-t", help="Retry failed jobs of a type"),
    queue: str | None = typer.Option(None, "--queue", "-q", help="Retry failed jobs of a queue"),
    limit: int = typer.Option(100, "--limit", "-n"),
):
    """🔁 Retry a failed job, or all failed jobs of a type or queue"""
    if job_id is None and not job_type and not queue:
        print_error("Give a job id, --type or --queue")
        raise typer.Exit(1)

    if job_id is not None:
        uuid = _parse_id(job_id)

        async def _retry_one(engine: Engine):
            async with engine.database.session() as session:
                return await engine.jobs.retry_job(session, uuid)

        job = run_with_engine(_retry_one)
        print_success(f"Job {uuid} retried as {job.id}")
        return

    async def _retry_many(engine: Engine):
        async with engine.database.session() as session:
            if job_type:
                return await engine.jobs.retry_by_type(session, job_type, limit=limit)
            return await engine.jobs.retry_by_queue(session, queue, limit=limit)

    retried = run_with_engine(_retry_many)
    if not retried:
        print_warning("No failed jobs matched")
        return
    print_success(f"Retried {len(retried)} failed jobs")


@app.command("cancel")
def cancel_job(job_id: str = typer.Argument(..., help="Job id")):
    """🛑 Cancel a waiting or active job"""
    uuid = _parse_id(job_id)

    async def _cancel(engine: Engine):
        async with engine.database.session() as session:
            return await engine.jobs.cancel_job(session, uuid)

    if run_with_engine(_cancel):
        print_success(f"Job {uuid} cancelled")
    else:
        print_error(f"Job {uuid} is not waiting or active")
        raise typer.Exit(1)


@app.command("stats")
def show_stats(
    window_hours: int | None = typer.Option(None, "--window", "-w", help="Only the last N hours"),
):
    """📊 Show job statistics"""

    async def _stats(engine: Engine):
        async with engine.database.session() as session:
            return await engine.stats.get_stats(session, window_hours=window_hours)

    stats = run_with_engine(_stats)
    console.print(create_stats_panel(stats))
    if stats.job_types:
        console.print(create_job_types_table(stats))


@app.command("cleanup")
def cleanup_jobs(
    completed_hours: int | None = typer.Option(
        None, "--completed-hours", help="Delete completed jobs older than this"
    ),
    failed_days: int | None = typer.Option(
        None, "--failed-days", help="Delete failed/cancelled jobs older than this"
    ),
):
    """🧹 Delete old terminal jobs"""

    async def _cleanup(engine: Engine):
        async with engine.database.session() as session:
            return await engine.jobs.cleanup(
                session,
                completed_older_than_hours=completed_hours,
                failed_older_than_days=failed_days,
            )

    removed = run_with_engine(_cleanup)
    print_success(f"Removed {removed} jobs")


@app.command("run-once")
def run_once(queue: str = typer.Option("default", "--queue", "-q")):
    """▶️ Claim and run a single job in this process"""

    async def _run(engine: Engine):
        pool = engine.worker_pool(queues=[queue], concurrency=1)
        return await pool.process_next(queue)

    job = run_with_engine(_run)
    if job is None:
        print_info(f"No job ready on queue {queue}")
        return
    print_success(f"Job {job.id} ({job.job_type}) finished attempt {job.attempts}: {job.status}")
