"""Long-running process commands - worker pool and scheduler"""

import asyncio
import signal

import typer

from jobs_engine.config.logging import bind_worker_context
from jobs_engine.engine import Engine

from ..utils.formatting import print_info, print_success
from ..utils.runtime import run_with_engine


def _stop_on_signals(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)


def worker(
    queue: list[str] | None = typer.Option(
        None, "--queue", "-q", help="Queue to consume (repeatable)"
    ),
    concurrency: int | None = typer.Option(
        None, "--concurrency", "-c", min=1, help="Jobs run at once"
    ),
):
    """⚙️ Run a worker pool until interrupted"""

    async def _run(engine: Engine):
        pool = engine.worker_pool(queues=queue or None, concurrency=concurrency)
        bind_worker_context(pool.worker_id)
        print_info(
            f"Worker {pool.worker_id} consuming {', '.join(pool.queues)} "
            f"with concurrency {pool.concurrency}"
        )

        stop = asyncio.Event()
        _stop_on_signals(stop)
        await pool.start()
        await stop.wait()
        await pool.stop()

    run_with_engine(_run)
    print_success("Worker stopped")


def scheduler(
    once: bool = typer.Option(False, "--once", help="Fire due schedules once and exit"),
):
    """⏰ Run the scheduler until interrupted"""

    async def _run(engine: Engine):
        sched = engine.scheduler()
        if once:
            return await sched.tick()

        stop = asyncio.Event()
        _stop_on_signals(stop)
        runner = asyncio.create_task(sched.run())
        await stop.wait()
        sched.stop()
        await runner
        return []

    produced = run_with_engine(_run)
    if once:
        print_success(f"Scheduler produced {len(produced)} jobs")
    else:
        print_success("Scheduler stopped")
