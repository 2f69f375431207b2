"""Schedule Commands - Recurring jobs driven by cron expressions"""

import typer
from pydantic import ValidationError as PydanticValidationError

from jobs_engine.engine import Engine
from jobs_engine.v1.jobs.schemas import JobOptions
from jobs_engine.v1.schedules.schemas import ScheduleCreate

from ..utils.formatting import (
    console,
    create_schedule_panel,
    create_schedules_table,
    print_error,
    print_info,
    print_success,
)
from ..utils.runtime import parse_json_option, run_with_engine

app = typer.Typer(name="schedules", help="Recurring schedule commands")


@app.command("create")
def create_schedule(
    name: str = typer.Argument(..., help="Unique schedule name"),
    cron: str = typer.Argument(..., help='Cron expression, e.g. "0 2 * * *"'),
    job_type: str = typer.Option(..., "--type", "-t", help="Job type to produce"),
    payload: str | None = typer.Option(None, "--payload", "-p", help="JSON payload"),
    queue: str = typer.Option("default", "--queue", "-q"),
    timezone: str = typer.Option("UTC", "--timezone", "--tz"),
    priority: int = typer.Option(0, "--priority"),
    max_runs: int | None = typer.Option(None, "--max-runs"),
    description: str | None = typer.Option(None, "--description", "-d"),
    disabled: bool = typer.Option(False, "--disabled", help="Create without enabling"),
):
    """➕ Create a schedule"""
    try:
        schedule_create = ScheduleCreate(
            name=name,
            description=description,
            job_type=job_type,
            queue=queue,
            payload=parse_json_option(payload, "--payload") or {},
            options=JobOptions(priority=priority),
            cron_expression=cron,
            timezone=timezone,
            enabled=not disabled,
            max_runs=max_runs,
        )
    except PydanticValidationError as e:
        print_error(f"Invalid schedule: {e.errors()[0]['msg']}")
        raise typer.Exit(1) from None

    async def _create(engine: Engine):
        async with engine.database.session() as session:
            return await engine.schedules.create(session, schedule_create)

    schedule = run_with_engine(_create)
    print_success(f"Schedule {schedule.name} created")
    console.print(create_schedule_panel(schedule))


@app.command("list")
def list_schedules(
    enabled_only: bool = typer.Option(False, "--enabled", help="Only enabled schedules"),
):
    """📋 List schedules"""

    async def _list(engine: Engine):
        async with engine.database.session() as session:
            return await engine.schedules.list_schedules(
                session, enabled=True if enabled_only else None
            )

    schedules = run_with_engine(_list)
    if not schedules:
        print_info("No schedules")
        return
    console.print(create_schedules_table(schedules))


@app.command("show")
def show_schedule(name: str = typer.Argument(...)):
    """🔎 Show a schedule"""

    async def _show(engine: Engine):
        async with engine.database.session() as session:
            return await engine.schedules.get_by_name(session, name)

    console.print(create_schedule_panel(run_with_engine(_show)))


def _set_enabled(name: str, enabled: bool):
    async def _toggle(engine: Engine):
        async with engine.database.session() as session:
            return await engine.schedules.set_enabled(session, name, enabled)

    return run_with_engine(_toggle)


@app.command("enable")
def enable_schedule(name: str = typer.Argument(...)):
    """▶️ Enable a schedule"""
    schedule = _set_enabled(name, True)
    print_success(f"Schedule {name} enabled, next run {schedule.next_run_at}")


@app.command("disable")
def disable_schedule(name: str = typer.Argument(...)):
    """⏸️ Disable a schedule"""
    _set_enabled(name, False)
    print_success(f"Schedule {name} disabled")


@app.command("delete")
def delete_schedule(
    name: str = typer.Argument(...),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """🗑️ Delete a schedule"""
    if not yes and not typer.confirm(f"Delete schedule {name}?"):
        raise typer.Exit()

    async def _delete(engine: Engine):
        async with engine.database.session() as session:
            await engine.schedules.delete(session, name)

    run_with_engine(_delete)
    print_success(f"Schedule {name} deleted")
