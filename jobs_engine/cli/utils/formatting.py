"""Rich Formatting Utilities for CLI Output"""

from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

STATUS_STYLES = {
    "waiting": "yellow",
    "active": "cyan",
    "completed": "green",
    "failed": "red",
    "cancelled": "dim",
}


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str):
    """Print warning message with yellow styling"""
    console.print(f"[yellow]⚠ {message}[/yellow]")


def print_info(message: str):
    """Print info message with blue styling"""
    console.print(f"[blue]ℹ {message}[/blue]")


def _status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def _when(value: Any) -> str:
    if value is None:
        return "—"
    return value.strftime("%Y-%m-%d %H:%M:%S") if hasattr(value, "strftime") else str(value)


def create_jobs_table(jobs: list[Any], title: str = "Jobs") -> Table:
    """Create a formatted table for a list of jobs"""
    table = Table(title=title, box=box.ROUNDED)

    table.add_column("ID", justify="left", style="cyan", no_wrap=True)
    table.add_column("Type", justify="left", style="magenta")
    table.add_column("Queue", justify="left")
    table.add_column("Status", justify="center")
    table.add_column("Priority", justify="right")
    table.add_column("Attempts", justify="center")
    table.add_column("Created", justify="left", style="dim")

    for job in jobs:
        table.add_row(
            str(job.id),
            job.job_type,
            job.queue_name,
            _status(job.status),
            str(job.priority),
            f"{job.attempts}/{job.max_retries + 1}",
            _when(job.created_at),
        )

    return table


def create_job_panel(detail: Any) -> Panel:
    """Create formatted panel for one job with its history"""
    job = detail.job
    lines = [
        f"• Type: [magenta]{job.job_type}[/magenta]",
        f"• Queue: {job.queue_name}",
        f"• Status: {_status(job.status)}",
        f"• Priority: {job.priority}",
        f"• Attempts: {job.attempts}/{job.max_retries + 1}",
        f"• Progress: {job.progress}%",
        f"• Scheduled for: {_when(job.scheduled_for)}",
        f"• Started: {_when(job.started_at)}",
        f"• Finished: {_when(job.completed_at)}",
    ]
    if job.duration_ms is not None:
        lines.append(f"• Duration: [yellow]{job.duration_ms}ms[/yellow]")
    if detail.result is not None:
        lines.append(f"\n[bold green]Result[/bold green]\n{detail.result.result}")
    if detail.failures:
        lines.append("\n[bold red]Failures[/bold red]")
        for failure in detail.failures:
            retry = "retrying" if failure.will_retry else "final"
            lines.append(
                f"  #{failure.attempt_number} {failure.error_type}: "
                f"{failure.error_message} ({retry})"
            )

    return Panel("\n".join(lines), title=f"Job {job.id}", border_style="cyan")


def create_stats_panel(stats: Any) -> Panel:
    """Create formatted panel for the stats overview"""
    window = f"last {stats.window_hours}h" if stats.window_hours else "all time"
    avg = f"{stats.avg_duration_ms:.0f}ms" if stats.avg_duration_ms is not None else "—"
    status_lines = "\n".join(
        f"  {_status(status)}: {count}" for status, count in stats.by_status.items()
    )
    content = f"""
📊 [bold blue]Job Statistics ({window})[/bold blue]

• Total jobs: [blue]{stats.total_jobs}[/blue]
• Queue depth: [yellow]{stats.queue_depth}[/yellow]
• Avg duration: [green]{avg}[/green]

{status_lines}
"""
    return Panel(content, title="Stats Overview", border_style="green")


def create_job_types_table(stats: Any) -> Table:
    """Create formatted table of per-type stats"""
    table = Table(title="By Job Type", box=box.ROUNDED)

    table.add_column("Type", style="magenta")
    table.add_column("Total", justify="right")
    table.add_column("Completed", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Avg ms", justify="right", style="yellow")

    for row in stats.job_types:
        table.add_row(
            row.job_type,
            str(row.total_jobs),
            str(row.completed),
            str(row.failed),
            f"{row.avg_duration_ms:.0f}" if row.avg_duration_ms is not None else "—",
        )

    return table


def create_schedules_table(schedules: list[Any]) -> Table:
    """Create formatted table for schedules"""
    table = Table(title="Schedules", box=box.ROUNDED)

    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Cron", style="magenta")
    table.add_column("Timezone")
    table.add_column("Job Type")
    table.add_column("Enabled", justify="center")
    table.add_column("Next Run", style="yellow")
    table.add_column("Runs", justify="right")

    for schedule in schedules:
        runs = str(schedule.total_runs)
        if schedule.max_runs is not None:
            runs += f"/{schedule.max_runs}"
        table.add_row(
            schedule.name,
            schedule.cron_expression,
            schedule.timezone,
            schedule.job_type,
            "[green]yes[/green]" if schedule.enabled else "[red]no[/red]",
            _when(schedule.next_run_at),
            runs,
        )

    return table


def create_schedule_panel(schedule: Any) -> Panel:
    """Create formatted panel for one schedule"""
    content = f"""
• Cron: [magenta]{schedule.cron_expression}[/magenta] ({schedule.timezone})
• Job: {schedule.job_type} on queue {schedule.queue_name}
• Enabled: {"[green]yes[/green]" if schedule.enabled else "[red]no[/red]"}
• Next run: [yellow]{_when(schedule.next_run_at)}[/yellow]
• Last run: {_when(schedule.last_run_at)}
• Runs: {schedule.total_runs} total, [green]{schedule.successful_runs} ok[/green], [red]{schedule.failed_runs} failed[/red]
"""
    if schedule.description:
        content = f"{schedule.description}\n{content}"
    return Panel(content, title=f"Schedule {schedule.name}", border_style="cyan")
