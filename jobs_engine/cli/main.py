"""Jobs Engine CLI - Main Entry Point"""

import typer
from rich.console import Console
from rich.panel import Panel

from jobs_engine.engine import Engine

from . import __version__
from .commands import jobs, schedules, worker
from .utils.formatting import print_success
from .utils.runtime import load_settings, run_with_engine

console = Console()

# Create main Typer app
app = typer.Typer(
    name="jobs-engine",
    help="⚙️ Jobs Engine - durable job queue with retries and cron schedules",
    rich_markup_mode="rich",
    no_args_is_help=True,
)

# Add command subapps
app.add_typer(jobs.app, name="jobs")
app.add_typer(schedules.app, name="schedules")
app.command("worker")(worker.worker)
app.command("scheduler")(worker.scheduler)


@app.command("init-db")
def init_db():
    """🗄️ Create the job tables (development; production uses Alembic)"""

    async def _create(engine: Engine):
        await engine.database.create_all()

    run_with_engine(_create)
    print_success("Database tables created")


@app.command()
def version():
    """📎 Show version information"""
    settings = load_settings()
    console.print(
        Panel(
            f"⚙️ [bold cyan]{settings.app_name}[/bold cyan]\n\n"
            f"• Version: [green]{__version__}[/green]\n"
            f"• Environment: [yellow]{settings.environment}[/yellow]",
            title="Version Info",
            border_style="cyan",
        )
    )


if __name__ == "__main__":
    app()
