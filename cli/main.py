"""Delayed Jobs CLI - Main Entry Point"""

import asyncio

import typer
from rich.console import Console
from rich.panel import Panel

from orchestrator.config.settings import settings
from orchestrator.infra.database import get_database

# Import command modules
from .commands import jobs, worker
from .utils.formatting import print_error, print_success

console = Console()

# Create main Typer app
app = typer.Typer(
    name="delayed-jobs",
    help="⏱️ Delayed Jobs - database-backed job orchestration CLI",
    rich_markup_mode="rich",
)

# Add command subapps
app.add_typer(worker.app, name="worker")
app.add_typer(jobs.app, name="jobs")


@app.command("init-db")
def init_db():
    """🗄️ Create the delayed_jobs table (development; use alembic in production)"""

    async def create() -> None:
        database = get_database()
        try:
            await database.create_tables()
        finally:
            await database.close()

    try:
        asyncio.run(create())
    except Exception as e:
        print_error(f"Failed to create tables: {e}")
        raise typer.Exit(1) from None

    print_success("Database tables created")


@app.command()
def version():
    """📎 Show version information"""
    console.print(Panel(
        f"⏱️ [bold cyan]{settings.app_name}[/bold cyan]\n\n"
        f"• Version: [green]{settings.version}[/green]\n"
        f"• Environment: [yellow]{settings.environment}[/yellow]",
        title="Version Info",
        border_style="cyan"
    ))


if __name__ == "__main__":
    app()
