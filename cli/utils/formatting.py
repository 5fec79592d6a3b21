"""Rich Formatting Utilities for CLI Output"""

from datetime import datetime

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from orchestrator.jobs.schemas import JobDetail, QueueStats
from orchestrator.jobs.types import JobStatus

console = Console()

STATUS_STYLES = {
    JobStatus.PENDING: "yellow",
    JobStatus.PROCESSING: "blue",
    JobStatus.COMPLETED: "green",
    JobStatus.FAILED: "red",
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


def format_age(seconds: float | None) -> str:
    """Render a duration in seconds as a short human string"""
    if seconds is None:
        return "—"
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m {seconds % 60}s"
    return f"{seconds // 3600}h {(seconds % 3600) // 60}m"


def format_timestamp(value: datetime | None) -> str:
    if value is None:
        return "—"
    return value.strftime("%Y-%m-%d %H:%M:%S UTC")


def create_queue_stats_table(stats: list[QueueStats]) -> Table:
    """Create a formatted table of per-queue backlog counts"""
    table = Table(title="Queues", box=box.ROUNDED)

    table.add_column("Queue", justify="left", style="cyan", no_wrap=True)
    table.add_column("Pending", justify="right", style="yellow")
    table.add_column("Processing", justify="right", style="blue")
    table.add_column("Completed", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Oldest ready", justify="right", style="magenta")
    table.add_column("Limit", justify="right", style="white")

    for row in stats:
        table.add_row(
            row.queue.value,
            str(row.pending),
            str(row.processing),
            str(row.completed),
            str(row.failed),
            format_age(row.oldest_pending_age_s),
            str(row.limit) if row.limit is not None else "∞",
        )

    return table


def create_jobs_table(jobs: list[JobDetail]) -> Table:
    """Create a formatted table for a jobs list"""
    table = Table(title="Jobs", box=box.ROUNDED)

    table.add_column("ID", justify="right", style="cyan", no_wrap=True)
    table.add_column("Type", justify="left", style="magenta")
    table.add_column("Queue", justify="center")
    table.add_column("Priority", justify="right")
    table.add_column("Status", justify="center")
    table.add_column("Attempts", justify="center")
    table.add_column("Scheduled", justify="left", style="yellow")

    for job in jobs:
        style = STATUS_STYLES[job.status]
        table.add_row(
            str(job.id),
            job.job_type,
            job.queue.value,
            str(job.priority),
            f"[{style}]{job.status.value}[/{style}]",
            f"{job.attempts}/{job.max_attempts}",
            format_timestamp(job.scheduled_at),
        )

    return table


def create_job_panel(job: JobDetail) -> Panel:
    """Create a detail panel for one job"""
    style = STATUS_STYLES[job.status]
    lines = [
        f"• Type: [magenta]{job.job_type}[/magenta]",
        f"• Queue: [cyan]{job.queue.value}[/cyan] (priority {job.priority})",
        f"• Status: [{style}]{job.status.value}[/{style}]",
        f"• Attempts: {job.attempts}/{job.max_attempts}",
        f"• Scheduled: {format_timestamp(job.scheduled_at)}",
        f"• Locked: {format_timestamp(job.locked_at)} by {job.locked_by or '—'}",
        f"• Completed: {format_timestamp(job.completed_at)}",
        f"• Failed: {format_timestamp(job.failed_at)}",
        f"• Created: {format_timestamp(job.created_at)}",
        f"• Payload: [dim]{job.payload}[/dim]",
    ]
    if job.last_error:
        lines.append(f"\n[bold red]Last error[/bold red]\n{job.last_error}")

    return Panel("\n".join(lines), title=f"Job {job.id}", border_style=style)
