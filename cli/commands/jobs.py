"""Jobs Commands - Backlog inspection and manual intervention"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any, TypeVar

import typer
from rich.console import Console
from rich.panel import Panel
from sqlalchemy.ext.asyncio import AsyncSession

from orchestrator.core.exceptions import OrchestratorError
from orchestrator.infra.database import get_database
from orchestrator.jobs.service import JobService
from orchestrator.jobs.types import JobQueue, JobStatus, JobType

from ..utils.formatting import (
    create_job_panel,
    create_jobs_table,
    create_queue_stats_table,
    print_error,
    print_info,
    print_success,
)

console = Console()
app = typer.Typer(name="jobs", help="Job inspection and management commands")

T = TypeVar("T")


def _run(operation: Callable[[JobService, AsyncSession], Awaitable[T]]) -> T:
    """Run one service call in a fresh session, disposing the engine afterwards."""

    async def runner() -> T:
        database = get_database()
        try:
            async with database.session() as session:
                return await operation(JobService(database.settings), session)
        finally:
            await database.close()

    return asyncio.run(runner())


@app.command("stats")
def stats():
    """📊 Show backlog counts per queue family"""
    queue_stats = _run(lambda service, session: service.queue_stats(session))
    console.print(create_queue_stats_table(queue_stats))

    backlog = sum(row.pending for row in queue_stats)
    console.print(f"\n📦 [yellow]{backlog}[/yellow] pending job(s) in total")


@app.command("show")
def show(
    job_id: int = typer.Argument(..., help="Job ID to show"),
):
    """🔍 Show detailed information about a job"""
    try:
        job = _run(lambda service, session: service.get_job(session, job_id))
    except OrchestratorError as e:
        print_error(e.message)
        raise typer.Exit(1) from None

    console.print(create_job_panel(job))


@app.command("list")
def list_jobs(
    status: JobStatus | None = typer.Option(
        None, "--status", "-s", help="Filter by status", case_sensitive=False
    ),
    queue: JobQueue | None = typer.Option(
        None, "--queue", "-q", help="Filter by queue family", case_sensitive=False
    ),
    job_type: JobType | None = typer.Option(
        None, "--type", "-t", help="Filter by job type", case_sensitive=False
    ),
    limit: int = typer.Option(20, "--limit", "-l", help="Number of jobs to show"),
):
    """📋 List the most recent jobs"""
    jobs = _run(
        lambda service, session: service.list_jobs(
            session, status=status, queue=queue, job_type=job_type, limit=limit
        )
    )

    if not jobs:
        console.print(Panel(
            "📭 [yellow]No jobs found![/yellow]\n\n"
            f"Filters applied:\n"
            f"• Status: {status.value if status else 'any'}\n"
            f"• Queue: {queue.value if queue else 'any'}\n"
            f"• Type: {job_type.value if job_type else 'any'}",
            title="Empty Results",
            border_style="yellow"
        ))
        return

    console.print(create_jobs_table(jobs))


@app.command("retry")
def retry(
    job_id: int = typer.Argument(..., help="FAILED job to re-queue"),
    attempts: int = typer.Option(
        1, "--attempts", "-a", min=1, help="Extra attempts to grant"
    ),
):
    """🔁 Re-queue a failed job for immediate execution"""
    try:
        job = _run(
            lambda service, session: service.retry_job(
                session, job_id, extra_attempts=attempts
            )
        )
    except OrchestratorError as e:
        print_error(e.message)
        raise typer.Exit(1) from None

    print_success(
        f"Job {job.id} re-queued on {job.queue.value} "
        f"(attempts {job.attempts}/{job.max_attempts})"
    )


@app.command("enqueue")
def enqueue(
    job_type: JobType = typer.Argument(..., help="Job type", case_sensitive=False),
    payload: str = typer.Option("{}", "--payload", "-p", help="JSON object payload"),
    queue: JobQueue | None = typer.Option(
        None, "--queue", "-q", help="Queue family override", case_sensitive=False
    ),
    priority: int | None = typer.Option(
        None, "--priority", help="Higher runs first (default: the family's urgency)"
    ),
    delay: int = typer.Option(0, "--delay", "-d", min=0, help="Seconds before eligible"),
    max_attempts: int | None = typer.Option(
        None, "--max-attempts", min=1, help="Attempts before terminal failure"
    ),
):
    """➕ Enqueue a job (useful for smoke-testing handlers)"""
    try:
        payload_data: Any = json.loads(payload)
    except json.JSONDecodeError as e:
        print_error(f"Invalid JSON payload: {e}")
        raise typer.Exit(1) from None

    async def operation(service: JobService, session: AsyncSession) -> int:
        not_before = service.clock() + timedelta(seconds=delay) if delay else None
        job_id = await service.enqueue(
            session,
            job_type,
            queue=queue,
            priority=priority,
            payload=payload_data,
            not_before=not_before,
            max_attempts=max_attempts,
        )
        await session.commit()
        return job_id

    try:
        job_id = _run(operation)
    except OrchestratorError as e:
        print_error(e.message)
        raise typer.Exit(1) from None

    print_info(f"Queue: {(queue or job_type.default_queue).value}")
    print_success(f"Enqueued job {job_id} ({job_type.value})")
