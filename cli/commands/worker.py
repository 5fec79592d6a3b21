"""Worker Commands - Run job supervisor loops"""

import asyncio
import signal

import typer

from orchestrator.jobs.types import JobQueue
from orchestrator.jobs.worker import JobWorker
from orchestrator.main import create_worker

from ..utils.formatting import print_info, print_success

app = typer.Typer(name="worker", help="Job worker commands")


async def _serve(worker: JobWorker) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.ensure_future(worker.stop()))

    try:
        await worker.start()
    finally:
        await worker.database.close()


@app.command("run")
def run(
    queues: list[JobQueue] | None = typer.Option(
        None, "--queue", "-q", help="Queue family to serve (repeatable, default: all)"
    ),
    concurrency: int | None = typer.Option(
        None, "--concurrency", "-c", help="Supervisor loops in this process"
    ),
):
    """⚙️ Run a job worker until interrupted"""
    worker = create_worker(queues=queues or None, concurrency=concurrency)

    print_info(
        f"Worker {worker.worker_id} serving "
        f"{', '.join(queue.value for queue in worker.queues)} "
        f"with {worker.concurrency} loop(s)"
    )
    asyncio.run(_serve(worker))
    print_success("Worker stopped")
