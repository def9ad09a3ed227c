"""Worker Commands - Run the job worker"""

import asyncio
import contextlib
import signal
from typing import Optional

import typer
from pydantic import ValidationError

from jobqueue.infra.database import Database
from jobqueue.jobs.schemas import WorkerOptions, WorkOffResult
from jobqueue.jobs.service import JobService
from jobqueue.jobs.worker import JobWorker

from ..utils.formatting import print_error, print_info, print_success
from ..utils.runtime import load_settings, run_with_service


def work(
    worker_name: Optional[str] = typer.Option(
        None, "--worker-name", "-n", help="Lock owner name (default: host and pid)"
    ),
    min_priority: Optional[int] = typer.Option(
        None, "--min-priority", help="Only run jobs with priority >= this value"
    ),
    max_priority: Optional[int] = typer.Option(
        None, "--max-priority", help="Only run jobs with priority <= this value"
    ),
    once: bool = typer.Option(
        False, "--once", help="Work off one batch and exit instead of polling"
    ),
    num: int = typer.Option(100, "--num", min=1, help="Jobs to run with --once"),
):
    """⚙️ Start a worker that polls the queue and runs jobs"""
    settings = load_settings()

    try:
        options = WorkerOptions.from_settings(
            settings,
            worker_name=worker_name,
            min_priority=min_priority,
            max_priority=max_priority,
        )
    except ValidationError as e:
        print_error(f"Invalid worker options: {e.errors()[0]['msg']}")
        raise typer.Exit(1) from None

    async def operation(service: JobService, database: Database) -> WorkOffResult | None:
        worker = JobWorker(service, database, options)
        if once:
            return await worker.work_off(num)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, lambda: asyncio.ensure_future(worker.stop()))
        await worker.start()
        return None

    print_info(f"Worker '{options.worker_name}' starting")
    result = run_with_service(settings, operation)

    if result is not None:
        message = f"{result.success} succeeded, {result.failure} failed"
        if result.failure:
            print_error(message)
        else:
            print_success(message)
