"""Queue Commands - Inspect and maintain the jobs table"""

from typing import Optional

import typer
from rich.console import Console

from jobqueue.infra.database import Database
from jobqueue.jobs.service import JobService

from ..utils.formatting import (
    create_jobs_table,
    create_stats_panel,
    print_error,
    print_info,
    print_success,
    print_warning,
)
from ..utils.runtime import load_settings, run_with_service

console = Console()


def stats():
    """📊 Show queue statistics"""
    settings = load_settings()

    async def operation(service: JobService, database: Database):
        async with database.SessionLocal() as session:
            return await service.get_stats(session)

    console.print(create_stats_panel(run_with_service(settings, operation)))


def list_jobs(
    failed: bool = typer.Option(False, "--failed", "-f", help="Only show failed jobs"),
    limit: int = typer.Option(50, "--limit", "-l", min=1, help="Maximum jobs to show"),
):
    """📋 List jobs in dequeue order"""
    settings = load_settings()

    async def operation(service: JobService, database: Database):
        async with database.SessionLocal() as session:
            return await service.list_jobs(session, limit=limit, failed_only=failed)

    jobs = run_with_service(settings, operation)
    if not jobs:
        print_info("No failed jobs" if failed else "No jobs in the queue")
        return

    console.print(create_jobs_table(jobs, title="Failed Jobs" if failed else "Jobs"))


def clear_locks(
    worker_name: Optional[str] = typer.Option(
        None, "--worker-name", "-n", help="Worker whose locks to release (default: this host and pid)"
    ),
):
    """🔓 Release every lock held by a worker"""
    settings = load_settings()
    name = worker_name or settings.worker_name

    async def operation(service: JobService, database: Database) -> int:
        async with database.SessionLocal() as session:
            return await service.clear_locks(session, name)

    cleared = run_with_service(settings, operation)
    print_success(f"Released {cleared} lock(s) held by '{name}'")


def clear(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
):
    """🗑️ Delete every job in the queue"""
    if not yes and not typer.confirm("Delete ALL jobs?"):
        print_warning("Aborted")
        raise typer.Exit(1)

    settings = load_settings()

    async def operation(service: JobService, database: Database) -> int:
        async with database.SessionLocal() as session:
            return await service.delete_all(session)

    deleted = run_with_service(settings, operation)
    print_success(f"Deleted {deleted} job(s)")


def retry(job_id: int = typer.Argument(..., help="ID of the failed job")):
    """🔁 Put a permanently failed job back into the queue"""
    settings = load_settings()

    async def operation(service: JobService, database: Database) -> bool:
        async with database.SessionLocal() as session:
            return await service.retry_failed(session, job_id)

    if not run_with_service(settings, operation):
        print_error(f"Job #{job_id} does not exist or has not failed")
        raise typer.Exit(1)
    print_success(f"Job #{job_id} queued for retry")


def init_db():
    """🛠️ Create the jobs table directly (local development and SQLite)"""
    settings = load_settings()

    async def operation(service: JobService, database: Database) -> None:
        await database.create_all()

    run_with_service(settings, operation)
    print_success("Jobs table ready")
