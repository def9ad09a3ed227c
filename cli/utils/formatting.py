"""Rich Formatting Utilities for Job Queue CLI Output"""

from datetime import datetime

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from jobqueue.jobs.models import Job
from jobqueue.jobs.schemas import JobStats

console = Console()


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


def _format_time(value: datetime | None) -> str:
    if value is None:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M:%S")


def create_jobs_table(jobs: list[Job], title: str = "Jobs") -> Table:
    """Create a formatted table for the jobs list"""
    table = Table(title=title, box=box.ROUNDED)

    table.add_column("ID", justify="right", style="cyan", no_wrap=True)
    table.add_column("Name", justify="left", style="white")
    table.add_column("Priority", justify="center", style="magenta")
    table.add_column("Attempts", justify="center", style="yellow")
    table.add_column("Run At", justify="center", style="green")
    table.add_column("Locked By", justify="left", style="blue")
    table.add_column("Failed At", justify="center", style="red")
    table.add_column("Recurs", justify="center", style="white")

    for job in jobs:
        table.add_row(
            str(job.id),
            job.name,
            str(job.priority),
            str(job.attempts),
            _format_time(job.run_at),
            job.locked_by or "-",
            _format_time(job.failed_at),
            job.reoccur_in or "-",
        )

    return table


def create_stats_panel(stats: JobStats) -> Panel:
    """Create formatted panel for queue statistics"""
    content = f"""
📊 [bold blue]Queue Statistics[/bold blue]

• Total Jobs: [blue]{stats.total}[/blue]
• Ready: [green]{stats.ready}[/green]
• Scheduled: [yellow]{stats.scheduled}[/yellow]
• Locked: [cyan]{stats.locked}[/cyan]
• Failed: [red]{stats.failed}[/red]
• Recurring: [purple]{stats.recurring}[/purple]
"""

    border = "red" if stats.failed else "green"
    return Panel(content, title="Job Queue", border_style=border)
