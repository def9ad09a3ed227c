"""Job Queue CLI - Main Entry Point"""

import typer
from typing import Optional
from rich.console import Console
from rich.panel import Panel

from jobqueue import __version__

# Import command modules
from .commands import queue, worker

console = Console()

# Create main Typer app
app = typer.Typer(
    name="jobqueue",
    help="⚙️ Job Queue - database-backed background jobs",
    rich_markup_mode="rich",
)

app.command("work")(worker.work)
app.command("stats")(queue.stats)
app.command("list")(queue.list_jobs)
app.command("clear-locks")(queue.clear_locks)
app.command("clear")(queue.clear)
app.command("retry")(queue.retry)
app.command("init-db")(queue.init_db)


@app.command()
def version():
    """📎 Show version information"""
    console.print(Panel(
        f"⚙️ [bold cyan]Job Queue[/bold cyan]\n\n"
        f"• Version: [green]{__version__}[/green]",
        title="Version Info",
        border_style="cyan"
    ))


@app.callback()
def main(
    ctx: typer.Context,
    version: Optional[bool] = typer.Option(
        None, "--version", "-v", help="Show version and exit"
    ),
):
    """
    ⚙️ Job Queue CLI

    Run workers and inspect or maintain the shared jobs table.
    Settings come from the environment or a .env file (DATABASE_URL, WORKER_NAME, ...).
    """
    if version:
        console.print(f"Job Queue v{__version__}")
        raise typer.Exit()


if __name__ == "__main__":
    app()
