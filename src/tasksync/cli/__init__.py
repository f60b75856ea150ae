"""
tasksync CLI - Main application entry point.

This module sets up the Typer CLI application with all subcommands.
"""

import typer
from rich.console import Console
from rich.table import Table

from tasksync import __version__
from tasksync.cli import queue, sync
from tasksync.cli.common import get_config, open_engine, open_store, run_async, setup_logging
from tasksync.cli.errors import ExitCode
from tasksync.core.config.env import load_layered_env
from tasksync.core.entities import SyncStatus, Task

# Create the main Typer app
app = typer.Typer(
    name="tasksync",
    help="Offline-first sync for collaborative task lists",
    no_args_is_help=True,
    add_completion=False,
    context_settings={"help_option_names": ["--help", "-h"]},
)

console = Console()

STATUS_STYLES = {
    SyncStatus.SYNCED: "[green]synced[/green]",
    SyncStatus.PENDING: "[yellow]pending[/yellow]",
    SyncStatus.FAILED: "[red]failed[/red]",
}


@app.callback()
def main(
    ctx: typer.Context,
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Enable debug output with detailed logging",
    ),
) -> None:
    """
    tasksync - offline-first sync for collaborative task lists.

    Changes made while offline are queued locally and delivered, in order,
    once the task API is reachable again.

    Common Workflows:
        tasksync status              # Cache and queue overview
        tasksync tasks --list L1     # Tasks of a list, in manual order
        tasksync sync resync         # Refresh from the server
        tasksync sync flush          # Deliver queued changes
        tasksync queue list          # What is still unsynced
    """
    # Precedence: OS env > project .env > user .env
    load_layered_env()
    setup_logging(debug)
    ctx.obj = {"debug": debug}


@app.command()
def status() -> None:
    """Show what is cached locally and what is still waiting to sync."""
    config = get_config()
    with open_store(config) as store:
        info = store.storage_info()

    table = Table(title="tasksync status", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("API", config.remote.api_url)
    table.add_row("Store", str(config.store.db_path))
    table.add_row("Lists", str(info["lists"]))
    table.add_row("Tasks", str(info["tasks"]))
    table.add_row("Members", str(info["members"]))
    table.add_row("Queued changes", str(info["mutations"]))
    console.print(table)

    if info["mutations"]:
        console.print("\n[dim]→ Run [bold]tasksync sync flush[/bold] to deliver them[/dim]")


@app.command()
def tasks(
    list_id: str | None = typer.Option(
        None,
        "--list",
        "-l",
        help="Only show this list's tasks, in its manual order",
    ),
    mine: bool = typer.Option(
        False,
        "--mine",
        help="Show the tasks assigned to you (TASKSYNC_USER_ID)",
    ),
) -> None:
    """
    Show cached tasks.

    Examples:
        tasksync tasks
        tasksync tasks --list list-42
        tasksync tasks --mine
    """
    config = get_config()
    scope = config.ordering.my_tasks_scope if mine else list_id

    async def _tasks() -> list[Task]:
        async with open_engine(config, offline=True) as engine:
            if scope is not None:
                return engine.tasks_in_order(scope)
            return [t for t in engine.get_merged_view("task") if isinstance(t, Task)]

    rows = run_async(_tasks)
    if not rows:
        console.print("[blue]No tasks cached[/blue]")
        return

    table = Table(title=f"Tasks ({len(rows)})")
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Done")
    table.add_column("Sync")
    for task in rows:
        table.add_row(
            task.id,
            task.title,
            "✓" if task.completed else "",
            STATUS_STYLES[task.sync_status],
        )
    console.print(table)


@app.command()
def reset(
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Skip confirmation prompt",
    ),
) -> None:
    """Delete the whole local cache, including unsynced changes."""
    config = get_config()
    if not yes and not typer.confirm("Delete the local cache and all unsynced changes?"):
        raise typer.Exit(ExitCode.SUCCESS)
    with open_store(config) as store:
        store.clear_all()
    console.print("[green]✓[/green] Local cache cleared")


app.add_typer(sync.app, name="sync")
app.add_typer(queue.app, name="queue")


@app.command()
def version() -> None:
    """Show tasksync version and exit."""
    console.print(f"tasksync version {__version__}")
    raise typer.Exit(0)


def cli_main() -> None:
    """Main CLI entry point."""
    app()


__all__ = ["app", "cli_main"]
