"""
tasksync CLI - Deliver queued changes and refresh the local cache.
"""

import typer
from rich.console import Console

from tasksync.cli.common import get_config, open_engine, run_async
from tasksync.cli.errors import ExitCode, print_remote_error
from tasksync.core.sync import FlushResult, RemoteError

console = Console()
app = typer.Typer(
    name="sync",
    help="Deliver queued changes and refresh from the server",
    no_args_is_help=True,
)


@app.command()
def flush() -> None:
    """
    Deliver every due queued mutation now.

    Mutations that fail transiently stay queued with backoff; run the
    command again later (or ``tasksync queue list`` to see why).

    Examples:
        tasksync sync flush
    """
    config = get_config()

    async def _flush() -> tuple[FlushResult, list[str]]:
        async with open_engine(config) as engine:
            result = await engine.flush()
            return result, [f"{n.message}: {n.reason}" for n in engine.notifications]

    result, problems = run_async(_flush)

    if not result.attempted:
        console.print("[blue]Nothing to deliver[/blue]")
    if result.delivered:
        console.print(f"[green]✓[/green] Delivered {len(result.delivered)} change(s)")
    for temp_id, real_id in result.id_mappings.items():
        console.print(f"[dim]  {temp_id} → {real_id}[/dim]")
    if result.retried:
        console.print(f"[yellow]⚠[/yellow]  {len(result.retried)} change(s) will be retried")
    if result.deferred:
        console.print(f"[dim]{len(result.deferred)} change(s) waiting on earlier ones[/dim]")
    for problem in problems:
        console.print(f"[red]✗[/red] {problem}")

    if result.rejected or result.failed:
        raise typer.Exit(ExitCode.GENERAL_ERROR)


@app.command()
def resync() -> None:
    """
    Refetch all lists and tasks and merge them with unsynced local changes.

    Examples:
        tasksync sync resync
    """
    config = get_config()

    async def _resync() -> dict[str, int]:
        async with open_engine(config) as engine:
            return await engine.resync()

    try:
        counts = run_async(_resync)
    except RemoteError as e:
        print_remote_error(str(e))
        raise typer.Exit(ExitCode.GENERAL_ERROR)

    summary = ", ".join(f"{count} {kind}s" for kind, count in counts.items())
    console.print(f"[green]✓[/green] Refreshed: {summary}")


__all__ = ["app"]
