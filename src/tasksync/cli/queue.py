"""
tasksync CLI - Inspect and manage the local mutation queue.

None of these commands talk to the network: ``retry`` only makes failed
mutations eligible again, the next ``tasksync sync flush`` delivers them.
"""

import typer
from rich.console import Console
from rich.table import Table

from tasksync.cli.common import get_config, open_engine, run_async
from tasksync.cli.errors import ExitCode, print_mutation_not_found_error
from tasksync.core.sync import MutationStatus, PendingMutation

console = Console()
app = typer.Typer(
    name="queue",
    help="Inspect and manage queued (unsynced) changes",
    no_args_is_help=True,
)


def _format_status(mutation: PendingMutation) -> str:
    if mutation.status == MutationStatus.FAILED:
        return "[red]failed[/red]"
    if mutation.attempts:
        return f"[yellow]retrying ({mutation.attempts})[/yellow]"
    return "[blue]pending[/blue]"


def _format_target(mutation: PendingMutation) -> str:
    if mutation.order_scope is not None:
        return f"order of {mutation.order_scope}"
    return f"{mutation.entity_kind.value} {mutation.entity_id}"


@app.command("list")
def list_mutations(
    failed: bool = typer.Option(
        False,
        "--failed",
        help="Only show mutations that exhausted their retries",
    ),
) -> None:
    """
    List queued mutations in delivery order.

    Examples:
        tasksync queue list
        tasksync queue list --failed
    """
    config = get_config()

    async def _list(status: MutationStatus | None) -> list[PendingMutation]:
        async with open_engine(config, offline=True) as engine:
            return engine.queue.list_mutations(status)

    mutations = run_async(_list, MutationStatus.FAILED if failed else None)
    if not mutations:
        console.print("[green]✓[/green] Nothing queued")
        return

    table = Table(title=f"Queued mutations ({len(mutations)})")
    table.add_column("ID", style="cyan")
    table.add_column("Change")
    table.add_column("Target")
    table.add_column("Status")
    table.add_column("Last error", style="dim")

    for mutation in mutations:
        table.add_row(
            mutation.id,
            f"{mutation.method} {mutation.target_path}",
            _format_target(mutation),
            _format_status(mutation),
            mutation.last_error or "",
        )
    console.print(table)


@app.command()
def retry() -> None:
    """
    Give every failed mutation a fresh retry budget.

    Examples:
        tasksync queue retry && tasksync sync flush
    """
    config = get_config()

    async def _retry() -> int:
        async with open_engine(config, offline=True) as engine:
            return engine.queue.retry_failed()

    count = run_async(_retry)
    if count:
        console.print(
            f"[green]✓[/green] {count} failed mutation(s) will be retried on next flush"
        )
    else:
        console.print("[blue]No failed mutations[/blue]")


@app.command()
def discard(
    mutation_id: str = typer.Argument(..., help="Mutation ID (see: tasksync queue list)"),
) -> None:
    """
    Drop one queued mutation and roll back its local change.

    Examples:
        tasksync queue discard mut-3f2a9c1d0b7e
    """
    config = get_config()

    async def _discard() -> bool:
        async with open_engine(config, offline=True) as engine:
            return engine.queue.cancel(mutation_id)

    if not run_async(_discard):
        print_mutation_not_found_error(mutation_id)
        raise typer.Exit(ExitCode.USER_ERROR)
    console.print(f"[green]✓[/green] Discarded {mutation_id}")


@app.command()
def clear(
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Skip confirmation prompt",
    ),
) -> None:
    """
    Discard every queued mutation, rolling back all unsynced local changes.
    """
    config = get_config()
    if not yes and not typer.confirm("Discard all unsynced changes?"):
        raise typer.Exit(ExitCode.SUCCESS)

    async def _clear() -> int:
        async with open_engine(config, offline=True) as engine:
            return engine.queue.clear()

    count = run_async(_clear)
    console.print(f"[green]✓[/green] Discarded {count} mutation(s)")


__all__ = ["app"]
