"""
Standardized error handling and exit codes for the tasksync CLI.
"""

from enum import IntEnum

from rich.console import Console

console = Console()


class ExitCode(IntEnum):
    """Standard exit codes for tasksync CLI operations."""

    SUCCESS = 0
    """Operation completed successfully."""

    GENERAL_ERROR = 1
    """Generic error or user-triggered error."""

    USER_ERROR = 2
    """User configuration or input error (actionable by user)."""

    SIGINT = 130
    """Terminated by SIGINT (Ctrl+C) - Unix standard."""


def print_error(
    problem: str,
    *,
    reason: str | None = None,
    solution: str | None = None,
) -> None:
    """
    Print a standardized error message with actionable guidance.

    Args:
        problem: Brief description of what went wrong
        reason: Optional explanation of why it happened
        solution: Optional command or action to fix it

    Example:
        >>> print_error(
        ...     "Could not reach the task API",
        ...     reason="Network error: connection refused",
        ...     solution="tasksync sync flush  # once you are back online",
        ... )
    """
    console.print(f"[red]Error:[/red] {problem}")

    if reason:
        console.print(f"[dim]{reason}[/dim]")

    if solution:
        console.print(f"[cyan]→ Try:[/cyan] {solution}")


def print_config_error(reason: str) -> None:
    """Print error when the layered configuration does not validate."""
    print_error(
        "Invalid configuration",
        reason=reason,
        solution="check .tasksync.json and TASKSYNC_* environment variables",
    )


def print_remote_error(reason: str) -> None:
    """Print error when the remote API could not be reached or refused a request."""
    print_error(
        "Could not reach the task API",
        reason=reason,
        solution="set TASKSYNC_API_URL (and TASKSYNC_API_TOKEN) or retry once online",
    )


def print_mutation_not_found_error(mutation_id: str) -> None:
    """Print error when a queued mutation id does not exist."""
    print_error(
        f"Mutation not found: {mutation_id}",
        reason="It may already have been delivered or discarded",
        solution="tasksync queue list  # to see queued mutations",
    )


__all__ = [
    "ExitCode",
    "print_config_error",
    "print_error",
    "print_mutation_not_found_error",
    "print_remote_error",
]
