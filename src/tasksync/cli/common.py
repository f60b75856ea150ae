"""
Helpers shared by the tasksync CLI commands.
"""

import asyncio
import contextlib
import logging
import sys
from collections.abc import AsyncIterator, Iterator
from typing import Any

import typer

from tasksync.cli.errors import ExitCode, print_config_error
from tasksync.core.broadcast import CrossTabBroadcaster
from tasksync.core.config import ConfigError, SyncConfig, load_config
from tasksync.core.engine import SyncEngine
from tasksync.core.store import LocalStore
from tasksync.core.sync import ConnectivitySnapshot, HttpRemoteAuthority


def setup_logging(debug: bool) -> None:
    """
    Configure logging for CLI commands.

    Args:
        debug: If True, enable DEBUG level logging
    """
    level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def run_async(func: Any, *args: Any) -> Any:
    """Run an async function from Typer's sync CLI context."""
    return asyncio.run(func(*args))


def get_config() -> SyncConfig:
    """Load the layered config, exiting with a user error if it is invalid."""
    try:
        return load_config()
    except ConfigError as e:
        print_config_error(str(e))
        raise typer.Exit(ExitCode.USER_ERROR)


@contextlib.contextmanager
def open_store(config: SyncConfig) -> Iterator[LocalStore]:
    broadcaster = CrossTabBroadcaster(channel=config.store.broadcast_channel)
    store = LocalStore(config.store.db_path, broadcaster=broadcaster)
    try:
        yield store
    finally:
        broadcaster.close()
        store.close()


@contextlib.asynccontextmanager
async def open_engine(config: SyncConfig, *, offline: bool = False) -> AsyncIterator[SyncEngine]:
    """
    Open an engine on the configured store and API.

    With ``offline`` the engine never talks to the network; used by
    commands that only inspect or edit the local queue.
    """
    remote = HttpRemoteAuthority(
        config.remote.api_url,
        token=config.remote.api_token,
        timeout=config.remote.timeout,
    )
    with open_store(config) as store:
        engine = SyncEngine(
            store,
            remote,
            ConnectivitySnapshot(offline=offline),
            config,
        )
        try:
            yield engine
        finally:
            await engine.aclose()
            await remote.aclose()
