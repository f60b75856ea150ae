"""
Database connection management for the local store.

Follows the usual SQLite settings:
- WAL mode so several tabs can read while one writes
- Row factory for dict-like access
- A busy timeout so concurrent writers from other tabs wait instead of failing

Usage:
    from tasksync.core.store.connection import init_db

    conn = init_db(Path(".tasksync/store.db"))
    rows = execute_query(conn, "SELECT * FROM entities WHERE kind = ?", ("task",))
"""

import sqlite3
from pathlib import Path
from typing import Any

from tasksync.core.store.schema import create_schema, needs_migration

BUSY_TIMEOUT_SECONDS = 5.0


def dict_factory(cursor: sqlite3.Cursor, row: tuple[Any, ...]) -> dict[str, Any]:
    """
    Row factory that returns rows as dictionaries.

    Args:
        cursor: SQLite cursor
        row: Raw row tuple from database

    Returns:
        Dictionary mapping column names to values
    """
    fields = [column[0] for column in cursor.description]
    return dict(zip(fields, row))


def configure_connection(conn: sqlite3.Connection) -> None:
    """Apply WAL journaling and the dict row factory to a connection."""
    conn.execute("PRAGMA journal_mode=WAL")
    conn.row_factory = dict_factory


def init_db(db_path: Path | str, *, force_recreate: bool = False) -> sqlite3.Connection:
    """
    Open (and if needed create) the local store database.

    Args:
        db_path: Path to the SQLite database file, or ":memory:"
        force_recreate: If True, delete an existing database first

    Returns:
        Configured SQLite connection with the schema applied
    """
    if str(db_path) != ":memory:":
        db_path = Path(db_path)
        if force_recreate and db_path.exists():
            db_path.unlink()
        db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(
        str(db_path),
        timeout=BUSY_TIMEOUT_SECONDS,
        check_same_thread=False,
    )
    configure_connection(conn)

    if needs_migration(conn):
        create_schema(conn)

    return conn


def execute_query(
    conn: sqlite3.Connection,
    query: str,
    params: tuple[Any, ...] | dict[str, Any] | None = None,
) -> list[dict[str, Any]]:
    """
    Execute a query and return all results as a list of dicts.

    Args:
        conn: SQLite connection
        query: SQL query string
        params: Query parameters (tuple or dict)

    Returns:
        List of row dictionaries
    """
    cursor = conn.execute(query, params or ())
    return list(cursor.fetchall())
