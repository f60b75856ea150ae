"""
SQLite schema for the durable local store.

Schema Design:
- entities: one row per cached entity, keyed by ``"<kind>:<id>"``
- mutations: the ordered log of not-yet-confirmed writes (``seq`` gives
  enqueue order and survives updates to the row). ``claimed_by`` and
  ``claimed_at`` mark a mutation some tab is delivering right now
- orders: one manual ordering array per list or virtual scope
- id_mappings: temporary id -> authoritative id, for late references
- schema_info: version tracking for migrations

Bodies are stored as JSON text in their camelCase wire form.
"""

import sqlite3

# Schema version for migrations
SCHEMA_VERSION = 2

SCHEMA_DDL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_info (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    description TEXT
);

-- Cached entities (tasks, lists, members)
CREATE TABLE IF NOT EXISTS entities (
    key TEXT PRIMARY KEY,
    kind TEXT NOT NULL CHECK(kind IN ('task', 'list', 'member')),
    id TEXT NOT NULL,
    body JSON NOT NULL,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Durable intent log
CREATE TABLE IF NOT EXISTS mutations (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    key TEXT NOT NULL UNIQUE,
    mutation_id TEXT NOT NULL,
    entity_key TEXT NOT NULL,
    status TEXT NOT NULL CHECK(status IN ('pending', 'failed')),
    body JSON NOT NULL,
    claimed_by TEXT,
    claimed_at TIMESTAMP
);

-- Manual ordering arrays
CREATE TABLE IF NOT EXISTS orders (
    key TEXT PRIMARY KEY,
    scope_id TEXT NOT NULL,
    ids JSON NOT NULL,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Temporary id -> authoritative id
CREATE TABLE IF NOT EXISTS id_mappings (
    temp_id TEXT PRIMARY KEY,
    real_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    created_at TIMESTAMP NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_entities_kind ON entities(kind);
CREATE INDEX IF NOT EXISTS idx_mutations_entity ON mutations(entity_key);
CREATE INDEX IF NOT EXISTS idx_mutations_status ON mutations(status);
CREATE INDEX IF NOT EXISTS idx_id_mappings_real ON id_mappings(real_id);
"""


def create_schema(conn: sqlite3.Connection) -> None:
    """
    Create the database schema.

    Idempotent: safe to call on an existing database.

    Args:
        conn: SQLite database connection
    """
    previous = get_schema_version(conn)
    conn.executescript(SCHEMA_DDL)
    if previous == 1:
        # Version 1 mutation logs predate delivery claims
        conn.execute("ALTER TABLE mutations ADD COLUMN claimed_by TEXT")
        conn.execute("ALTER TABLE mutations ADD COLUMN claimed_at TIMESTAMP")
    conn.execute(
        """
        INSERT OR REPLACE INTO schema_info (version, description)
        VALUES (?, ?)
        """,
        (SCHEMA_VERSION, "Entities, claimable mutation log, ordering arrays and id mappings"),
    )
    conn.commit()


def get_schema_version(conn: sqlite3.Connection) -> int | None:
    """
    Get the current schema version from the database.

    Returns:
        Current schema version, or None if schema_info table doesn't exist
    """
    try:
        cursor = conn.execute("SELECT MAX(version) AS version FROM schema_info")
        row = cursor.fetchone()
    except sqlite3.OperationalError:
        # schema_info table doesn't exist
        return None
    if row is None:
        return None
    value = row["version"] if isinstance(row, dict) else row[0]
    return int(value) if value is not None else None


def needs_migration(conn: sqlite3.Connection) -> bool:
    """Check if the database needs the schema applied or upgraded."""
    current_version = get_schema_version(conn)
    if current_version is None:
        return True
    return current_version < SCHEMA_VERSION
