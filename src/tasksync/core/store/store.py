"""
Durable local store.

Key/value persistence for entities, manual ordering arrays, the mutation log
and temporary-id mappings, all in one SQLite file so that it survives process
restarts and can be shared by several tabs.

Every record is addressed by ``record_key(kind, id)``. Writes are atomic per
record; there are no cross-entity transactions, callers sequence dependent
writes themselves. Each successful entity or ordering write is announced to
the attached cross-tab broadcaster.

Example:
    >>> store = LocalStore(":memory:")
    >>> store.put(Task(id="task-1", title="Water plants"))
    >>> store.get(EntityKind.TASK, "task-1").title
    'Water plants'
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from tasksync.core.broadcast import ChangeType, CrossTabBroadcaster
from tasksync.core.entities import (
    ENTITY_CLASSES,
    Entity,
    EntityKind,
    parse_entity,
    replace_id_refs,
    to_record,
)
from tasksync.core.store.connection import execute_query, init_db

logger = logging.getLogger(__name__)

ORDER_KIND = "order"
MUTATION_KIND = "mutation"


class StoreError(Exception):
    """Base exception for local store failures."""


class StoreCorruptedError(StoreError):
    """Raised when a stored record cannot be decoded."""

    def __init__(self, key: str, message: str) -> None:
        self.key = key
        super().__init__(f"Corrupted record {key}: {message}")


def record_key(kind: EntityKind | str, record_id: str) -> str:
    """Stable storage key for a record: ``"<kind>:<id>"``."""
    kind_value = kind.value if isinstance(kind, Enum) else str(kind)
    return f"{kind_value}:{record_id}"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class LocalStore:
    """
    SQLite-backed store for entities, ordering arrays and the mutation log.

    Args:
        db_path: Database file (":memory:" for a private, non-durable store).
        broadcaster: Cross-tab broadcaster signalled on every write.
    """

    def __init__(
        self,
        db_path: Path | str = ":memory:",
        *,
        broadcaster: CrossTabBroadcaster | None = None,
    ) -> None:
        self.db_path = db_path
        self.broadcaster = broadcaster
        self._conn = init_db(db_path)

    def close(self) -> None:
        self._conn.close()

    def _decode(self, key: str, raw: str) -> Any:
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise StoreCorruptedError(key, f"invalid JSON - {e}") from e

    def _signal(
        self,
        kind: EntityKind | None,
        record_id: str,
        change_type: ChangeType,
        data: dict[str, Any] | None = None,
    ) -> None:
        if self.broadcaster is not None:
            self.broadcaster.broadcast(kind, record_id, change_type, data)

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    def get(self, kind: EntityKind | str, entity_id: str) -> Entity | None:
        """Return the entity stored under ``(kind, id)``, or None."""
        key = record_key(EntityKind(kind), entity_id)
        row = self._conn.execute("SELECT body FROM entities WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return parse_entity(kind, self._decode(key, row["body"]))

    def put(self, entity: Entity) -> None:
        """Insert or replace one entity."""
        key = record_key(entity.kind, entity.id)
        body = json.dumps(to_record(entity))
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO entities (key, kind, id, body, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET body = excluded.body,
                                               updated_at = excluded.updated_at
                """,
                (key, entity.kind.value, entity.id, body, _now()),
            )
        self._signal(entity.kind, entity.id, ChangeType.CACHE_UPDATED)

    def delete(self, kind: EntityKind | str, entity_id: str) -> bool:
        """Delete one entity. Returns True if a row was removed."""
        kind = EntityKind(kind)
        with self._conn:
            cursor = self._conn.execute(
                "DELETE FROM entities WHERE key = ?", (record_key(kind, entity_id),)
            )
        removed = cursor.rowcount > 0
        if removed:
            self._signal(kind, entity_id, ChangeType.ENTITY_DELETED)
        return removed

    def list_by_index(
        self,
        kind: EntityKind | str,
        predicate: Callable[[Entity], bool] | None = None,
    ) -> list[Entity]:
        """
        List entities of one kind in insertion order.

        Args:
            kind: Entity kind to list
            predicate: Optional filter applied to each decoded entity

        Returns:
            Matching entities
        """
        kind = EntityKind(kind)
        rows = execute_query(
            self._conn,
            "SELECT key, body FROM entities WHERE kind = ? ORDER BY rowid",
            (kind.value,),
        )
        entities = [parse_entity(kind, self._decode(row["key"], row["body"])) for row in rows]
        if predicate is None:
            return entities
        return [entity for entity in entities if predicate(entity)]

    # ------------------------------------------------------------------
    # Ordering arrays
    # ------------------------------------------------------------------

    def get_order(self, scope_id: str) -> list[str] | None:
        """Return the stored ordering array for a list or virtual scope."""
        key = record_key(ORDER_KIND, scope_id)
        row = self._conn.execute("SELECT ids FROM orders WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        ids = self._decode(key, row["ids"])
        if not isinstance(ids, list):
            raise StoreCorruptedError(key, f"expected list, got {type(ids).__name__}")
        return [str(item) for item in ids]

    def put_order(self, scope_id: str, ids: list[str]) -> None:
        """Replace the ordering array of a scope."""
        key = record_key(ORDER_KIND, scope_id)
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO orders (key, scope_id, ids, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET ids = excluded.ids,
                                               updated_at = excluded.updated_at
                """,
                (key, scope_id, json.dumps(list(ids)), _now()),
            )
        self._signal(EntityKind.LIST, scope_id, ChangeType.CACHE_UPDATED, {"order": True})

    def delete_order(self, scope_id: str) -> bool:
        with self._conn:
            cursor = self._conn.execute(
                "DELETE FROM orders WHERE key = ?", (record_key(ORDER_KIND, scope_id),)
            )
        removed = cursor.rowcount > 0
        if removed:
            self._signal(EntityKind.LIST, scope_id, ChangeType.CACHE_UPDATED, {"order": True})
        return removed

    def list_orders(self) -> dict[str, list[str]]:
        """Return every stored ordering array keyed by scope id."""
        rows = execute_query(self._conn, "SELECT key, scope_id, ids FROM orders ORDER BY rowid")
        return {row["scope_id"]: list(self._decode(row["key"], row["ids"])) for row in rows}

    # ------------------------------------------------------------------
    # Mutation log
    # ------------------------------------------------------------------

    def put_mutation(
        self,
        mutation_id: str,
        entity_key: str,
        status: str,
        body: dict[str, Any],
    ) -> None:
        """Insert or update a mutation record, keeping its original position."""
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO mutations (key, mutation_id, entity_key, status, body)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET entity_key = excluded.entity_key,
                                               status = excluded.status,
                                               body = excluded.body
                """,
                (
                    record_key(MUTATION_KIND, mutation_id),
                    mutation_id,
                    entity_key,
                    status,
                    json.dumps(body),
                ),
            )

    def get_mutation(self, mutation_id: str) -> dict[str, Any] | None:
        key = record_key(MUTATION_KIND, mutation_id)
        row = self._conn.execute("SELECT body FROM mutations WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return dict(self._decode(key, row["body"]))

    def delete_mutation(self, mutation_id: str) -> bool:
        with self._conn:
            cursor = self._conn.execute(
                "DELETE FROM mutations WHERE key = ?",
                (record_key(MUTATION_KIND, mutation_id),),
            )
        return cursor.rowcount > 0

    def claim_mutation(self, mutation_id: str, owner: str, now: str, stale_before: str) -> bool:
        """
        Mark a pending mutation as being delivered by ``owner``.

        The conditional update is the cross-tab lock: it succeeds only when no
        other live claim exists, so at most one tab sends a given mutation.
        Claims older than ``stale_before`` (a tab that died mid-send) are
        taken over.

        Returns:
            True if ``owner`` now holds the claim
        """
        with self._conn:
            cursor = self._conn.execute(
                """
                UPDATE mutations SET claimed_by = ?, claimed_at = ?
                WHERE key = ? AND status = 'pending'
                  AND (claimed_by IS NULL OR claimed_by = ? OR claimed_at < ?)
                """,
                (owner, now, record_key(MUTATION_KIND, mutation_id), owner, stale_before),
            )
        return cursor.rowcount > 0

    def release_mutation(self, mutation_id: str, owner: str) -> None:
        """Drop ``owner``'s claim, if the mutation still exists."""
        with self._conn:
            self._conn.execute(
                """
                UPDATE mutations SET claimed_by = NULL, claimed_at = NULL
                WHERE key = ? AND claimed_by = ?
                """,
                (record_key(MUTATION_KIND, mutation_id), owner),
            )

    def get_mutation_claim(self, mutation_id: str) -> tuple[str, str] | None:
        """The ``(owner, claimed_at)`` of a claimed mutation, or None."""
        row = self._conn.execute(
            "SELECT claimed_by, claimed_at FROM mutations WHERE key = ?",
            (record_key(MUTATION_KIND, mutation_id),),
        ).fetchone()
        if row is None or row["claimed_by"] is None:
            return None
        return row["claimed_by"], row["claimed_at"]

    def list_mutations(self, status: str | None = None) -> list[dict[str, Any]]:
        """Return mutation bodies in enqueue order, optionally filtered by status."""
        if status is None:
            rows = execute_query(self._conn, "SELECT key, body FROM mutations ORDER BY seq")
        else:
            rows = execute_query(
                self._conn,
                "SELECT key, body FROM mutations WHERE status = ? ORDER BY seq",
                (status,),
            )
        return [dict(self._decode(row["key"], row["body"])) for row in rows]

    def count_mutations(self, status: str | None = None) -> int:
        if status is None:
            row = self._conn.execute("SELECT COUNT(*) AS n FROM mutations").fetchone()
        else:
            row = self._conn.execute(
                "SELECT COUNT(*) AS n FROM mutations WHERE status = ?", (status,)
            ).fetchone()
        return int(row["n"])

    # ------------------------------------------------------------------
    # Id mappings
    # ------------------------------------------------------------------

    def save_id_mapping(self, temp_id: str, real_id: str, kind: EntityKind | str) -> None:
        with self._conn:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO id_mappings (temp_id, real_id, kind, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (temp_id, real_id, EntityKind(kind).value, _now()),
            )

    def resolve_id(self, temp_id: str) -> str | None:
        """Return the authoritative id a temporary id was confirmed as."""
        row = self._conn.execute(
            "SELECT real_id FROM id_mappings WHERE temp_id = ?", (temp_id,)
        ).fetchone()
        return row["real_id"] if row else None

    def temp_id_for(self, real_id: str) -> str | None:
        row = self._conn.execute(
            "SELECT temp_id FROM id_mappings WHERE real_id = ?", (real_id,)
        ).fetchone()
        return row["temp_id"] if row else None

    def clear_old_id_mappings(self, older_than: timedelta = timedelta(days=7)) -> int:
        """Delete id mappings older than ``older_than``. Returns the number removed."""
        cutoff = (datetime.now(timezone.utc) - older_than).isoformat()
        with self._conn:
            cursor = self._conn.execute(
                "DELETE FROM id_mappings WHERE created_at < ?", (cutoff,)
            )
        if cursor.rowcount:
            logger.debug("Cleared %d old id mappings", cursor.rowcount)
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Id remapping
    # ------------------------------------------------------------------

    def remap_id(self, kind: EntityKind | str, temp_id: str, real_id: str) -> None:
        """
        Replace a temporary id with its authoritative id everywhere.

        Moves the entity's own record (unless the authoritative record is
        already present, in which case the temporary one is dropped), rewrites
        relationship fields in every entity that references the temporary id,
        rewrites ordering arrays, and records the mapping.
        """
        kind = EntityKind(kind)
        self.save_id_mapping(temp_id, real_id, kind)

        entity = self.get(kind, temp_id)
        if entity is not None:
            self.delete(kind, temp_id)
            if self.get(kind, real_id) is None:
                self.put(entity.model_copy(update={"id": real_id}))

        pattern = f'%"{temp_id}"%'
        rows = execute_query(
            self._conn,
            "SELECT kind, key, body FROM entities WHERE body LIKE ?",
            (pattern,),
        )
        for row in rows:
            ref_kind = EntityKind(row["kind"])
            referencing = parse_entity(ref_kind, self._decode(row["key"], row["body"]))
            updates: dict[str, Any] = {}
            for name in ENTITY_CLASSES[ref_kind].reference_fields:
                value = getattr(referencing, name)
                replaced = replace_id_refs(value, temp_id, real_id)
                if replaced != value:
                    updates[name] = replaced
            if updates:
                self.put(referencing.model_copy(update=updates))

        for scope_id, ids in self.list_orders().items():
            replaced_ids = replace_id_refs(ids, temp_id, real_id)
            if scope_id == temp_id:
                self.delete_order(temp_id)
                self.put_order(real_id, replaced_ids)
            elif replaced_ids != ids:
                self.put_order(scope_id, replaced_ids)

        logger.debug("Remapped %s %s -> %s", kind.value, temp_id, real_id)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def clear_all(self) -> None:
        """Delete every record (used on logout or a forced refresh)."""
        with self._conn:
            for table in ("entities", "mutations", "orders", "id_mappings"):
                self._conn.execute(f"DELETE FROM {table}")
        self._signal(None, "*", ChangeType.CACHE_INVALIDATED)

    def storage_info(self) -> dict[str, int]:
        """Row counts per record type."""
        info: dict[str, int] = {}
        for kind in EntityKind:
            row = self._conn.execute(
                "SELECT COUNT(*) AS n FROM entities WHERE kind = ?", (kind.value,)
            ).fetchone()
            info[f"{kind.value}s"] = int(row["n"])
        for table in ("mutations", "orders", "id_mappings"):
            row = self._conn.execute(f"SELECT COUNT(*) AS n FROM {table}").fetchone()
            info[table] = int(row["n"])
        return info
