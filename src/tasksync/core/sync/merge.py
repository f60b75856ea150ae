"""
Optimistic merge layer.

Combines an authoritative snapshot (full collection fetch) with the local
entities that only exist because of still-queued mutations, without
discarding either side.

Rules applied by ``merge_server_snapshot``:

- Server-confirmed entities come first, in the server's order.
- Client-authoritative fields (``Task.comments``) missing or empty in the
  server payload are kept from the local copy.
- Update patches still waiting in the queue are re-applied on top of the
  server body, so an unconfirmed local edit is not overwritten.
- Local entities absent from the snapshot are appended only when they are
  optimistic (temporary id, or pending/failed); synced ones were deleted on
  the server and are dropped.
- A server entity whose id equals a local temporary id wins; the temporary
  entry is dropped.

The function is pure: running it again on its own output with the same
snapshot gives the same result.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from tasksync.core.entities import (
    Entity,
    EntityKind,
    SyncStatus,
    apply_fields,
    is_temp_id,
    parse_entity,
    with_status,
)


def is_optimistic(entity: Entity) -> bool:
    """True for entities that exist only because of unconfirmed local writes."""
    return is_temp_id(entity.id) or entity.sync_status in (SyncStatus.PENDING, SyncStatus.FAILED)


def _is_blank(value: Any) -> bool:
    return value is None or value == [] or value == {}


def reconcile_entity(
    server: Entity,
    local: Entity | None,
    patches: Sequence[Mapping[str, Any]] = (),
    *,
    server_fields: Iterable[str] | None = None,
) -> Entity:
    """
    Fold local knowledge into one server-confirmed entity.

    Args:
        server: Entity as returned by the remote authority
        local: Current local copy, if any
        patches: Still-queued update payloads for this entity, oldest first
        server_fields: Field names actually present in the server payload
            (defaults to the fields explicitly set on ``server``)

    Returns:
        The entity to keep locally
    """
    result = server
    present = set(server_fields) if server_fields is not None else set(server.model_fields_set)

    if local is not None and not is_temp_id(server.id):
        keep: dict[str, Any] = {}
        for name in type(server).client_authoritative:
            if name in present and not _is_blank(getattr(server, name)):
                continue
            local_value = getattr(local, name)
            if not _is_blank(local_value):
                keep[name] = local_value
        if keep:
            result = result.model_copy(update=keep)

    for patch in patches:
        result = apply_fields(result, patch)

    if patches:
        failed = local is not None and local.sync_status == SyncStatus.FAILED
        return with_status(result, SyncStatus.FAILED if failed else SyncStatus.PENDING)
    return with_status(result, SyncStatus.SYNCED)


def merge_server_snapshot(
    kind: EntityKind,
    server_entities: Sequence[Entity | Mapping[str, Any]],
    local_entities: Sequence[Entity],
    *,
    pending_patches: Mapping[str, Sequence[Mapping[str, Any]]] | None = None,
    pending_deletes: Iterable[str] = (),
) -> list[Entity]:
    """
    Merge an authoritative snapshot with the local view.

    Args:
        kind: Entity kind of both sequences
        server_entities: Snapshot from the remote authority, in server order
        local_entities: Current local entities, in view order
        pending_patches: entity id -> queued update payloads (oldest first)
        pending_deletes: Ids with a queued, unconfirmed delete

    Returns:
        Server entities followed by still-optimistic local entities
    """
    patches_by_id = pending_patches or {}
    deleting = set(pending_deletes)
    local_by_id = {entity.id: entity for entity in local_entities}

    merged: list[Entity] = []
    seen: set[str] = set()
    for item in server_entities:
        if isinstance(item, Entity):
            server = item
        else:
            server = parse_entity(kind, item)
        if server.id in seen or server.id in deleting:
            continue
        seen.add(server.id)
        merged.append(
            reconcile_entity(
                server,
                local_by_id.get(server.id),
                patches_by_id.get(server.id, ()),
            )
        )

    for entity in local_entities:
        if entity.id in seen or entity.id in deleting:
            continue
        if is_optimistic(entity):
            merged.append(entity)
            seen.add(entity.id)

    return merged


class MergedView:
    """
    In-memory ordered view of every entity kind.

    Insertion order is the display order; ``upsert`` keeps an existing
    entity's position and appends new ones at the end.
    """

    def __init__(self) -> None:
        self._items: dict[EntityKind, dict[str, Entity]] = {kind: {} for kind in EntityKind}

    def get(self, kind: EntityKind, entity_id: str) -> Entity | None:
        return self._items[kind].get(entity_id)

    def entities(self, kind: EntityKind) -> list[Entity]:
        return list(self._items[kind].values())

    def ids(self, kind: EntityKind) -> list[str]:
        return list(self._items[kind])

    def replace(self, kind: EntityKind, entities: Iterable[Entity]) -> None:
        self._items[kind] = {entity.id: entity for entity in entities}

    def upsert(self, entity: Entity) -> None:
        self._items[entity.kind][entity.id] = entity

    def remove(self, kind: EntityKind, entity_id: str) -> Entity | None:
        return self._items[kind].pop(entity_id, None)

    def rename(self, kind: EntityKind, old_id: str, new_id: str) -> None:
        """Change an entity's id in place, keeping its position."""
        items = self._items[kind]
        if old_id not in items:
            return
        if new_id in items:
            items.pop(old_id)
            return
        self._items[kind] = {
            (new_id if key == old_id else key): (
                entity.model_copy(update={"id": new_id}) if key == old_id else entity
            )
            for key, entity in items.items()
        }

    def clear(self) -> None:
        for kind in EntityKind:
            self._items[kind] = {}
