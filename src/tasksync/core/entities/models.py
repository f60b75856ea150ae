"""
Entity models for the local cache.

Tasks, lists and list members are modelled as a tagged variant: every
concrete model carries a class-level ``kind`` and declares which of its
fields are client-authoritative (kept from the local copy when a server
payload omits them) and which fields hold references to other entities'
ids (rewritten when a temporary id is confirmed).

Server payloads use camelCase keys (``listIds``, ``manualSortOrder``);
Python code uses snake_case. Both spellings are accepted on input, and
unknown server fields are preserved rather than dropped.

Example:
    >>> task = parse_entity(EntityKind.TASK, {"id": "task-1", "title": "Buy milk"})
    >>> task = apply_fields(task, {"completed": True})
    >>> to_record(task)["completed"]
    True
"""

from __future__ import annotations

import functools
from collections.abc import Iterable, Mapping
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from pydantic_core import to_jsonable_python


class EntityKind(str, Enum):
    """Kinds of entity kept in the local store."""

    TASK = "task"
    LIST = "list"
    MEMBER = "member"


class SyncStatus(str, Enum):
    """Delivery state of an entity's latest local change."""

    SYNCED = "synced"
    PENDING = "pending"
    FAILED = "failed"


class Comment(BaseModel):
    """A comment attached to a task."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    id: str
    content: str = ""
    author_id: str | None = None
    created_at: datetime | None = None


class Entity(BaseModel):
    """
    Base model for every cached entity.

    Subclasses set ``kind`` and may extend ``client_authoritative`` and
    ``reference_fields``.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        use_enum_values=False,
    )

    kind: ClassVar[EntityKind]
    client_authoritative: ClassVar[frozenset[str]] = frozenset()
    reference_fields: ClassVar[frozenset[str]] = frozenset()

    id: str
    sync_status: SyncStatus = SyncStatus.SYNCED
    updated_at: datetime | None = None


class Task(Entity):
    """A task, possibly belonging to several lists."""

    kind: ClassVar[EntityKind] = EntityKind.TASK
    client_authoritative: ClassVar[frozenset[str]] = frozenset({"comments"})
    reference_fields: ClassVar[frozenset[str]] = frozenset({"list_ids"})

    title: str = ""
    description: str = ""
    completed: bool = False
    list_ids: list[str] = Field(default_factory=list)
    assignee_id: str | None = None
    creator_id: str | None = None
    due_date: datetime | None = None
    priority: int = 0
    comments: list[Comment] | None = None


class TaskList(Entity):
    """A list of tasks with an optional manual ordering."""

    kind: ClassVar[EntityKind] = EntityKind.LIST
    reference_fields: ClassVar[frozenset[str]] = frozenset({"manual_sort_order"})

    name: str = ""
    owner_id: str | None = None
    sort_by: str = "manual"
    manual_sort_order: list[str] | None = None
    is_virtual: bool = False


class ListMember(Entity):
    """Membership of a user in a list."""

    kind: ClassVar[EntityKind] = EntityKind.MEMBER
    reference_fields: ClassVar[frozenset[str]] = frozenset({"list_id"})

    list_id: str
    user_id: str
    role: str = "member"


ENTITY_CLASSES: dict[EntityKind, type[Entity]] = {
    EntityKind.TASK: Task,
    EntityKind.LIST: TaskList,
    EntityKind.MEMBER: ListMember,
}


def entity_class(kind: EntityKind | str) -> type[Entity]:
    """Return the model class registered for an entity kind."""
    return ENTITY_CLASSES[EntityKind(kind)]


def parse_entity(kind: EntityKind | str, payload: Mapping[str, Any]) -> Entity:
    """Validate a payload (camelCase or snake_case) into the kind's model."""
    return entity_class(kind).model_validate(dict(payload))


def unwrap_payload(kind: EntityKind | str, body: Any) -> dict[str, Any]:
    """
    Extract an entity body from a server response.

    The remote API answers either with the bare object or wrapped under the
    kind name (``{"task": {...}}``).
    """
    if not isinstance(body, Mapping):
        return {}
    key = EntityKind(kind).value
    inner = body.get(key)
    if isinstance(inner, Mapping):
        return dict(inner)
    return dict(body)


@functools.lru_cache(maxsize=None)
def _alias_map(cls: type[Entity]) -> dict[str, str]:
    mapping: dict[str, str] = {}
    for name, info in cls.model_fields.items():
        mapping[name] = name
        if info.alias:
            mapping[info.alias] = name
    return mapping


def field_name(cls: type[Entity], key: str) -> str:
    """Resolve a wire alias or field name to the model's field name."""
    return _alias_map(cls).get(key, key)


def wire_name(cls: type[Entity], name: str) -> str:
    """Return the wire alias for a field name (unknown keys pass through)."""
    info = cls.model_fields.get(name)
    if info is not None and info.alias:
        return info.alias
    return name


def apply_fields(
    entity: Entity,
    fields: Mapping[str, Any],
    *,
    skip: Iterable[str] = (),
) -> Entity:
    """
    Shallow-merge ``fields`` into ``entity`` and return a new entity.

    Only keys present in ``fields`` are applied; everything else is left as
    it was. Keys may be wire aliases or field names. Field names listed in
    ``skip`` are ignored.
    """
    cls = type(entity)
    skipped = {field_name(cls, key) for key in skip}
    data = entity.model_dump()
    for key, value in fields.items():
        name = field_name(cls, key)
        if name in skipped or name == "id":
            continue
        data[name] = value
    return cls.model_validate(data)


def to_record(entity: Entity) -> dict[str, Any]:
    """Serialise an entity to its JSON-ready wire form (camelCase)."""
    return entity.model_dump(mode="json", by_alias=True)


def to_wire_payload(
    cls: type[Entity],
    fields: Mapping[str, Any],
    *,
    exclude: Iterable[str] = ("id", "sync_status"),
) -> dict[str, Any]:
    """
    Convert a patch or body to the payload sent to the remote authority.

    Field names are translated to camelCase and values made JSON-safe.
    Local bookkeeping fields are dropped.
    """
    excluded = {field_name(cls, key) for key in exclude}
    payload: dict[str, Any] = {}
    for key, value in fields.items():
        name = field_name(cls, key)
        if name in excluded:
            continue
        payload[wire_name(cls, name)] = to_jsonable_python(value)
    return payload


def with_status(entity: Entity, status: SyncStatus) -> Entity:
    """Return a copy of the entity with a different sync status."""
    if entity.sync_status == status:
        return entity
    return entity.model_copy(update={"sync_status": status})
