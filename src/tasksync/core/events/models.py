"""
Live event models.

The push channel delivers per-entity deltas as
``{"type": "updated", "entityKind": "task", "entityId": "...", "payload": {...}}``.
The server also sends the combined form (``"type": "task_updated"``,
``"list_member_added"``), keep-alive ``ping`` messages and a ``reconnect``
request; ``parse_message`` turns any of them into channel items.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from tasksync.core.entities import EntityKind

logger = logging.getLogger(__name__)


class EventOperation(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class ChannelSignal(str, Enum):
    """Lifecycle signals pushed by the transport."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class ChannelState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


# Prefixes of the combined event form, longest first
_KIND_PREFIXES: tuple[tuple[str, EntityKind], ...] = (
    ("list_member_", EntityKind.MEMBER),
    ("member_", EntityKind.MEMBER),
    ("task_", EntityKind.TASK),
    ("list_", EntityKind.LIST),
)

_OPERATION_ALIASES: dict[str, EventOperation] = {
    "created": EventOperation.CREATED,
    "added": EventOperation.CREATED,
    "updated": EventOperation.UPDATED,
    "deleted": EventOperation.DELETED,
    "removed": EventOperation.DELETED,
}


def split_combined_type(value: str) -> tuple[EntityKind, EventOperation] | None:
    """Split ``task_created`` style event types into kind and operation."""
    for prefix, kind in _KIND_PREFIXES:
        if value.startswith(prefix):
            operation = _OPERATION_ALIASES.get(value[len(prefix):])
            if operation is not None:
                return kind, operation
    return None


class LiveEvent(BaseModel):
    """One entity delta from the push channel."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    operation: EventOperation = Field(alias="type")
    entity_kind: EntityKind
    entity_id: str
    payload: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _accept_combined_form(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        data = dict(data)
        event_type = data.get("type", data.get("operation"))
        if isinstance(event_type, str) and event_type not in _OPERATION_ALIASES:
            split = split_combined_type(event_type)
            if split is not None:
                kind, operation = split
                data["type"] = operation.value
                data.setdefault("entityKind", kind.value)
        elif isinstance(event_type, str):
            data["type"] = _OPERATION_ALIASES[event_type].value

        payload = data.get("payload")
        if payload is None:
            payload = data.get("data")
        if not isinstance(payload, Mapping):
            payload = {}
        # Servers wrap the body under the kind name at times
        kind_value = data.get("entityKind", data.get("entity_kind"))
        if isinstance(kind_value, str) and isinstance(payload.get(kind_value), Mapping):
            payload = payload[kind_value]
        data["payload"] = dict(payload)

        if not data.get("entityId") and not data.get("entity_id"):
            if payload_id := data["payload"].get("id"):
                data["entityId"] = payload_id
        return data


ChannelItem = Union[LiveEvent, ChannelSignal]


def parse_message(message: str | bytes | Mapping[str, Any]) -> list[ChannelItem]:
    """
    Turn one raw channel message into channel items.

    Returns an empty list for keep-alives and messages that are not entity
    deltas. A ``reconnect`` request becomes a drop followed by a new
    connection attempt.
    """
    if isinstance(message, (str, bytes)):
        try:
            data = json.loads(message)
        except ValueError:
            logger.warning("Ignoring non-JSON event message")
            return []
    else:
        data = message
    if not isinstance(data, Mapping):
        return []

    event_type = data.get("type")
    if event_type in ("ping", "connected", "heartbeat"):
        return []
    if event_type == "reconnect":
        return [ChannelSignal.DISCONNECTED, ChannelSignal.CONNECTING]

    try:
        return [LiveEvent.model_validate(data)]
    except ValidationError as e:
        logger.debug("Ignoring unrecognised event %r: %s", event_type, e.errors()[0]["msg"])
        return []
