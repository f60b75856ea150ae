"""
Entity models and id helpers.

Example:
    >>> from tasksync.core.entities import EntityKind, Task, new_temp_id
    >>> task = Task(id=new_temp_id(), title="Draft agenda")
"""

from tasksync.core.entities.ids import (
    TEMP_ID_PREFIX,
    find_temp_ids,
    is_temp_id,
    new_temp_id,
    path_temp_ids,
    replace_id_refs,
    replace_path_id,
)
from tasksync.core.entities.models import (
    ENTITY_CLASSES,
    Comment,
    Entity,
    EntityKind,
    ListMember,
    SyncStatus,
    Task,
    TaskList,
    apply_fields,
    entity_class,
    field_name,
    parse_entity,
    to_record,
    to_wire_payload,
    unwrap_payload,
    with_status,
)

__all__ = [
    "ENTITY_CLASSES",
    "TEMP_ID_PREFIX",
    "Comment",
    "Entity",
    "EntityKind",
    "ListMember",
    "SyncStatus",
    "Task",
    "TaskList",
    "apply_fields",
    "entity_class",
    "field_name",
    "find_temp_ids",
    "is_temp_id",
    "new_temp_id",
    "parse_entity",
    "path_temp_ids",
    "replace_id_refs",
    "replace_path_id",
    "to_record",
    "to_wire_payload",
    "unwrap_payload",
    "with_status",
]
