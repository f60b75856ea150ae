"""
tasksync - offline-first sync engine for collaborative task lists

Keeps a durable local cache of tasks, lists and memberships, applies user
writes optimistically and delivers them to the remote API through a
retrying mutation queue.
"""

__version__ = "0.4.0-dev"

# Re-export core models for convenience
from tasksync.core.config.models import SyncConfig
from tasksync.core.entities.models import EntityKind, ListMember, SyncStatus, Task, TaskList

__all__ = [
    "EntityKind",
    "ListMember",
    "SyncConfig",
    "SyncStatus",
    "Task",
    "TaskList",
    "__version__",
]
