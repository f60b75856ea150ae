"""
Mutation queue, connectivity gate, remote client and merge layer.

Example:
    >>> queue = MutationQueue(store, remote, ConnectivitySnapshot())
    >>> queue.enqueue(OpKind.UPDATE, EntityKind.TASK, "task-1",
    ...               "/api/tasks/task-1", "PUT", {"completed": True})
    >>> result = await queue.flush()
"""

from tasksync.core.sync.connectivity import ConnectivitySnapshot
from tasksync.core.sync.merge import (
    MergedView,
    is_optimistic,
    merge_server_snapshot,
    reconcile_entity,
)
from tasksync.core.sync.models import (
    DeliveryOutcome,
    FlushResult,
    MutationStatus,
    NotificationLevel,
    OpKind,
    PendingMutation,
    QueueEvent,
    QueueEventType,
    QueueStats,
    SyncNotification,
)
from tasksync.core.sync.queue import MutationQueue
from tasksync.core.sync.remote import (
    MY_TASKS_PREFERENCES_PATH,
    HttpRemoteAuthority,
    OrderingConflictError,
    PermanentRejectionError,
    RemoteAuthority,
    RemoteError,
    TransientDeliveryError,
    classify_http_error,
    entity_path,
    order_path,
)
from tasksync.core.sync.retry import RetryPolicy, is_retryable_error

__all__ = [
    "MY_TASKS_PREFERENCES_PATH",
    "ConnectivitySnapshot",
    "DeliveryOutcome",
    "FlushResult",
    "HttpRemoteAuthority",
    "MergedView",
    "MutationQueue",
    "MutationStatus",
    "NotificationLevel",
    "OpKind",
    "OrderingConflictError",
    "PendingMutation",
    "PermanentRejectionError",
    "QueueEvent",
    "QueueEventType",
    "QueueStats",
    "RemoteAuthority",
    "RemoteError",
    "RetryPolicy",
    "SyncNotification",
    "TransientDeliveryError",
    "classify_http_error",
    "entity_path",
    "is_optimistic",
    "is_retryable_error",
    "merge_server_snapshot",
    "order_path",
    "reconcile_entity",
]
