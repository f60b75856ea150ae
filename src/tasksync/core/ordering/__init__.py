"""
Manual ordering of list items.

Example:
    >>> normalize_order(["t1", "t9", "t2"], ["t1", "t2", "t3"])
    ['t1', 't2', 't3']
    >>> compute_reorder(["t1", "t2", "t3"], "t3", "t2", DropPosition.ABOVE)
    ['t1', 't3', 't2']
"""

from tasksync.core.ordering.models import (
    MY_TASKS_SCOPE,
    DragState,
    DropPosition,
    DropTarget,
    ReorderOutcome,
    ReorderResult,
)
from tasksync.core.ordering.resolver import (
    DragSession,
    ManualOrderResolver,
    OrderingHost,
    compute_reorder,
    normalize_order,
)

__all__ = [
    "MY_TASKS_SCOPE",
    "DragSession",
    "DragState",
    "DropPosition",
    "DropTarget",
    "ManualOrderResolver",
    "OrderingHost",
    "ReorderOutcome",
    "ReorderResult",
    "compute_reorder",
    "normalize_order",
]
