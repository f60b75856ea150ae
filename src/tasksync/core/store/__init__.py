"""
Durable local store.

Example:
    >>> from tasksync.core.store import LocalStore
    >>> store = LocalStore(Path(".tasksync/store.db"))
"""

from tasksync.core.store.connection import init_db
from tasksync.core.store.store import (
    MUTATION_KIND,
    ORDER_KIND,
    LocalStore,
    StoreCorruptedError,
    StoreError,
    record_key,
)

__all__ = [
    "MUTATION_KIND",
    "ORDER_KIND",
    "LocalStore",
    "StoreCorruptedError",
    "StoreError",
    "init_db",
    "record_key",
]
