"""
Models for the mutation queue.

A PendingMutation is one durable intent to change the remote authority. It
is written before any network call is attempted and removed only when the
authority confirms it or the user discards it.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from tasksync.core.entities import Entity, EntityKind
from tasksync.core.store import ORDER_KIND, record_key


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OpKind(str, Enum):
    """Kind of write a mutation performs."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class MutationStatus(str, Enum):
    """Delivery state of a queued mutation."""

    PENDING = "pending"
    FAILED = "failed"


class PendingMutation(BaseModel):
    """
    A not-yet-confirmed write.

    ``snapshot`` holds the entity body before the optimistic change (None for
    creates) and ``order_snapshots`` the ordering arrays the change touched,
    so a rejection can restore both exactly. Mutations with ``order_scope``
    write an ordering array rather than an entity body.
    """

    id: str = Field(default_factory=lambda: f"mut-{uuid.uuid4().hex[:12]}")
    op_kind: OpKind
    entity_kind: EntityKind
    entity_id: str
    target_path: str
    method: str
    payload: dict[str, Any] | None = None
    enqueued_at: datetime = Field(default_factory=_utcnow)
    attempts: int = 0
    status: MutationStatus = MutationStatus.PENDING
    last_error: str | None = None
    next_attempt_at: datetime | None = None
    snapshot: dict[str, Any] | None = None
    order_snapshots: dict[str, list[str] | None] = Field(default_factory=dict)
    order_scope: str | None = None
    parent_id: str | None = None
    temp_id: str | None = None

    @property
    def entity_key(self) -> str:
        """Key shared by every mutation that must be delivered in sequence."""
        if self.order_scope is not None:
            return record_key(ORDER_KIND, self.order_scope)
        return record_key(self.entity_kind, self.entity_id)

    def is_due(self, now: datetime) -> bool:
        return self.next_attempt_at is None or self.next_attempt_at <= now


class QueueStats(BaseModel):
    """Counts reported by the queue."""

    pending: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.failed


@dataclass
class FlushResult:
    """What happened during one flush."""

    delivered: list[str] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)
    retried: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    id_mappings: dict[str, str] = field(default_factory=dict)

    @property
    def attempted(self) -> int:
        return len(self.delivered) + len(self.rejected) + len(self.retried) + len(self.failed)


class DeliveryOutcome(str, Enum):
    """Result of delivering one specific mutation."""

    DELIVERED = "delivered"
    REJECTED = "rejected"
    RETRY = "retry"
    FAILED = "failed"
    DEFERRED = "deferred"
    MISSING = "missing"


class QueueEventType(str, Enum):
    CONFIRMED = "confirmed"
    REMAPPED = "remapped"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    RESTORED = "restored"


@dataclass
class QueueEvent:
    """Notification emitted by the queue after it changed local state."""

    type: QueueEventType
    mutation: PendingMutation
    entity: Entity | None = None
    reason: str | None = None
    temp_id: str | None = None
    real_id: str | None = None
    removed: bool = False


class NotificationLevel(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class SyncNotification(BaseModel):
    """A user-visible, dismissible report about a mutation that did not go through."""

    id: str = Field(default_factory=lambda: f"note-{uuid.uuid4().hex[:12]}")
    mutation_id: str
    entity_kind: EntityKind
    entity_id: str
    level: NotificationLevel = NotificationLevel.ERROR
    message: str
    reason: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    dismissed: bool = False
