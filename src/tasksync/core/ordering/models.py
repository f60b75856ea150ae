"""
Models for manual ordering.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, Field

MY_TASKS_SCOPE = "my-tasks"


class DropPosition(str, Enum):
    """Where a dragged item lands relative to the hovered sibling."""

    ABOVE = "above"
    BELOW = "below"
    END = "end"


class DragState(str, Enum):
    IDLE = "idle"
    DRAGGING = "dragging"
    HOVERING = "hovering"
    COMMITTING = "committing"
    ROLLED_BACK = "rolled_back"


class ReorderOutcome(str, Enum):
    """
    Result of a reorder or move.

    ``queued`` means the change is applied locally and waiting for
    connectivity; ``rejected`` means the request itself was invalid and
    nothing changed.
    """

    COMMITTED = "committed"
    NOOP = "noop"
    ROLLED_BACK = "rolled_back"
    QUEUED = "queued"
    REJECTED = "rejected"


class ReorderResult(BaseModel):
    outcome: ReorderOutcome
    scope_id: str
    order: list[str] = Field(default_factory=list)
    previous: list[str] | None = None
    reason: str | None = None
    mutation_id: str | None = None

    @property
    def applied(self) -> bool:
        """True if the new order is (or will be) in effect."""
        return self.outcome in (ReorderOutcome.COMMITTED, ReorderOutcome.QUEUED)


@dataclass(frozen=True)
class DropTarget:
    """Where a drag session ended."""

    list_id: str
    target_id: str | None
    position: DropPosition
    source_list_id: str
    moved_id: str

    @property
    def is_move(self) -> bool:
        """Dropped over a different list: a membership change, not a reorder."""
        return self.list_id != self.source_list_id
