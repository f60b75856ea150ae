"""
Live event channel and reconciler.

Example:
    >>> channel = EventChannel()
    >>> reconciler = LiveEventReconciler(channel, engine, engine.resync)
    >>> reconciler.start()
"""

from tasksync.core.events.channel import ChannelStateMachine, EventChannel
from tasksync.core.events.debounce import Debouncer
from tasksync.core.events.models import (
    ChannelItem,
    ChannelSignal,
    ChannelState,
    EventOperation,
    LiveEvent,
    parse_message,
    split_combined_type,
)
from tasksync.core.events.reconciler import EventTarget, LiveEventReconciler

__all__ = [
    "ChannelItem",
    "ChannelSignal",
    "ChannelState",
    "ChannelStateMachine",
    "Debouncer",
    "EventChannel",
    "EventOperation",
    "EventTarget",
    "LiveEvent",
    "LiveEventReconciler",
    "parse_message",
    "split_combined_type",
]
