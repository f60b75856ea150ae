"""
Connectivity gate.

An explicitly injected online/offline flag. The runtime flips it from its
connectivity signal; the queue and the merge layer only read it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)

ConnectivityCallback = Callable[[bool], None]


class ConnectivitySnapshot:
    """
    Online/offline state shared by the components of one engine.

    Subscribers are called with the new ``is_offline`` value whenever it
    changes.
    """

    def __init__(self, offline: bool = False) -> None:
        self._offline = offline
        self._subscribers: list[ConnectivityCallback] = []

    @property
    def is_offline(self) -> bool:
        return self._offline

    def set_offline(self) -> None:
        self._set(True)

    def set_online(self) -> None:
        self._set(False)

    def _set(self, offline: bool) -> None:
        if offline == self._offline:
            return
        self._offline = offline
        logger.info("Connectivity changed: %s", "offline" if offline else "online")
        for callback in list(self._subscribers):
            try:
                callback(offline)
            except Exception:
                logger.exception("Connectivity subscriber failed")

    def subscribe(self, callback: ConnectivityCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe
