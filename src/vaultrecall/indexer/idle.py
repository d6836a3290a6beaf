from __future__ import annotations

import logging
from typing import Callable, Protocol

logger = logging.getLogger(__name__)

Listener = Callable[[], None]


class IdleSignalSource(Protocol):
    """Emits a signal on every bit of user activity.

    The consumer decides what "idle" means by timing the gaps between signals.
    """

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register listener; the returned callable unregisters it."""
        ...


class ActivityMonitor:
    """IdleSignalSource fed by explicit `notify()` calls from the host."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                logger.error(f"Activity listener failed: {e}")

    @property
    def listener_count(self) -> int:
        return len(self._listeners)
