"""In-process publication of workflow state changes."""

from __future__ import annotations

import logging
from typing import Callable, List

from .contracts import StateChangeEvent

logger = logging.getLogger(__name__)

StateChangeListener = Callable[[StateChangeEvent], None]


class EventChannel:
    """Synchronous, unbuffered fan-out of ``StateChangeEvent`` objects."""

    def __init__(self) -> None:
        self._listeners: List[StateChangeListener] = []

    def subscribe(self, listener: StateChangeListener) -> Callable[[], None]:
        """Register ``listener`` and return a callable that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: StateChangeEvent) -> None:
        """Deliver ``event`` to every listener in subscription order."""
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(
                    f"State change listener failed for {event.type.value} "
                    f"on session {event.session.id}"
                )
