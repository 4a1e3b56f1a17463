"""Typed event redistribution for the realtime client."""

import inspect
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

# Listeners registered under this name receive every event
WILDCARD = "*"

Listener = Callable[[Any], Any]


class EventEmitter:
    """
    Listener registry keyed by event name.

    Listeners may be plain functions or coroutine functions. A listener that
    raises is logged and skipped; the remaining listeners still run.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}

    def on(self, event: str, listener: Listener) -> Listener:
        """Register a listener for ``event`` (or ``"*"`` for everything)."""
        self._listeners.setdefault(event, []).append(listener)
        return listener

    def off(self, event: str, listener: Listener | None = None) -> None:
        """Remove one listener, or all listeners for ``event``."""
        if listener is None:
            self._listeners.pop(event, None)
            return
        listeners = self._listeners.get(event)
        if listeners and listener in listeners:
            listeners.remove(listener)
            if not listeners:
                del self._listeners[event]

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    async def emit(self, event: str, payload: Any = None) -> None:
        """Call the listeners for ``event`` and then the wildcard listeners."""
        # Copy so listeners can unsubscribe themselves while being called
        listeners = list(self._listeners.get(event, ()))
        if event != WILDCARD:
            listeners += self._listeners.get(WILDCARD, ())

        for listener in listeners:
            try:
                result = listener(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Listener error for %s", event)
