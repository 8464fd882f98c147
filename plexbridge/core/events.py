"""Per-instance callback registry.

Each leg handler and session owns its own registry; there is no process-wide
event bus.
"""

from collections import defaultdict
from typing import Any, Callable, Generic, TypeVar

import structlog

E = TypeVar("E")

Listener = Callable[..., Any]

logger = structlog.get_logger(__name__)


class EventRegistry(Generic[E]):
    """Synchronous listener registry keyed by event type.

    Listener exceptions are logged and never propagate to the emitter.
    """

    def __init__(self, owner: str) -> None:
        self._owner = owner
        self._listeners: dict[E, list[Listener]] = defaultdict(list)

    def on(self, event: E, listener: Listener) -> None:
        """Register a listener for an event type."""
        self._listeners[event].append(listener)

    def off(self, event: E, listener: Listener) -> None:
        """Remove a previously registered listener (no-op if absent)."""
        try:
            self._listeners[event].remove(listener)
        except ValueError:
            pass

    def clear(self) -> None:
        self._listeners.clear()

    def listener_count(self, event: E) -> int:
        return len(self._listeners.get(event, ()))

    def emit(self, event: E, *args: Any) -> int:
        """Invoke listeners in registration order.

        Args:
            event: Event type
            *args: Positional arguments passed to each listener

        Returns:
            Number of listeners invoked
        """
        listeners = list(self._listeners.get(event, ()))
        for listener in listeners:
            try:
                listener(*args)
            except Exception as e:
                logger.error(
                    "Event listener failed",
                    owner=self._owner,
                    event_type=str(event),
                    error=str(e),
                    exc_info=True
                )
        return len(listeners)
