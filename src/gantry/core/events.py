"""Event bus for run observability.

A simple synchronous event bus for emitting domain events from the runner
and sequencer to CLI formatters. Keeps engine logic free of presentation.
"""

from collections.abc import Callable
from typing import Any, Protocol, TypeVar

from gantry.core.logging import get_logger

T = TypeVar("T")

logger = get_logger(__name__)


class EventBusProtocol(Protocol):
    """Protocol for event bus implementations.

    Lets both EventBus and NullEventBus satisfy the interface without
    inheritance.
    """

    def subscribe(self, event_type: type[T], handler: Callable[[T], None]) -> None:
        """Subscribe a handler to an event type."""
        ...

    def emit(self, event: T) -> None:
        """Emit an event to all subscribers."""
        ...


class EventBus:
    """Synchronous event bus.

    Events are dispatched in subscription order. A handler that raises is
    logged and skipped; the remaining handlers still see the event. A
    subscriber writing to a closed stdout must not abort a run before its
    post actions fire.

    Example:
        bus = EventBus()
        bus.subscribe(StageCompleted, lambda e: print(f"{e.stage}: {e.outcome}"))
    """

    def __init__(self) -> None:
        self._subscribers: dict[type, list[Callable[[Any], None]]] = {}

    def subscribe(self, event_type: type[T], handler: Callable[[T], None]) -> None:
        """Subscribe a handler to an event type.

        Args:
            event_type: The event class to subscribe to
            handler: Callable that receives the event instance
        """
        if event_type not in self._subscribers:
            self._subscribers[event_type] = []
        self._subscribers[event_type].append(handler)

    def emit(self, event: T) -> None:
        """Emit an event to all subscribers.

        Events with no subscribers are silently ignored.
        """
        handlers = self._subscribers.get(type(event), [])
        for handler in handlers:
            try:
                handler(event)
            except Exception as exc:
                logger.warning(
                    "Event subscriber failed",
                    event_type=type(event).__name__,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(exc),
                    error_type=type(exc).__name__,
                )


class NullEventBus:
    """No-op event bus for library use where no CLI is present.

    Does NOT inherit from EventBus: subscribing to it is an explicit no-op,
    so nobody can subscribe expecting callbacks and silently get none.
    """

    def subscribe(self, event_type: type[T], handler: Callable[[T], None]) -> None:
        """No-op subscription - handler will never be called."""
        pass

    def emit(self, event: T) -> None:
        """No-op emission."""
        pass
