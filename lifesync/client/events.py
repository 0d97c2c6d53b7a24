"""Local notification fan-out shared by the client components."""

import inspect
from collections import defaultdict
from collections.abc import Callable
from typing import Any

from ..structured_logging.enhanced_logging_config import get_logger

logger = get_logger(__name__)

Listener = Callable[..., Any]


class EventEmitter:
    """Named local events with sync or async listeners."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def on(self, event: str, listener: Listener) -> Callable[[], None]:
        """
        Register a listener.

        Returns:
            A callable that removes the listener again
        """
        self._listeners[event].append(listener)
        return lambda: self.off(event, listener)

    def off(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event)
        if listeners and listener in listeners:
            listeners.remove(listener)

    async def emit(self, event: str, *args: Any) -> None:
        """Call every listener in registration order; a failing listener is logged and skipped."""
        for listener in list(self._listeners.get(event, ())):
            try:
                result = listener(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:  # pylint: disable=broad-exception-caught
                # Listener bugs must not break the emitting component
                logger.error(
                    "Event listener failed",
                    event_name=event,
                    listener=getattr(listener, "__qualname__", repr(listener)),
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
