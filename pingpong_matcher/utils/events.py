"""Explicit observer registration for app-level events"""
from typing import Any, Callable, Dict, List

from .logger import setup_logger

logger = setup_logger(__name__)

Handler = Callable[..., Any]


class EventEmitter:
    """Named events with handlers registered and removed explicitly"""

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = {}

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        """
        Register a handler for an event

        Args:
            event: Event name (e.g. 'signed_in')
            handler: Callable invoked with the emitted arguments

        Returns:
            A function that removes this registration when called.
            Calling it more than once is harmless.
        """
        self._handlers.setdefault(event, []).append(handler)

        def unsubscribe():
            handlers = self._handlers.get(event, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def emit(self, event: str, *args, **kwargs) -> int:
        """
        Call every handler registered for an event, in registration order

        A failing handler is logged and does not stop the others.

        Returns:
            Number of handlers called
        """
        handlers = list(self._handlers.get(event, []))
        for handler in handlers:
            try:
                handler(*args, **kwargs)
            except Exception as e:
                logger.error(f"Handler for '{event}' failed: {e}", exc_info=True)
        return len(handlers)

    def handler_count(self, event: str) -> int:
        return len(self._handlers.get(event, []))

    def clear(self):
        self._handlers.clear()
