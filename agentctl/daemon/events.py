"""In-process event notifications (fuse.set, fuse.expired, session.stopped, ...)."""

import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Handler = Callable[[Any], None]


class EventEmitter:
    """Named-event callback registry.

    A failing handler is logged and does not stop the remaining handlers or
    the emitter's caller.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def on(self, name: str, handler: Handler) -> None:
        with self._lock:
            self._handlers[name].append(handler)

    def off(self, name: str, handler: Handler) -> None:
        with self._lock:
            if handler in self._handlers.get(name, []):
                self._handlers[name].remove(handler)

    def emit(self, name: str, payload: Any = None) -> int:
        """Call every handler registered for ``name``. Returns the handler count."""
        with self._lock:
            handlers = list(self._handlers.get(name, []))

        for handler in handlers:
            try:
                handler(payload)
            except Exception:
                logger.exception(f"Handler for event '{name}' failed")
        return len(handlers)
